"""Streaming side of taskwatch: subscriber registry, delta publisher and websocket server."""

from .broadcaster import WatchBroadcaster
from .console import Console
from .models import WatchFilter, WatchUpdate
from .registry import Subscription, SubscriptionRegistry, SubscriptionState

__all__ = [
    "Console",
    "Subscription",
    "SubscriptionRegistry",
    "SubscriptionState",
    "WatchBroadcaster",
    "WatchFilter",
    "WatchUpdate",
]
