from __future__ import annotations

from taskwatch_observability.server import main

if __name__ == "__main__":
    main()
