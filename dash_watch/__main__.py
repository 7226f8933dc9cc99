"""Entry point for DASH Watcher.

Usage:
    python -m dash_watch                Run the watcher in the foreground
    python -m dash_watch check-config   Validate the environment settings
"""

import sys


def main() -> None:
    """Run the daemon CLI and exit with its status."""
    from dash_watch.service import main as service_main

    sys.exit(service_main())


if __name__ == "__main__":
    main()
