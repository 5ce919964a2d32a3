"""
freight-sync: cached, offline-tolerant data access and notification feed for
the freight quoting portal.
"""

__version__ = "0.1.0"


def main() -> None:
    from .server import main as server_main

    server_main()
