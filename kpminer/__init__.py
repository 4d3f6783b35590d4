"""Command-line front end, pool clients and monitoring API for a ProgPoW miner."""

__version__ = "1.2.4"

__all__ = [
    "apirequest",
    "apiserver",
    "apistats",
    "cli",
    "helptext",
    "options",
    "poolclient",
]