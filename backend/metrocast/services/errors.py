"""Feed and store exception definitions."""

from __future__ import annotations


class FeedError(Exception):
    """Base class for failures that abort a single feed poll cycle."""


class FeedFetchError(FeedError):
    """Raised when a feed cannot be fetched (unreachable host or non-2xx)."""


class FeedFormatError(FeedError):
    """Raised when a fetched payload is not a valid GTFS bundle or message."""


class GTFSTimeFormatError(ValueError):
    """Raised when a GTFS time-of-day string is not HH:MM:SS."""


class AmbiguousStopNameError(ValueError):
    """Raised when a stop name is shared by more stops than the rules can split."""


class StoreWriteError(Exception):
    """Raised when a pipelined store batch reports a failed command."""


__all__ = [
    "FeedError",
    "FeedFetchError",
    "FeedFormatError",
    "GTFSTimeFormatError",
    "AmbiguousStopNameError",
    "StoreWriteError",
]
