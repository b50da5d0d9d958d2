"""Exceptions raised inside the admission pipeline.

None of these reach the client: the middleware logs them and admits.
"""


class RateLimitError(Exception):
    """Base class for admission pipeline errors."""


class StoreError(RateLimitError):
    """A backing-store operation failed."""


class StoreUnavailable(StoreError):
    """The backing store could not serve the operation within its deadline."""


class CorruptWindowError(StoreError):
    """A stored quota window could not be decoded."""

    def __init__(self, key: str, raw: object):
        super().__init__(f"Corrupt quota window at {key!r}: {raw!r}")
        self.key = key
        self.raw = raw


class PolicyError(RateLimitError):
    """A policy table failed validation."""


class ClientDisconnected(RateLimitError):
    """The client went away while the request was being delayed."""
