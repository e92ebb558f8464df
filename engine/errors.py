from __future__ import annotations


class RateLimiterError(Exception):
    """Base class for limiter failures."""


class StoreUnavailable(RateLimiterError):
    """
    Backing store could not be reached or did not answer in time.
    The limiter fails open on this.
    """


class ConfigInvalid(RateLimiterError, ValueError):
    def __init__(self, option: str, value: object):
        super().__init__(f"invalid value for {option}: {value!r}")
        self.option = option
        self.value = value


class IdentityUnresolved(RateLimiterError):
    pass
