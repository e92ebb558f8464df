from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional


EntryState = Literal["ABSENT", "COUNTING", "SATURATED"]

REJECT_REASON = "exceeded maximum submissions; retry later"
REJECT_CODE = "rate_limited"


@dataclass(frozen=True)
class RateLimitConfig:
    max_submissions: int = 3
    window_seconds: int = 3600


@dataclass
class CounterEntry:
    """
    One fixed window for one key.
    expires_at is epoch seconds, anchored at first write and never moved by increments.
    """
    count: int
    expires_at: float

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class Verdict:
    allowed: bool
    reason: Optional[str] = None
    code: Optional[str] = None
    degraded: bool = False

    @classmethod
    def allow(cls, degraded: bool = False) -> "Verdict":
        return cls(allowed=True, degraded=degraded)

    @classmethod
    def reject(cls) -> "Verdict":
        return cls(allowed=False, reason=REJECT_REASON, code=REJECT_CODE)


def entry_state(count: int, found: bool, max_submissions: int) -> EntryState:
    if not found:
        return "ABSENT"
    if count >= max_submissions:
        return "SATURATED"
    return "COUNTING"
