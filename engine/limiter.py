from __future__ import annotations

import hashlib
import logging
from typing import Optional

from prometheus_client import Counter

from engine.errors import IdentityUnresolved, StoreUnavailable
from engine.models import RateLimitConfig, Verdict, entry_state
from engine.store import CounterStore


logger = logging.getLogger("form_rate_limiter")

KEY_PREFIX = "rate_limit"

CHECK_OUTCOMES = ("allowed", "rejected", "bypass", "identity_unresolved", "store_unavailable")

CHECKS = Counter(
    "rate_limit_checks_total",
    "Rate limit checks by outcome",
    labelnames=("outcome",),
)
for _outcome in CHECK_OUTCOMES:
    CHECKS.labels(outcome=_outcome)


def derive_key(resource_id: str, identity: str) -> str:
    """
    Counter key for (resource_id, identity).

    The identity is stored only as a SHA-256 digest: fixed length, no raw
    address in the store. The digest is always the last 64 chars, so the
    resource_id part cannot bleed into it.
    """
    digest = hashlib.sha256(identity.encode("utf-8")).hexdigest()
    return f"{KEY_PREFIX}_{resource_id}_{digest}"


class RateLimiter:
    """
    Fixed-window submission limiter: at most `max_submissions` accepted
    events per (resource, identity) per window anchored at the first event.

    Fails open when the identity is missing or the store is down; only a
    confirmed saturated counter produces a rejection.
    """

    def __init__(self, store: CounterStore, config: Optional[RateLimitConfig] = None):
        self.store = store
        self.config = config or RateLimitConfig()

    def configure(self, config: RateLimitConfig) -> None:
        self.config = config

    def check(self, resource_id: str, identity: Optional[str], bypass: bool = False) -> Verdict:
        if bypass:
            CHECKS.labels(outcome="bypass").inc()
            return Verdict.allow()

        try:
            key = self._key(resource_id, identity)
        except IdentityUnresolved as e:
            CHECKS.labels(outcome="identity_unresolved").inc()
            logger.warning("degraded_check reason=identity_unresolved resource_id=%s detail=%s", resource_id, e)
            return Verdict.allow(degraded=True)

        # one read of the live config per check
        config = self.config

        try:
            verdict = self._decide(key, config)
        except StoreUnavailable as e:
            CHECKS.labels(outcome="store_unavailable").inc()
            logger.warning("degraded_check reason=store_unavailable resource_id=%s error=%s", resource_id, e)
            return Verdict.allow(degraded=True)

        CHECKS.labels(outcome="allowed" if verdict.allowed else "rejected").inc()
        return verdict

    def _key(self, resource_id: str, identity: Optional[str]) -> str:
        if identity is None or not identity.strip():
            raise IdentityUnresolved("no identity for submission")
        return derive_key(str(resource_id), identity.strip())

    def _decide(self, key: str, config: RateLimitConfig) -> Verdict:
        count, found = self.store.get(key)

        # saturated: reject without touching the entry
        if entry_state(count, found, config.max_submissions) == "SATURATED":
            return Verdict.reject()

        # ABSENT or COUNTING: the store creates or bumps atomically, and
        # refuses if another caller filled the last slot in between
        new_count = self.store.increment_if_below(key, config.max_submissions, config.window_seconds)
        if new_count is None:
            return Verdict.reject()
        return Verdict.allow()
