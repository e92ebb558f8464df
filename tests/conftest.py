# ruff: noqa: E402
import os
import tempfile

import pytest
from prometheus_client import REGISTRY

# gateway.app.main builds its singletons from the environment at import time
_AUDIT_DIR = tempfile.mkdtemp(prefix="rl-audit-")
os.environ.setdefault("RL_USE_SQLITE", "0")
os.environ.setdefault("RL_SWEEP_SECONDS", "0")
os.environ.setdefault("RL_AUDIT_PATH", os.path.join(_AUDIT_DIR, "audit.jsonl"))

from engine.limiter import CHECK_OUTCOMES, RateLimiter
from engine.models import RateLimitConfig
from engine.store import InMemoryCounterStore


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def memory_store(clock):
    return InMemoryCounterStore(clock=clock)


@pytest.fixture()
def limiter(memory_store):
    return RateLimiter(store=memory_store, config=RateLimitConfig(max_submissions=3, window_seconds=3600))


def _checks_total(outcome: str) -> float:
    return REGISTRY.get_sample_value("rate_limit_checks_total", {"outcome": outcome}) or 0.0


@pytest.fixture()
def check_counts():
    """Per-test view of rate_limit_checks_total: returns {outcome: increase} for non-zero outcomes."""
    start = {outcome: _checks_total(outcome) for outcome in CHECK_OUTCOMES}

    def delta() -> dict[str, int]:
        counts = {outcome: int(_checks_total(outcome) - start[outcome]) for outcome in CHECK_OUTCOMES}
        return {outcome: n for outcome, n in counts.items() if n}

    return delta
