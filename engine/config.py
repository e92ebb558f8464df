from __future__ import annotations

import logging
import threading
from typing import Any, Mapping, Optional

from engine.errors import ConfigInvalid
from engine.models import RateLimitConfig


logger = logging.getLogger("form_rate_limiter")

DEFAULT_MAX_SUBMISSIONS = 3
DEFAULT_TIME_LIMIT = 3600

DEFAULT_OPTIONS: dict[str, int] = {
    "max_submissions": DEFAULT_MAX_SUBMISSIONS,
    "time_limit": DEFAULT_TIME_LIMIT,
}


def _coerce_positive_int(option: str, value: Any) -> int:
    # bool is an int subclass; "true" is not a count
    if isinstance(value, bool) or value is None:
        raise ConfigInvalid(option, value)

    if isinstance(value, int):
        n = value
    elif isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            raise ConfigInvalid(option, value)
        n = int(value)
    elif isinstance(value, str):
        text = value.strip()
        try:
            n = int(text)
        except ValueError:
            try:
                n = int(float(text))
            except (ValueError, OverflowError):
                raise ConfigInvalid(option, value) from None
    else:
        raise ConfigInvalid(option, value)

    if n <= 0:
        raise ConfigInvalid(option, value)
    return n


def sanitize_options(raw: Optional[Mapping[str, Any]]) -> dict[str, int]:
    """
    Normalize a raw options map into {max_submissions, time_limit}.

    Missing, non-numeric and non-positive values fall back to the defaults.
    Unknown keys are dropped.
    """
    raw = raw or {}
    sanitized: dict[str, int] = {}
    for option, default in DEFAULT_OPTIONS.items():
        if option not in raw:
            sanitized[option] = default
            continue
        try:
            sanitized[option] = _coerce_positive_int(option, raw[option])
        except ConfigInvalid as e:
            logger.warning("config_invalid option=%s value=%r default=%s", e.option, e.value, default)
            sanitized[option] = default
    return sanitized


def config_from_options(raw: Optional[Mapping[str, Any]]) -> RateLimitConfig:
    opts = sanitize_options(raw)
    return RateLimitConfig(max_submissions=opts["max_submissions"], window_seconds=opts["time_limit"])


def options_from_config(config: RateLimitConfig) -> dict[str, int]:
    return {"max_submissions": config.max_submissions, "time_limit": config.window_seconds}


class OptionsStore:
    """
    Process-wide holder for the rate limit options.

    Values are sanitized on the way in and swapped as one immutable
    RateLimitConfig, so readers never see a half-applied update.
    """
    def __init__(self, initial: Optional[Mapping[str, Any]] = None):
        self._lock = threading.Lock()
        self._config: Optional[RateLimitConfig] = None
        if initial is not None:
            self.update(initial)

    def initialize(self) -> RateLimitConfig:
        """Seed defaults unless options were already set."""
        with self._lock:
            if self._config is None:
                self._config = config_from_options(DEFAULT_OPTIONS)
            return self._config

    def update(self, raw: Optional[Mapping[str, Any]]) -> dict[str, int]:
        config = config_from_options(raw)
        with self._lock:
            self._config = config
        return options_from_config(config)

    def get(self) -> RateLimitConfig:
        config = self._config
        if config is None:
            return RateLimitConfig(max_submissions=DEFAULT_MAX_SUBMISSIONS, window_seconds=DEFAULT_TIME_LIMIT)
        return config

    def options(self) -> dict[str, int]:
        return options_from_config(self.get())

    def clear(self) -> None:
        with self._lock:
            self._config = None
