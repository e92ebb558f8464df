from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

from engine.errors import StoreUnavailable
from engine.models import CounterEntry


Clock = Callable[[], float]


def check_count(count: int) -> None:
    # a stored entry always represents at least one accepted event
    if count < 1:
        raise ValueError(f"counter value must be >= 1, got {count}")


class CounterStore(ABC):
    """
    Key -> integer counter with a fixed expiry per entry.

    Implementations must make increment_if_below (including the
    absent -> created transition) atomic per key.
    """

    @abstractmethod
    def get(self, key: str) -> Tuple[int, bool]:
        """Return (count, found). Expired entries are reported as (0, False)."""

    @abstractmethod
    def set_with_expiry(self, key: str, count: int, ttl_seconds: int) -> None:
        """Unconditionally (re)write key, expiring ttl_seconds from now. count must be >= 1."""

    @abstractmethod
    def increment_if_below(self, key: str, max_count: int, ttl_seconds: int) -> Optional[int]:
        """
        Atomically bump the counter if it is below max_count.

        Absent/expired keys are created with count 1 and a fresh expiry.
        Existing entries keep their expiry. Returns the new count, or None
        when the entry is already at max_count.
        """

    @abstractmethod
    def purge_expired(self) -> int:
        """Delete expired entries. Returns number deleted."""


class InMemoryCounterStore(CounterStore):
    """
    In-process store.

    - one lock per key, created under a short registry lock
    - expired entries dropped on access, plus a purge every `sweep_every` writes
    - `writes` counts every mutation (tests assert on it)
    """
    def __init__(self, clock: Clock = time.time, lock_timeout_seconds: float = 2.0, sweep_every: int = 1000):
        self.clock = clock
        self.lock_timeout = lock_timeout_seconds
        self.sweep_every = sweep_every
        self.writes = 0

        self._entries: Dict[str, CounterEntry] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._writes_since_sweep = 0

    def _lock_for(self, key: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def _acquire(self, key: str) -> threading.Lock:
        deadline = time.monotonic() + self.lock_timeout
        while True:
            lock = self._lock_for(key)
            remaining = deadline - time.monotonic()
            if remaining <= 0 or not lock.acquire(timeout=remaining):
                raise StoreUnavailable(f"timed out waiting for key lock after {self.lock_timeout}s")
            # purge may have retired this lock between lookup and acquire
            with self._registry_lock:
                current = self._locks.get(key)
            if current is lock:
                return lock
            lock.release()

    def _live_entry(self, key: str, now: float) -> Optional[CounterEntry]:
        # caller holds the key lock
        entry = self._entries.get(key)
        if entry is not None and entry.expired(now):
            self._entries.pop(key, None)
            return None
        return entry

    def _note_write(self) -> None:
        with self._registry_lock:
            self.writes += 1
            self._writes_since_sweep += 1
            due = self.sweep_every > 0 and self._writes_since_sweep >= self.sweep_every
            if due:
                self._writes_since_sweep = 0
        if due:
            self.purge_expired()

    def get(self, key: str) -> Tuple[int, bool]:
        lock = self._acquire(key)
        try:
            entry = self._live_entry(key, self.clock())
            if entry is None:
                return 0, False
            return entry.count, True
        finally:
            lock.release()

    def set_with_expiry(self, key: str, count: int, ttl_seconds: int) -> None:
        check_count(count)
        lock = self._acquire(key)
        try:
            self._entries[key] = CounterEntry(count=count, expires_at=self.clock() + ttl_seconds)
        finally:
            lock.release()
        self._note_write()

    def increment_if_below(self, key: str, max_count: int, ttl_seconds: int) -> Optional[int]:
        lock = self._acquire(key)
        try:
            now = self.clock()
            entry = self._live_entry(key, now)
            if entry is None:
                self._entries[key] = CounterEntry(count=1, expires_at=now + ttl_seconds)
                new_count = 1
            elif entry.count < max_count:
                entry.count += 1
                new_count = entry.count
            else:
                return None
        finally:
            lock.release()
        self._note_write()
        return new_count

    def expires_at(self, key: str) -> Optional[float]:
        """Raw expiry of the stored entry, expired or not. For inspection only."""
        lock = self._acquire(key)
        try:
            entry = self._entries.get(key)
            return entry.expires_at if entry is not None else None
        finally:
            lock.release()

    def purge_expired(self) -> int:
        now = self.clock()
        dead = {k for k, e in list(self._entries.items()) if e.expired(now)}
        with self._registry_lock:
            known = list(self._locks.items())

        removed = 0
        for k, lock in known:
            if k in self._entries and k not in dead:
                continue
            # skip keys that are busy; they get cleaned on their next access
            if not lock.acquire(blocking=False):
                continue
            try:
                entry = self._entries.get(k)
                if entry is not None:
                    if not entry.expired(self.clock()):
                        continue
                    self._entries.pop(k, None)
                    removed += 1
                # entry gone: retire its lock too
                with self._registry_lock:
                    if self._locks.get(k) is lock:
                        self._locks.pop(k, None)
            finally:
                lock.release()
        return removed

    def __len__(self) -> int:
        return len(self._entries)
