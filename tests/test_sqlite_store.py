import sqlite3
import threading

import pytest

from engine.errors import StoreUnavailable
from engine.persistence.sqlite_store import SQLiteCounterStore


@pytest.fixture()
def sqlite_store(tmp_path, clock):
    return SQLiteCounterStore(db_path=str(tmp_path / "counters.db"), timeout_seconds=5.0, clock=clock)


def _expires_at(store, key):
    conn = sqlite3.connect(store.db_path)
    try:
        row = conn.execute("SELECT expires_at FROM rate_counters WHERE key = ?", (key,)).fetchone()
    finally:
        conn.close()
    return row[0] if row else None


def test_set_get_and_expire(sqlite_store, clock):
    assert sqlite_store.get("k") == (0, False)
    sqlite_store.set_with_expiry("k", 1, 30)
    assert sqlite_store.get("k") == (1, True)

    clock.advance(30)
    assert sqlite_store.get("k") == (0, False)


def test_increment_fixed_window(sqlite_store, clock):
    assert sqlite_store.increment_if_below("k", 2, 100) == 1
    anchor = _expires_at(sqlite_store, "k")

    clock.advance(40)
    assert sqlite_store.increment_if_below("k", 2, 100) == 2
    assert _expires_at(sqlite_store, "k") == anchor
    assert sqlite_store.increment_if_below("k", 2, 100) is None

    clock.advance(60)
    assert sqlite_store.increment_if_below("k", 2, 100) == 1
    assert _expires_at(sqlite_store, "k") == clock() + 100


def test_purge_expired(sqlite_store, clock):
    sqlite_store.set_with_expiry("a", 1, 10)
    sqlite_store.set_with_expiry("b", 1, 1000)
    clock.advance(11)

    assert sqlite_store.purge_expired() == 1
    assert sqlite_store.get("b") == (1, True)


def test_state_survives_new_instance(tmp_path, clock):
    path = str(tmp_path / "durable.db")
    SQLiteCounterStore(db_path=path, clock=clock).increment_if_below("k", 3, 60)

    reopened = SQLiteCounterStore(db_path=path, clock=clock)
    assert reopened.get("k") == (1, True)


def test_locked_database_is_store_unavailable(tmp_path, clock):
    path = str(tmp_path / "locked.db")
    store = SQLiteCounterStore(db_path=path, timeout_seconds=0.05, clock=clock)

    holder = sqlite3.connect(path, isolation_level=None)
    holder.execute("BEGIN EXCLUSIVE")
    try:
        with pytest.raises(StoreUnavailable):
            store.increment_if_below("k", 3, 60)
    finally:
        holder.execute("ROLLBACK")
        holder.close()


def test_unopenable_path_is_store_unavailable(tmp_path):
    # a directory where the database file should be
    bad = tmp_path / "dir.db"
    bad.mkdir()
    with pytest.raises(StoreUnavailable):
        SQLiteCounterStore(db_path=str(bad))


def test_concurrent_increments_never_exceed_max(sqlite_store):
    threads = 12
    barrier = threading.Barrier(threads)
    results = []
    results_lock = threading.Lock()

    def worker():
        barrier.wait()
        r = sqlite_store.increment_if_below("hot", 3, 60)
        with results_lock:
            results.append(r)

    pool = [threading.Thread(target=worker) for _ in range(threads)]
    for t in pool:
        t.start()
    for t in pool:
        t.join()

    assert sorted(r for r in results if r is not None) == [1, 2, 3]
    assert sqlite_store.get("hot") == (3, True)


def test_set_with_expiry_rejects_non_positive_count(sqlite_store):
    with pytest.raises(ValueError):
        sqlite_store.set_with_expiry("k", 0, 60)
    assert sqlite_store.get("k") == (0, False)
