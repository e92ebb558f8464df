from __future__ import annotations

import os
import sqlite3
import time
from datetime import datetime, timezone
from typing import Optional, Tuple

from engine.errors import StoreUnavailable
from engine.store import Clock, CounterStore, check_count


class SQLiteCounterStore(CounterStore):
    """
    Durable counter store for a single host.

    - connection per operation, WAL mode
    - increment_if_below runs inside BEGIN IMMEDIATE so concurrent writers
      (threads or processes) serialize on the database write lock
    - sqlite3 errors, including lock waits past `timeout_seconds`,
      surface as StoreUnavailable
    """

    def __init__(self, db_path: str = "engine/out/rate_limit.db", timeout_seconds: float = 2.0, clock: Clock = time.time):
        self.db_path = db_path
        self.timeout = timeout_seconds
        self.clock = clock
        parent = os.path.dirname(db_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
        except sqlite3.Error as e:
            raise StoreUnavailable(f"sqlite connect failed: {e}") from e
        return conn

    def _init_db(self) -> None:
        conn = self._connect()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS rate_counters (
                    key TEXT PRIMARY KEY,
                    count INTEGER NOT NULL,
                    expires_at REAL NOT NULL,
                    updated_utc TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS ix_rate_counters_expires ON rate_counters(expires_at)")
        except sqlite3.Error as e:
            raise StoreUnavailable(f"sqlite schema init failed: {e}") from e
        finally:
            conn.close()

    @staticmethod
    def _updated() -> str:
        return datetime.now(timezone.utc).isoformat()

    # --------------------
    # Counter operations
    # --------------------
    def get(self, key: str) -> Tuple[int, bool]:
        conn = self._connect()
        try:
            cur = conn.execute(
                "SELECT count FROM rate_counters WHERE key = ? AND expires_at > ?",
                (key, self.clock()),
            )
            row = cur.fetchone()
        except sqlite3.Error as e:
            raise StoreUnavailable(f"sqlite read failed: {e}") from e
        finally:
            conn.close()
        if row is None:
            return 0, False
        return int(row[0]), True

    def set_with_expiry(self, key: str, count: int, ttl_seconds: int) -> None:
        check_count(count)
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO rate_counters(key, count, expires_at, updated_utc)
                VALUES(?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    count=excluded.count,
                    expires_at=excluded.expires_at,
                    updated_utc=excluded.updated_utc
                """,
                (key, count, self.clock() + ttl_seconds, self._updated()),
            )
        except sqlite3.Error as e:
            raise StoreUnavailable(f"sqlite write failed: {e}") from e
        finally:
            conn.close()

    def increment_if_below(self, key: str, max_count: int, ttl_seconds: int) -> Optional[int]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                now = self.clock()
                row = conn.execute(
                    "SELECT count, expires_at FROM rate_counters WHERE key = ?",
                    (key,),
                ).fetchone()

                if row is None or row[1] <= now:
                    conn.execute(
                        """
                        INSERT INTO rate_counters(key, count, expires_at, updated_utc)
                        VALUES(?, 1, ?, ?)
                        ON CONFLICT(key) DO UPDATE SET
                            count=1,
                            expires_at=excluded.expires_at,
                            updated_utc=excluded.updated_utc
                        """,
                        (key, now + ttl_seconds, self._updated()),
                    )
                    new_count: Optional[int] = 1
                elif row[0] < max_count:
                    new_count = int(row[0]) + 1
                    conn.execute(
                        "UPDATE rate_counters SET count = ?, updated_utc = ? WHERE key = ?",
                        (new_count, self._updated(), key),
                    )
                else:
                    new_count = None
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
        except sqlite3.Error as e:
            raise StoreUnavailable(f"sqlite increment failed: {e}") from e
        finally:
            conn.close()
        return new_count

    def purge_expired(self) -> int:
        """
        Delete counter rows past their expiry. Returns number deleted.
        """
        conn = self._connect()
        try:
            cur = conn.execute("DELETE FROM rate_counters WHERE expires_at <= ?", (self.clock(),))
            return cur.rowcount
        except sqlite3.Error as e:
            raise StoreUnavailable(f"sqlite purge failed: {e}") from e
        finally:
            conn.close()
