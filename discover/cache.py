"""Response caches for short-lived provider results.

Every cache offers get(key) / set(key, value, ttl_seconds). Callers depend only
on that pair, so a process-local cache, the SQLite cache, or NullCache (tests,
--no-cache) can be injected interchangeably.
"""
from __future__ import annotations

import hashlib
import json
import sqlite3
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Protocol, Tuple


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def make_request_cache_key(url: str, params: Dict[str, Any]) -> str:
    payload = json.dumps(params, sort_keys=True, separators=(",", ":"))
    raw = f"{url}|{payload}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


class ResponseCache(Protocol):
    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        ...


class NullCache:
    def get(self, key: str) -> Optional[Any]:
        return None

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        return None


class MemoryCache:
    """Best-effort in-process cache. A race between two misses only costs a duplicate fetch."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._store: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() > expires_at:
                del self._store[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        with self._lock:
            self._store[key] = (self._clock() + float(ttl_seconds), value)

    def __len__(self) -> int:
        return len(self._store)


class SqliteCache:
    def __init__(
        self,
        db_path: str,
        commit_every: int = 1,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db_path = db_path
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._clock = clock
        self._lock = threading.Lock()
        self._pending_writes = 0
        self._commit_every = max(1, int(commit_every))
        self._configure_conn()
        self._init_db()

    def _configure_conn(self) -> None:
        cur = self.conn.cursor()
        try:
            cur.execute("PRAGMA journal_mode=WAL")
            cur.fetchone()
        except sqlite3.DatabaseError:
            pass
        try:
            cur.execute("PRAGMA synchronous=NORMAL")
        except sqlite3.DatabaseError:
            pass

    def _init_db(self) -> None:
        cur = self.conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS response_cache (
                key TEXT PRIMARY KEY,
                response_json TEXT,
                created_at TEXT,
                expires_at REAL
            )
            """
        )
        self.conn.commit()

    def _mark_dirty(self) -> None:
        self._pending_writes += 1
        if self._pending_writes >= self._commit_every:
            self.commit()

    def commit(self) -> None:
        if self._pending_writes:
            self.conn.commit()
            self._pending_writes = 0

    def close(self) -> None:
        with self._lock:
            self.commit()
            self.conn.close()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("SELECT response_json, expires_at FROM response_cache WHERE key = ?", (key,))
            row = cur.fetchone()
            if not row:
                return None
            if row["expires_at"] is not None and self._clock() > float(row["expires_at"]):
                cur.execute("DELETE FROM response_cache WHERE key = ?", (key,))
                self._mark_dirty()
                return None
            return json.loads(row["response_json"])

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(
                """
                INSERT OR REPLACE INTO response_cache (key, response_json, created_at, expires_at)
                VALUES (?, ?, ?, ?)
                """,
                (key, json.dumps(value), utc_now_iso(), self._clock() + float(ttl_seconds)),
            )
            self._mark_dirty()

    def purge_expired(self) -> int:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute("DELETE FROM response_cache WHERE expires_at < ?", (self._clock(),))
            removed = cur.rowcount
            self._mark_dirty()
            return removed
