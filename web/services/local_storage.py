from __future__ import annotations

import os
import sqlite3
import threading
from typing import Dict, List, Optional


DEFAULT_QUOTA_BYTES = 5 * 1024 * 1024


class QuotaExceededError(Exception):
    """Writing the value would push the origin past its storage quota."""


class LocalStorage:
    """Per-origin persistent string key/value store with browser Storage semantics.

    Sizes are counted as len(key) + len(value) in characters, the way browsers
    account localStorage usage.
    """

    def __init__(
        self,
        db_path: str = "/var/lib/whisper-box/localstorage.db",
        origin: str = "https://oldfish101240.github.io",
        quota_bytes: int = DEFAULT_QUOTA_BYTES,
    ):
        self.db_path = db_path
        self.origin = origin
        self.quota_bytes = int(quota_bytes)
        self.init_db()

    def _connect(self) -> sqlite3.Connection:
        parent = os.path.dirname(self.db_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=3, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA busy_timeout=3000;")
        return conn

    def init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS storage (
                    origin TEXT NOT NULL,
                    k TEXT NOT NULL,
                    v TEXT NOT NULL,
                    PRIMARY KEY(origin, k)
                );
                """
            )

    def get_item(self, key: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT v FROM storage WHERE origin=? AND k=?",
                (self.origin, str(key)),
            ).fetchone()
        return str(row[0]) if row else None

    def set_item(self, key: str, value: str) -> None:
        k = str(key)
        v = str(value)
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COALESCE(SUM(LENGTH(k) + LENGTH(v)), 0) FROM storage WHERE origin=? AND k<>?",
                (self.origin, k),
            ).fetchone()
            if int(row[0] or 0) + len(k) + len(v) > self.quota_bytes:
                raise QuotaExceededError(f"Storage quota of {self.quota_bytes} exceeded writing {k!r}")
            conn.execute(
                "INSERT INTO storage(origin,k,v) VALUES(?,?,?) ON CONFLICT(origin,k) DO UPDATE SET v=excluded.v",
                (self.origin, k, v),
            )

    def remove_item(self, key: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM storage WHERE origin=? AND k=?", (self.origin, str(key)))

    def keys(self) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT k FROM storage WHERE origin=? ORDER BY k ASC",
                (self.origin,),
            ).fetchall()
        return [str(r[0]) for r in rows]

    def clear(self) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM storage WHERE origin=?", (self.origin,))

    def used_bytes(self) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COALESCE(SUM(LENGTH(k) + LENGTH(v)), 0) FROM storage WHERE origin=?",
                (self.origin,),
            ).fetchone()
        return int(row[0] or 0)


class SessionStorage:
    """In-memory store scoped to one browsing session (one instance)."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(str(key))

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            self._data[str(key)] = str(value)

    def remove_item(self, key: str) -> None:
        with self._lock:
            self._data.pop(str(key), None)

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._data)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


_local: Optional[LocalStorage] = None


def get_local_storage() -> LocalStorage:
    global _local
    if _local is None:
        def _env_int(name: str, default: int) -> int:
            v = (os.environ.get(name) or "").strip()
            if not v:
                return int(default)
            try:
                return int(v)
            except Exception:
                return int(default)

        _local = LocalStorage(
            db_path=os.environ.get("LOCAL_STORAGE_DB", "/var/lib/whisper-box/localstorage.db"),
            origin=os.environ.get("LOCAL_STORAGE_ORIGIN", "https://oldfish101240.github.io"),
            quota_bytes=_env_int("LOCAL_STORAGE_QUOTA_BYTES", DEFAULT_QUOTA_BYTES),
        )
    return _local
