"""Expiring key/value cache persisted in SQLite."""

from __future__ import annotations

import json
import sqlite3
import time
from contextlib import closing
from pathlib import Path
from typing import Any, Callable

from cafe_billing.config import TABLE_CACHE_TTL_SECONDS
from cafe_billing.errors import StoreError

TABLE_BILLS_KEY = "tableBills"


def table_bill_key(table_id: str) -> str:
    return f"table_{table_id}_bill"


def legacy_bill_key(table_number: object) -> str:
    return f"bill_{table_number}"


class PersistedCache:
    """
    JSON values with per-entry expiry.

    Expired entries are deleted lazily when read; ``sweep`` removes the rest.
    """

    def __init__(
        self,
        db_path: str | Path,
        default_ttl: float = TABLE_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db_path = Path(db_path)
        self.default_ttl = default_ttl
        self._clock = clock
        self._bootstrap()

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        return sqlite3.connect(self.db_path)

    def _bootstrap(self) -> None:
        with closing(self._connect()) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cache_entries (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    expires_at REAL
                )
                """
            )

    def get(self, key: str) -> Any | None:
        try:
            with closing(self._connect()) as conn:
                with conn:
                    row = conn.execute("SELECT value, expires_at FROM cache_entries WHERE key = ?", (key,)).fetchone()
                    if row is None:
                        return None
                    value, expires_at = row
                    if expires_at is not None and expires_at <= self._clock():
                        conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
                        return None
        except sqlite3.Error as exc:
            raise StoreError(f"cache read {key!r}: {exc}") from exc
        return json.loads(value)

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        expires_at = self._clock() + ttl if ttl > 0 else None
        try:
            with closing(self._connect()) as conn:
                with conn:
                    conn.execute(
                        "INSERT OR REPLACE INTO cache_entries (key, value, expires_at) VALUES (?, ?, ?)",
                        (key, json.dumps(value), expires_at),
                    )
        except sqlite3.Error as exc:
            raise StoreError(f"cache write {key!r}: {exc}") from exc

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            with closing(self._connect()) as conn:
                with conn:
                    cur = conn.executemany("DELETE FROM cache_entries WHERE key = ?", [(key,) for key in keys])
                    return cur.rowcount
        except sqlite3.Error as exc:
            raise StoreError(f"cache delete {keys!r}: {exc}") from exc

    def sweep(self) -> int:
        """Delete every expired entry; returns how many were removed."""
        try:
            with closing(self._connect()) as conn:
                with conn:
                    cur = conn.execute(
                        "DELETE FROM cache_entries WHERE expires_at IS NOT NULL AND expires_at <= ?",
                        (self._clock(),),
                    )
                    return cur.rowcount
        except sqlite3.Error as exc:
            raise StoreError(f"cache sweep: {exc}") from exc

    def keys(self) -> list[str]:
        """Keys of entries that have not expired."""
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT key FROM cache_entries WHERE expires_at IS NULL OR expires_at > ? ORDER BY key",
                (self._clock(),),
            ).fetchall()
        return [key for (key,) in rows]
