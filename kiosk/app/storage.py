"""
Key-value persistence port for the kiosk's offline state.

Values are JSON text, the same shape the browser POS kept in localStorage, so a
queue document can be inspected or repaired by hand. Everything above this
layer talks to the async contract only; the SQLite adapter is what a kiosk
runs with, the in-memory one is for tests and throwaway sessions.
"""

from __future__ import annotations

import asyncio
import os
import sqlite3
from contextlib import closing
from datetime import datetime, timezone
from typing import Optional, Protocol

from .errors import StorageUnavailable


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def keys(self, prefix: str = "") -> list[str]: ...


class MemoryKeyValueStore:
    def __init__(self, initial: Optional[dict[str, str]] = None) -> None:
        self.data: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)

    async def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self.data if k.startswith(prefix))


SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
)
"""


class SqliteKeyValueStore:
    def __init__(self, path: str) -> None:
        self.path = os.path.abspath(path)
        self._initialized = False

    def _connect(self):
        return sqlite3.connect(self.path, timeout=5)

    def init_db(self) -> None:
        parent = os.path.dirname(self.path)
        try:
            if parent:
                os.makedirs(parent, exist_ok=True)
            with closing(self._connect()) as conn:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute(SCHEMA)
                conn.commit()
        except (sqlite3.Error, OSError) as ex:
            raise StorageUnavailable(f"cannot open offline store {self.path}: {ex}") from ex
        self._initialized = True

    def _ensure(self) -> None:
        if not self._initialized:
            self.init_db()

    def _get(self, key: str) -> Optional[str]:
        self._ensure()
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
            return row[0] if row else None

    def _set(self, key: str, value: str) -> None:
        self._ensure()
        now = datetime.now(timezone.utc).isoformat()
        with closing(self._connect()) as conn:
            conn.execute(
                """
                INSERT INTO kv_store (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT (key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, value, now),
            )
            conn.commit()

    def _delete(self, key: str) -> None:
        self._ensure()
        with closing(self._connect()) as conn:
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            conn.commit()

    def _keys(self, prefix: str) -> list[str]:
        self._ensure()
        with closing(self._connect()) as conn:
            # LIKE treats _ as a wildcard and our key prefixes are full of them.
            rows = conn.execute("SELECT key FROM kv_store ORDER BY key").fetchall()
            return [r[0] for r in rows if r[0].startswith(prefix)]

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as ex:
            raise StorageUnavailable(str(ex)) from ex

    async def get(self, key: str) -> Optional[str]:
        return await self._run(self._get, key)

    async def set(self, key: str, value: str) -> None:
        await self._run(self._set, key, value)

    async def delete(self, key: str) -> None:
        await self._run(self._delete, key)

    async def keys(self, prefix: str = "") -> list[str]:
        return await self._run(self._keys, prefix)
