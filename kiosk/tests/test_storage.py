import asyncio
import sqlite3

import pytest

from kiosk.app.errors import StorageUnavailable
from kiosk.app.storage import SqliteKeyValueStore


def test_sqlite_store_basic_ops(tmp_path):
    kv = SqliteKeyValueStore(str(tmp_path / "kv.sqlite"))

    async def run():
        await kv.set("offline_orders_queue_T1", "[]")
        await kv.set("offline_orders_queue_T1", '[{"x": 1}]')
        await kv.set("offlineXorders", "nope")
        value = await kv.get("offline_orders_queue_T1")
        keys = await kv.keys("offline_orders_queue_")
        await kv.delete("offline_orders_queue_T1")
        return value, keys, await kv.get("offline_orders_queue_T1")

    value, keys, gone = asyncio.run(run())
    assert value == '[{"x": 1}]'
    assert keys == ["offline_orders_queue_T1"]
    assert gone is None


def test_unusable_database_path_raises_storage_unavailable(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x")
    kv = SqliteKeyValueStore(str(blocker / "kv.sqlite"))
    with pytest.raises(StorageUnavailable):
        asyncio.run(kv.set("k", "v"))


def test_sqlite_connections_are_closed_after_each_operation(tmp_path):
    opened = []

    class TrackingStore(SqliteKeyValueStore):
        def _connect(self):
            conn = sqlite3.connect(self.path, timeout=5, check_same_thread=False)
            opened.append(conn)
            return conn

    kv = TrackingStore(str(tmp_path / "kv.sqlite"))

    async def run():
        await kv.set("k", "v")
        await kv.get("k")
        await kv.keys("")
        await kv.delete("k")

    asyncio.run(run())
    assert opened
    for conn in opened:
        with pytest.raises(sqlite3.ProgrammingError):
            conn.execute("SELECT 1")
