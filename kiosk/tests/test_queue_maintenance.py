import asyncio
from datetime import datetime, timedelta, timezone

from kiosk.app.offline_queue import QueueStore
from kiosk.workers.queue_maintenance import prune_synced_orders

from conftest import order_payload

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


async def _seed(store, theater_id, synced_hours_ago):
    rec = await store.append(theater_id, order_payload(f"{theater_id}-{synced_hours_ago}"))
    if synced_hours_ago is not None:
        await store.update_status(
            theater_id, rec.queue_id, {"status": "synced", "synced_at": NOW - timedelta(hours=synced_hours_ago)}
        )
    return rec


def test_prunes_old_synced_orders_across_theaters(kv):
    store = QueueStore(kv)

    async def run():
        await _seed(store, "T1", 48)
        await _seed(store, "T1", 1)
        await _seed(store, "T1", None)
        await _seed(store, "T2", 30)
        pruned = await prune_synced_orders(kv, 24, now=NOW)
        return pruned, len(await store.list("T1")), len(await store.list("T2"))

    pruned, t1_left, t2_left = asyncio.run(run())
    assert pruned == {"T1": 1, "T2": 1}
    assert t1_left == 2
    assert t2_left == 0


def test_single_theater_prune(kv):
    store = QueueStore(kv)

    async def run():
        await _seed(store, "T1", 48)
        await _seed(store, "T2", 48)
        pruned = await prune_synced_orders(kv, 24, theater_id="T2", now=NOW)
        return pruned, len(await store.list("T1"))

    pruned, t1_left = asyncio.run(run())
    assert pruned == {"T2": 1}
    assert t1_left == 1


def test_pending_orders_survive_any_retention(kv):
    store = QueueStore(kv)

    async def run():
        await _seed(store, "T1", None)
        pruned = await prune_synced_orders(kv, 0, now=NOW + timedelta(days=365))
        return pruned, await store.pending_count("T1")

    assert asyncio.run(run()) == ({"T1": 0}, 1)
