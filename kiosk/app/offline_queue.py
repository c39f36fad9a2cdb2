"""
Durable, theater-scoped queue of orders taken while the kiosk may be offline.

Each theater's queue is a single JSON document in the key-value store. All
read-modify-write cycles for a theater run under that theater's lock, which is
what makes `claim()` a real compare-and-set: two drains racing for the same
order cannot both move it out of pending/failed.

A queue document that no longer parses is treated as lost: it is logged and
reset to empty instead of raising into the POS screen.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from pydantic import ValidationError

from .config import settings
from .errors import NotFound, StorageUnavailable
from .logs import json_log
from .models import QueuedOrder
from .storage import KeyValueStore
from .validation import QUEUE_ELIGIBLE

ORDERS_QUEUE_PREFIX = "offline_orders_queue_"
LAST_SYNC_PREFIX = "offline_last_sync_time_"

_PATCHABLE = {"status", "attempts", "last_error", "synced_at", "last_attempt_at", "server_order"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_queue_id(now: Optional[datetime] = None) -> str:
    ms = int((now or _utcnow()).timestamp() * 1000)
    return f"offline_{ms}_{uuid.uuid4().hex[:9]}"


def _norm_theater(theater_id) -> str:
    tid = str(theater_id or "").strip()
    if not tid:
        raise ValueError("theater_id is required")
    return tid


class QueueStore:
    def __init__(
        self,
        kv: KeyValueStore,
        *,
        max_queue_size: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.kv = kv
        self.max_queue_size = int(max_queue_size if max_queue_size is not None else settings.max_queue_size)
        self._clock = clock or _utcnow
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, theater_id: str) -> asyncio.Lock:
        lock = self._locks.get(theater_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[theater_id] = lock
        return lock

    async def _reset_corrupt(self, theater_id: str, key: str, reason: str) -> None:
        json_log("error", "offline_queue.corrupt", theater_id=theater_id, reason=reason)
        try:
            await self.kv.delete(key)
        except StorageUnavailable as ex:
            # The corrupt document stays on disk; reads keep treating it as empty.
            json_log("error", "offline_queue.reset_failed", theater_id=theater_id, error=str(ex))

    async def _load(self, theater_id: str) -> list[QueuedOrder]:
        key = ORDERS_QUEUE_PREFIX + theater_id
        raw = await self.kv.get(key)
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except ValueError as ex:
            await self._reset_corrupt(theater_id, key, f"invalid json: {ex}")
            return []
        if not isinstance(data, list):
            await self._reset_corrupt(theater_id, key, f"expected list, got {type(data).__name__}")
            return []

        orders: list[QueuedOrder] = []
        for entry in data:
            try:
                orders.append(QueuedOrder.model_validate(entry))
            except ValidationError as ex:
                queue_id = entry.get("queueId") if isinstance(entry, dict) else None
                json_log("warning", "offline_queue.entry_dropped", theater_id=theater_id, queue_id=queue_id, error=str(ex))
        # sort() is stable: equal timestamps keep insertion order.
        orders.sort(key=lambda o: o.created_at)
        return orders

    async def _save(self, theater_id: str, orders: list[QueuedOrder]) -> None:
        body = json.dumps([o.to_json() for o in orders])
        await self.kv.set(ORDERS_QUEUE_PREFIX + theater_id, body)

    def _make_room(self, theater_id: str, orders: list[QueuedOrder]) -> list[QueuedOrder]:
        if self.max_queue_size <= 0 or len(orders) < self.max_queue_size:
            return orders
        overflow = len(orders) - self.max_queue_size + 1
        evict = {o.queue_id for o in [o for o in orders if o.status == "synced"][:overflow]}
        kept = [o for o in orders if o.queue_id not in evict]
        if evict:
            json_log("info", "offline_queue.evicted_synced", theater_id=theater_id, count=len(evict))
        if len(kept) >= self.max_queue_size:
            # Unsynced orders are never dropped to make room.
            json_log("warning", "offline_queue.over_capacity", theater_id=theater_id, size=len(kept), limit=self.max_queue_size)
        return kept

    async def append(self, theater_id: str, order_payload: dict[str, Any]) -> QueuedOrder:
        tid = _norm_theater(theater_id)
        if not isinstance(order_payload, dict):
            raise ValueError("order payload must be an object")
        try:
            payload = json.loads(json.dumps(order_payload))
        except (TypeError, ValueError) as ex:
            raise ValueError(f"order payload is not JSON-serializable: {ex}") from ex

        async with self._lock(tid):
            orders = self._make_room(tid, await self._load(tid))
            existing = {o.queue_id for o in orders}
            now = self._clock()
            queue_id = new_queue_id(now)
            while queue_id in existing:
                queue_id = new_queue_id(now)
            record = QueuedOrder(
                queue_id=queue_id,
                theater_id=tid,
                payload=payload,
                status="pending",
                attempts=0,
                created_at=now,
            )
            orders.append(record)
            await self._save(tid, orders)

        json_log("info", "offline_queue.appended", theater_id=tid, queue_id=queue_id, queue_size=len(orders))
        return record

    async def list(self, theater_id: str) -> list[QueuedOrder]:
        return await self._load(_norm_theater(theater_id))

    async def get(self, theater_id: str, queue_id: str) -> Optional[QueuedOrder]:
        for o in await self.list(theater_id):
            if o.queue_id == queue_id:
                return o
        return None

    async def update_status(self, theater_id: str, queue_id: str, patch: dict[str, Any]) -> QueuedOrder:
        tid = _norm_theater(theater_id)
        unknown = set(patch or {}) - _PATCHABLE
        if unknown:
            raise ValueError(f"cannot patch fields: {', '.join(sorted(unknown))}")
        async with self._lock(tid):
            orders = await self._load(tid)
            for i, o in enumerate(orders):
                if o.queue_id == queue_id:
                    updated = QueuedOrder.model_validate({**o.model_dump(), **patch})
                    orders[i] = updated
                    await self._save(tid, orders)
                    return updated
        raise NotFound(tid, queue_id)

    async def claim(
        self,
        theater_id: str,
        queue_id: str,
        from_statuses: Iterable[str] = QUEUE_ELIGIBLE,
    ) -> Optional[QueuedOrder]:
        """
        Move one order into `syncing` if it is still in one of `from_statuses`.

        Returns the claimed record, or None when the order vanished or another
        drain already owns it.
        """
        tid = _norm_theater(theater_id)
        allowed = set(from_statuses)
        async with self._lock(tid):
            orders = await self._load(tid)
            for i, o in enumerate(orders):
                if o.queue_id != queue_id:
                    continue
                if o.status not in allowed:
                    return None
                claimed = o.model_copy(update={"status": "syncing", "last_attempt_at": self._clock()})
                orders[i] = claimed
                await self._save(tid, orders)
                return claimed
        return None

    async def remove(self, theater_id: str, queue_id: str) -> bool:
        tid = _norm_theater(theater_id)
        async with self._lock(tid):
            orders = await self._load(tid)
            kept = [o for o in orders if o.queue_id != queue_id]
            if len(kept) == len(orders):
                return False
            await self._save(tid, kept)
        json_log("info", "offline_queue.removed", theater_id=tid, queue_id=queue_id, remaining=len(kept))
        return True

    async def pending_count(self, theater_id: str) -> int:
        return sum(1 for o in await self.list(theater_id) if o.status in QUEUE_ELIGIBLE)

    async def status_counts(self, theater_id: str) -> dict[str, int]:
        counts = {"total": 0, "pending": 0, "syncing": 0, "synced": 0, "failed": 0}
        for o in await self.list(theater_id):
            counts["total"] += 1
            counts[o.status] += 1
        return counts

    async def last_sync_time(self, theater_id: str) -> Optional[datetime]:
        raw = await self.kv.get(LAST_SYNC_PREFIX + _norm_theater(theater_id))
        if not raw:
            return None
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            return None

    async def set_last_sync_time(self, theater_id: str, when: Optional[datetime] = None) -> datetime:
        when = when or self._clock()
        await self.kv.set(LAST_SYNC_PREFIX + _norm_theater(theater_id), when.isoformat())
        return when

    async def recover_stale(self, theater_id: str) -> int:
        """Return orders left in `syncing` by a crashed drain to `pending`."""
        tid = _norm_theater(theater_id)
        async with self._lock(tid):
            orders = await self._load(tid)
            stale = [i for i, o in enumerate(orders) if o.status == "syncing"]
            if not stale:
                return 0
            for i in stale:
                orders[i] = orders[i].model_copy(update={"status": "pending"})
            await self._save(tid, orders)
        json_log("warning", "offline_queue.recovered_stale", theater_id=tid, count=len(stale))
        return len(stale)

    async def prune_synced(self, theater_id: str, older_than: datetime) -> int:
        tid = _norm_theater(theater_id)
        async with self._lock(tid):
            orders = await self._load(tid)
            kept = [
                o for o in orders
                if not (o.status == "synced" and (o.synced_at or o.created_at) < older_than)
            ]
            pruned = len(orders) - len(kept)
            if pruned:
                await self._save(tid, kept)
        return pruned

    async def clear(self, theater_id: str) -> None:
        tid = _norm_theater(theater_id)
        async with self._lock(tid):
            await self.kv.delete(ORDERS_QUEUE_PREFIX + tid)
        json_log("warning", "offline_queue.cleared", theater_id=tid)

    async def theater_ids(self) -> list[str]:
        keys = await self.kv.keys(ORDERS_QUEUE_PREFIX)
        return [k[len(ORDERS_QUEUE_PREFIX):] for k in keys]
