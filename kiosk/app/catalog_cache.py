from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from .config import settings
from .logs import json_log
from .offline_queue import LAST_SYNC_PREFIX, ORDERS_QUEUE_PREFIX, QueueStore
from .storage import KeyValueStore

PRODUCTS_PREFIX = "offline_products_cache_"
CATEGORIES_PREFIX = "offline_categories_cache_"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CatalogCache:
    """Last known product/category lists per theater, so the POS can sell offline."""

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        ttl: Optional[timedelta] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.kv = kv
        self.ttl = ttl if ttl is not None else timedelta(hours=settings.catalog_ttl_hours)
        self._clock = clock or _utcnow

    async def _put(self, prefix: str, theater_id: str, rows: list[dict[str, Any]]) -> None:
        doc = {"cachedAt": self._clock().isoformat(), "items": list(rows or [])}
        await self.kv.set(prefix + theater_id, json.dumps(doc, default=str))

    async def _read(self, prefix: str, theater_id: str) -> Optional[list[dict[str, Any]]]:
        raw = await self.kv.get(prefix + theater_id)
        if not raw:
            return None
        try:
            doc = json.loads(raw)
            cached_at = datetime.fromisoformat(doc["cachedAt"])
            items = doc["items"]
        except (ValueError, KeyError, TypeError) as ex:
            json_log("warning", "catalog_cache.corrupt", theater_id=theater_id, key=prefix, error=str(ex))
            return None
        if self._clock() - cached_at >= self.ttl:
            return None
        return items if isinstance(items, list) else None

    async def cache_products(self, theater_id: str, products: list[dict[str, Any]]) -> None:
        await self._put(PRODUCTS_PREFIX, theater_id, products)
        json_log("info", "catalog_cache.products_cached", theater_id=theater_id, count=len(products or []))

    async def get_products(self, theater_id: str) -> Optional[list[dict[str, Any]]]:
        return await self._read(PRODUCTS_PREFIX, theater_id)

    async def cache_categories(self, theater_id: str, categories: list[dict[str, Any]]) -> None:
        await self._put(CATEGORIES_PREFIX, theater_id, categories)
        json_log("info", "catalog_cache.categories_cached", theater_id=theater_id, count=len(categories or []))

    async def get_categories(self, theater_id: str) -> Optional[list[dict[str, Any]]]:
        return await self._read(CATEGORIES_PREFIX, theater_id)


async def clear_offline_data(kv: KeyValueStore, theater_id: str) -> None:
    """Forget everything stored for a theater, queued orders included."""
    for prefix in (ORDERS_QUEUE_PREFIX, LAST_SYNC_PREFIX, PRODUCTS_PREFIX, CATEGORIES_PREFIX):
        await kv.delete(prefix + theater_id)
    json_log("warning", "offline_data.cleared", theater_id=theater_id)


async def storage_stats(store: QueueStore, catalog: CatalogCache, theater_id: str) -> dict[str, Any]:
    counts = await store.status_counts(theater_id)
    products = await catalog.get_products(theater_id)
    categories = await catalog.get_categories(theater_id)
    last_sync = await store.last_sync_time(theater_id)
    return {
        "queuedOrders": counts["total"],
        "pendingOrders": counts["pending"] + counts["failed"],
        "cachedProducts": len(products) if products else 0,
        "cachedCategories": len(categories) if categories else 0,
        "lastSyncTime": last_sync.isoformat() if last_sync else None,
    }
