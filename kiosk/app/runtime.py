from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

import httpx

from .catalog_cache import CatalogCache
from .config import settings
from .connectivity import ConnectivityMonitor
from .offline_controller import OfflineQueueController
from .offline_queue import QueueStore
from .order_sync import OrderSyncEngine
from .storage import KeyValueStore, SqliteKeyValueStore


class OfflineRuntime:
    """Object graph for one kiosk agent process: one store, one backend, a controller per theater."""

    def __init__(
        self,
        kv: Optional[KeyValueStore] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        sync_interval_s: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.kv = kv if kv is not None else SqliteKeyValueStore(settings.db_path)
        self._owns_client = client is None
        self.client = client if client is not None else httpx.AsyncClient(timeout=settings.request_timeout_s)
        self.store = QueueStore(self.kv)
        self.catalog = CatalogCache(self.kv)
        self.connectivity = ConnectivityMonitor(self.client)
        self.engine = OrderSyncEngine(self.store, self.client, self.connectivity, sleep=sleep)
        self.sync_interval_s = sync_interval_s
        self.controllers: dict[str, OfflineQueueController] = {}

    async def controller_for(self, theater_id: str, auth_token: str) -> OfflineQueueController:
        tid = str(theater_id or "").strip()
        ctl = self.controllers.get(tid)
        if ctl is None:
            ctl = OfflineQueueController(
                tid,
                auth_token,
                self.store,
                self.engine,
                self.connectivity,
                sync_interval_s=self.sync_interval_s,
            )
            self.controllers[tid] = ctl
            await ctl.start()
        elif auth_token and auth_token != ctl.auth_token:
            # Token refresh is the caller's job; the next drain uses the new one.
            ctl.auth_token = auth_token
        return ctl

    async def aclose(self) -> None:
        for ctl in list(self.controllers.values()):
            await ctl.close()
        self.controllers.clear()
        if self._owns_client:
            await self.client.aclose()
