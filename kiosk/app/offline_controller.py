"""
Per-session façade a POS screen binds to.

One controller serves one theater and one auth token. It owns the auto-sync
timer and the connectivity subscription for as long as the screen is mounted
(`start()` / `close()`), and keeps a view model (`queue`, `pending_count`,
`is_syncing`, ...) that is only ever rebuilt from the store.

Drains run in their own task. Stopping the timer or closing the controller
never cancels a drain that is already submitting orders; it is left to finish
so no order is stranded in `syncing`.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

from .config import settings
from .connectivity import ConnectivityMonitor
from .errors import AlreadySyncing, Offline, StorageUnavailable
from .logs import json_log
from .models import QueuedOrder, SyncProgress, SyncResult
from .offline_queue import QueueStore
from .order_sync import OrderSyncEngine, ProgressCallback

CompleteCallback = Callable[[SyncResult], Any]


class AutoSyncHandle:
    def __init__(self, task: asyncio.Task, interval_s: float) -> None:
        self.task = task
        self.interval_s = interval_s

    @property
    def active(self) -> bool:
        return not self.task.done()


class OfflineQueueController:
    def __init__(
        self,
        theater_id: str,
        auth_token: str,
        store: QueueStore,
        engine: OrderSyncEngine,
        connectivity: ConnectivityMonitor,
        *,
        sync_interval_s: Optional[float] = None,
    ) -> None:
        self.theater_id = str(theater_id or "").strip()
        if not self.theater_id:
            raise ValueError("theater_id is required")
        self.auth_token = auth_token
        self.store = store
        self.engine = engine
        self.connectivity = connectivity
        self.sync_interval_s = float(sync_interval_s if sync_interval_s is not None else settings.sync_interval_s)

        self.queue: list[QueuedOrder] = []
        self.pending_count = 0
        self.last_sync_time = None
        self.is_syncing = False
        self.sync_error: Optional[str] = None
        self.sync_progress = SyncProgress()
        self.connection_status = "online" if connectivity.is_online else "offline"

        self._inflight: Optional[asyncio.Task] = None
        self._needs_recovery = False
        self._auto_handle: Optional[AutoSyncHandle] = None

    # -- lifecycle ---------------------------------------------------------

    async def start(
        self,
        on_complete: Optional[CompleteCallback] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        await self.store.recover_stale(self.theater_id)
        self.connectivity.subscribe(self._on_connectivity)
        await self.refresh()
        if self.auth_token and self._auto_handle is None:
            self._auto_handle = self.start_auto_sync(on_complete, on_progress)

    async def close(self) -> None:
        self.stop_auto_sync(self._auto_handle)
        self._auto_handle = None
        self.connectivity.unsubscribe(self._on_connectivity)
        inflight = self._inflight
        if inflight is not None and not inflight.done():
            json_log("info", "offline_queue.close.waiting_for_drain", theater_id=self.theater_id)
            await asyncio.wait({inflight})

    # -- state -------------------------------------------------------------

    def _on_connectivity(self, online: bool) -> None:
        # Reconnect only updates state; the timer decides when to drain.
        self.connection_status = "online" if online else "offline"
        if online:
            json_log("info", "offline_queue.connection_restored", theater_id=self.theater_id, pending=self.pending_count)
        else:
            json_log("info", "offline_queue.connection_lost", theater_id=self.theater_id)

    async def refresh(self) -> None:
        try:
            queue = await self.store.list(self.theater_id)
            last_sync = await self.store.last_sync_time(self.theater_id)
        except StorageUnavailable as ex:
            json_log("error", "offline_queue.refresh_failed", theater_id=self.theater_id, error=str(ex))
            return
        self.queue = queue
        self.pending_count = sum(1 for o in queue if o.is_pending)
        self.last_sync_time = last_sync
        self.connection_status = "online" if self.connectivity.is_online else "offline"

    def get_status(self) -> dict:
        return {
            "isOnline": self.connectivity.is_online,
            "pendingCount": self.pending_count,
            "lastSyncTime": self.last_sync_time.isoformat() if self.last_sync_time else None,
        }

    def view(self) -> dict:
        return {
            "theaterId": self.theater_id,
            "queue": [o.to_json() for o in self.queue],
            "pendingCount": self.pending_count,
            "isSyncing": self.is_syncing,
            "syncError": self.sync_error,
            "syncProgress": self.sync_progress.to_json(),
            "connectionStatus": self.connection_status,
            "lastSyncTime": self.last_sync_time.isoformat() if self.last_sync_time else None,
        }

    # -- orders ------------------------------------------------------------

    async def add_order(self, order: dict) -> QueuedOrder:
        try:
            record = await self.store.append(self.theater_id, order)
        except StorageUnavailable as ex:
            json_log("error", "offline_queue.enqueue_failed", theater_id=self.theater_id, error=str(ex))
            raise
        await self.refresh()
        return record

    # -- sync --------------------------------------------------------------

    def _begin_sync(self) -> None:
        if self.is_syncing:
            raise AlreadySyncing(self.theater_id)
        self.is_syncing = True
        self.sync_error = None

    def _progress(self, on_progress: Optional[ProgressCallback]) -> ProgressCallback:
        def _cb(current: int, total: int, order: QueuedOrder) -> None:
            self.sync_progress = SyncProgress(
                current=current,
                total=total,
                queue_id=order.queue_id,
                status=order.status,
                error=order.last_error if order.status == "failed" else None,
            )
            if on_progress is not None:
                on_progress(current, total, order)

        return _cb

    async def _recover_claims(self) -> None:
        try:
            await self.store.recover_stale(self.theater_id)
        except StorageUnavailable as ex:
            json_log("error", "offline_queue.recovery_failed", theater_id=self.theater_id, error=str(ex))
            return
        self._needs_recovery = False

    async def _run_sync(self, retry_only: bool, on_progress: Optional[ProgressCallback]) -> SyncResult:
        cb = self._progress(on_progress)
        try:
            if self._needs_recovery:
                # A previous drain died between claim and status write.
                await self._recover_claims()
            if retry_only:
                result = await self.engine.retry_failed_only(self.theater_id, self.auth_token, cb)
            else:
                result = await self.engine.drain(self.theater_id, self.auth_token, cb)
        except Offline as ex:
            result = SyncResult(offline=True, message=str(ex))
        except Exception as ex:
            self.sync_error = str(ex) or type(ex).__name__
            self._needs_recovery = True
            await self._recover_claims()
            raise
        finally:
            self.is_syncing = False
            self.sync_progress = SyncProgress()

        if result.offline:
            self.sync_error = result.message
        elif result.failed:
            self.sync_error = f"{result.failed} of {result.total} orders failed to sync"
        else:
            self.sync_error = None
        await self.refresh()
        return result

    async def _sync(self, retry_only: bool, on_progress: Optional[ProgressCallback]) -> SyncResult:
        # The shield keeps the drain running if our caller is cancelled.
        self._inflight = asyncio.ensure_future(self._run_sync(retry_only, on_progress))
        return await asyncio.shield(self._inflight)

    async def _try_sync(self, retry_only: bool, on_progress: Optional[ProgressCallback]) -> Optional[SyncResult]:
        try:
            self._begin_sync()
        except AlreadySyncing:
            json_log("info", "offline_queue.sync_already_running", theater_id=self.theater_id)
            return None
        return await self._sync(retry_only, on_progress)

    async def manual_sync(self, on_progress: Optional[ProgressCallback] = None) -> Optional[SyncResult]:
        json_log("info", "offline_queue.manual_sync", theater_id=self.theater_id)
        return await self._try_sync(False, on_progress)

    async def retry_failed(self, on_progress: Optional[ProgressCallback] = None) -> Optional[SyncResult]:
        json_log("info", "offline_queue.retry_failed", theater_id=self.theater_id)
        return await self._try_sync(True, on_progress)

    # -- auto sync ---------------------------------------------------------

    def start_auto_sync(
        self,
        on_complete: Optional[CompleteCallback] = None,
        on_progress: Optional[ProgressCallback] = None,
        interval_s: Optional[float] = None,
    ) -> AutoSyncHandle:
        interval = float(interval_s if interval_s is not None else self.sync_interval_s)
        task = asyncio.get_running_loop().create_task(self._auto_sync_loop(interval, on_complete, on_progress))
        json_log("info", "offline_queue.auto_sync.started", theater_id=self.theater_id, interval_s=interval)
        return AutoSyncHandle(task, interval)

    def stop_auto_sync(self, handle: Optional[AutoSyncHandle]) -> None:
        if handle is None or not handle.active:
            return
        handle.task.cancel()
        json_log("info", "offline_queue.auto_sync.stopped", theater_id=self.theater_id)

    async def _auto_sync_loop(
        self,
        interval: float,
        on_complete: Optional[CompleteCallback],
        on_progress: Optional[ProgressCallback],
    ) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.auto_sync_tick(on_complete, on_progress)
            except Exception as ex:
                # Keep the timer alive; the next tick retries.
                json_log("error", "offline_queue.auto_sync.error", theater_id=self.theater_id, error=str(ex))

    async def auto_sync_tick(
        self,
        on_complete: Optional[CompleteCallback] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Optional[SyncResult]:
        """
        One timer firing: drain if the network is up, nothing else is syncing
        and some order is still under the attempt cap.

        Backend reachability is left to the drain's own probe, so a backend
        outage does not stop the timer from noticing the recovery.
        """
        if not self.connectivity.network_up or self.is_syncing:
            return None
        pending = await self.engine.eligible_count(self.theater_id)
        if pending == 0:
            return None

        json_log("info", "offline_queue.auto_sync.triggered", theater_id=self.theater_id, pending=pending)
        result = await self._try_sync(False, on_progress)
        if result is not None and on_complete is not None:
            on_complete(result)
        return result
