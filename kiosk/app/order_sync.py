"""
Drains a theater's offline queue into the order backend.

One drain pass submits eligible orders oldest-first, one request at a time.
Each order is claimed (moved to `syncing`) before it is sent, and always leaves
the pass as `synced` or `failed`; a failing order never stops the ones behind
it.

There are two retry layers:
- inside one submission, connection failures where the request never reached
  the server are retried with a short capped backoff;
- across drains, `failed` orders are picked up again by the next pass, up to
  `max_attempts`, after which only an explicit "retry failed" resubmits them.

HTTP errors and read timeouts are never retried inside a pass since the backend
may already have seen the order.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional

import httpx

from .config import settings
from .connectivity import ConnectivityMonitor
from .errors import NotFound, Offline, StorageUnavailable, SubmissionFailed
from .logs import json_log
from .models import QueuedOrder, SyncResult
from .offline_queue import QueueStore
from .validation import QUEUE_ELIGIBLE

ORDER_ENDPOINT = "/theater-orders"
SUBMIT_RETRY_DELAYS = (1.0, 2.0, 4.0)
SUBMIT_RETRY_CAP_S = 5.0

ProgressCallback = Callable[[int, int, QueuedOrder], Any]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_order_body(order: QueuedOrder) -> dict:
    p = order.payload or {}
    items = []
    for it in p.get("items") or []:
        if not isinstance(it, dict):
            raise SubmissionFailed("invalid order item")
        try:
            quantity = int(it.get("quantity") or 0)
        except (TypeError, ValueError) as ex:
            raise SubmissionFailed(f"invalid quantity for product {it.get('productId')}") from ex
        items.append(
            {
                "productId": str(it.get("productId") or it.get("_id") or "").strip(),
                "quantity": quantity,
                "specialInstructions": str(it.get("specialInstructions") or ""),
            }
        )
    body = {
        "customerName": str(p.get("customerName") or "POS").strip() or "POS",
        "items": items,
        "orderNotes": str(p.get("orderNotes") or p.get("notes") or ""),
        "paymentMethod": str(p.get("paymentMethod") or "cash"),
        "theaterId": order.theater_id,
    }
    for key in ("qrName", "seat"):
        if p.get(key):
            body[key] = p[key]
    return body


def _error_message(resp: httpx.Response, data: dict) -> str:
    msg = str(data.get("message") or data.get("detail") or "").strip()
    return msg or f"HTTP {resp.status_code}"


class OrderSyncEngine:
    def __init__(
        self,
        store: QueueStore,
        client: httpx.AsyncClient,
        connectivity: ConnectivityMonitor,
        *,
        api_base_url: Optional[str] = None,
        request_timeout_s: Optional[float] = None,
        max_attempts: Optional[int] = None,
        retry_delays: Iterable[float] = SUBMIT_RETRY_DELAYS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.client = client
        self.connectivity = connectivity
        self.api_base_url = (api_base_url or settings.api_base_url).rstrip("/")
        self.request_timeout_s = float(request_timeout_s if request_timeout_s is not None else settings.request_timeout_s)
        self.max_attempts = int(max_attempts if max_attempts is not None else settings.max_attempts)
        self.retry_delays = [min(float(d), SUBMIT_RETRY_CAP_S) for d in retry_delays]
        self._sleep = sleep
        self._clock = clock or _utcnow

    async def upload_order(self, order: QueuedOrder, auth_token: str) -> dict:
        """Submit one order; returns the server's order object or raises SubmissionFailed."""
        url = f"{self.api_base_url}{ORDER_ENDPOINT}"
        body = build_order_body(order)
        headers = {
            "Authorization": f"Bearer {auth_token}",
            "Idempotency-Key": order.queue_id,
        }

        attempt = 0
        while True:
            try:
                resp = await self.client.post(url, json=body, headers=headers, timeout=self.request_timeout_s)
                break
            except (httpx.ConnectError, httpx.ConnectTimeout) as ex:
                # Nothing reached the server, so resending cannot duplicate the order.
                if attempt < len(self.retry_delays):
                    delay = self.retry_delays[attempt]
                    attempt += 1
                    json_log("info", "order_sync.upload.retry", queue_id=order.queue_id, attempt=attempt, delay_s=delay, error=str(ex))
                    await self._sleep(delay)
                    continue
                raise SubmissionFailed(f"network error: {ex}") from ex
            except httpx.TimeoutException as ex:
                raise SubmissionFailed(f"request timed out after {self.request_timeout_s:g}s") from ex
            except httpx.HTTPError as ex:
                raise SubmissionFailed(f"network error: {ex}") from ex

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        if not resp.is_success:
            raise SubmissionFailed(_error_message(resp, data), status_code=resp.status_code)
        if not data.get("success"):
            raise SubmissionFailed(str(data.get("message") or "Order upload failed"), status_code=resp.status_code)
        return data.get("order") or {}

    async def drain(self, theater_id: str, auth_token: str, on_progress: Optional[ProgressCallback] = None) -> SyncResult:
        return await self._drain(theater_id, auth_token, on_progress, statuses=QUEUE_ELIGIBLE, apply_cap=True)

    async def retry_failed_only(
        self, theater_id: str, auth_token: str, on_progress: Optional[ProgressCallback] = None
    ) -> SyncResult:
        return await self._drain(theater_id, auth_token, on_progress, statuses=frozenset({"failed"}), apply_cap=False)

    def _under_cap(self, orders: list[QueuedOrder]) -> list[QueuedOrder]:
        if self.max_attempts <= 0:
            return orders
        return [o for o in orders if o.attempts < self.max_attempts]

    async def eligible_count(self, theater_id: str) -> int:
        """Orders the next automatic drain would submit."""
        orders = [o for o in await self.store.list(theater_id) if o.status in QUEUE_ELIGIBLE]
        return len(self._under_cap(orders))

    async def _release_claim(self, theater_id: str, order: QueuedOrder) -> None:
        """Put a claimed order back to its pre-claim status after a failed status write."""
        try:
            await self.store.update_status(theater_id, order.queue_id, {"status": order.status})
        except (StorageUnavailable, NotFound) as ex:
            # Left in `syncing`; the controller's recovery pass picks it up.
            json_log("error", "order_sync.release_failed", theater_id=theater_id, queue_id=order.queue_id, error=str(ex))

    def _notify(self, on_progress: Optional[ProgressCallback], current: int, total: int, order: QueuedOrder) -> None:
        if on_progress is None:
            return
        try:
            on_progress(current, total, order)
        except Exception as ex:
            json_log("error", "order_sync.progress_callback.error", queue_id=order.queue_id, error=str(ex))

    async def _drain(
        self,
        theater_id: str,
        auth_token: str,
        on_progress: Optional[ProgressCallback],
        *,
        statuses: frozenset,
        apply_cap: bool,
    ) -> SyncResult:
        if not await self.connectivity.probe():
            json_log("info", "order_sync.drain.offline", theater_id=theater_id)
            raise Offline("No internet connection")

        candidates = [o for o in await self.store.list(theater_id) if o.status in statuses]
        eligible = self._under_cap(candidates) if apply_cap else candidates
        skipped = len(candidates) - len(eligible)
        if skipped:
            json_log("warning", "order_sync.drain.attempt_cap", theater_id=theater_id, skipped=skipped, max_attempts=self.max_attempts)

        total = len(eligible)
        if total == 0:
            return SyncResult(total=0, skipped=skipped, message="No pending orders to sync")

        json_log("info", "order_sync.drain.start", theater_id=theater_id, total=total)
        succeeded = 0
        failed = 0
        for current, order in enumerate(eligible, start=1):
            claimed = await self.store.claim(theater_id, order.queue_id, statuses)
            if claimed is None:
                # Gone, or picked up by a concurrent drain.
                skipped += 1
                continue

            try:
                server_order = await self.upload_order(claimed, auth_token)
            except Exception as ex:
                failed += 1
                patch = {"status": "failed", "attempts": claimed.attempts + 1, "last_error": str(ex) or type(ex).__name__}
                json_log("warning", "order_sync.upload.failed", theater_id=theater_id, queue_id=claimed.queue_id, attempts=patch["attempts"], error=patch["last_error"])
            else:
                succeeded += 1
                patch = {"status": "synced", "synced_at": self._clock(), "last_error": None, "server_order": server_order}
                json_log("info", "order_sync.upload.ok", theater_id=theater_id, queue_id=claimed.queue_id)

            try:
                updated = await self.store.update_status(theater_id, claimed.queue_id, patch)
            except NotFound as ex:
                json_log("warning", "order_sync.record_missing", theater_id=theater_id, queue_id=claimed.queue_id, error=str(ex))
                updated = QueuedOrder.model_validate({**claimed.model_dump(), **patch})
            except StorageUnavailable:
                await self._release_claim(theater_id, order)
                raise
            self._notify(on_progress, current, total, updated)

        await self.store.set_last_sync_time(theater_id)
        # Orders lost to a concurrent drain were counted in `skipped`, not here.
        total = succeeded + failed
        json_log("info", "order_sync.drain.done", theater_id=theater_id, succeeded=succeeded, failed=failed, total=total, skipped=skipped)
        return SyncResult(
            succeeded=succeeded,
            failed=failed,
            total=total,
            skipped=skipped,
            message=f"{succeeded} orders synced successfully",
        )
