from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..catalog_cache import storage_stats
from ..deps import get_controller, get_runtime
from ..models import OrderIn, SyncResult
from ..offline_controller import OfflineQueueController
from ..runtime import OfflineRuntime

router = APIRouter(prefix="/offline-queue", tags=["offline-queue"])


class ConnectivityIn(BaseModel):
    online: bool


def _sync_response(result: SyncResult | None):
    if result is None:
        return JSONResponse(status_code=409, content={"skipped": "already_syncing"})
    return result.to_json()


@router.post("/{theater_id}/orders", status_code=201)
async def add_order(data: OrderIn, ctl: OfflineQueueController = Depends(get_controller)):
    order = await ctl.add_order(data.to_payload())
    return {"order": order.to_json(), "pendingCount": ctl.pending_count}


@router.get("/{theater_id}")
async def get_queue(ctl: OfflineQueueController = Depends(get_controller)):
    await ctl.refresh()
    return ctl.view()


@router.get("/{theater_id}/status")
async def get_status(ctl: OfflineQueueController = Depends(get_controller)):
    await ctl.refresh()
    return ctl.get_status()


@router.get("/{theater_id}/stats")
async def get_stats(
    ctl: OfflineQueueController = Depends(get_controller),
    runtime: OfflineRuntime = Depends(get_runtime),
):
    return await storage_stats(runtime.store, runtime.catalog, ctl.theater_id)


@router.post("/{theater_id}/sync")
async def manual_sync(ctl: OfflineQueueController = Depends(get_controller)):
    return _sync_response(await ctl.manual_sync())


@router.post("/{theater_id}/retry-failed")
async def retry_failed(ctl: OfflineQueueController = Depends(get_controller)):
    return _sync_response(await ctl.retry_failed())


@router.post("/{theater_id}/connectivity")
async def report_connectivity(
    data: ConnectivityIn,
    ctl: OfflineQueueController = Depends(get_controller),
    runtime: OfflineRuntime = Depends(get_runtime),
):
    runtime.connectivity.set_online(data.online)
    return ctl.get_status()
