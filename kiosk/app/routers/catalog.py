from typing import Any, List

from fastapi import APIRouter, Depends, HTTPException

from ..deps import get_controller, get_runtime
from ..offline_controller import OfflineQueueController
from ..runtime import OfflineRuntime

router = APIRouter(prefix="/offline-queue", tags=["offline-catalog"])


@router.put("/{theater_id}/catalog/products")
async def cache_products(
    products: List[dict[str, Any]],
    ctl: OfflineQueueController = Depends(get_controller),
    runtime: OfflineRuntime = Depends(get_runtime),
):
    await runtime.catalog.cache_products(ctl.theater_id, products)
    return {"ok": True, "count": len(products)}


@router.get("/{theater_id}/catalog/products")
async def get_products(
    ctl: OfflineQueueController = Depends(get_controller),
    runtime: OfflineRuntime = Depends(get_runtime),
):
    products = await runtime.catalog.get_products(ctl.theater_id)
    if products is None:
        raise HTTPException(status_code=404, detail="no cached products")
    return {"products": products}


@router.put("/{theater_id}/catalog/categories")
async def cache_categories(
    categories: List[dict[str, Any]],
    ctl: OfflineQueueController = Depends(get_controller),
    runtime: OfflineRuntime = Depends(get_runtime),
):
    await runtime.catalog.cache_categories(ctl.theater_id, categories)
    return {"ok": True, "count": len(categories)}


@router.get("/{theater_id}/catalog/categories")
async def get_categories(
    ctl: OfflineQueueController = Depends(get_controller),
    runtime: OfflineRuntime = Depends(get_runtime),
):
    categories = await runtime.catalog.get_categories(ctl.theater_id)
    if categories is None:
        raise HTTPException(status_code=404, detail="no cached categories")
    return {"categories": categories}
