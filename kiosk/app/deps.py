from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from .offline_controller import OfflineQueueController
from .runtime import OfflineRuntime


def _extract_bearer_token(authorization: Optional[str]) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip()
        if token:
            return token
    raise HTTPException(status_code=401, detail="missing token")


def require_token(authorization: Optional[str] = Header(None)) -> str:
    # The kiosk never validates the token itself; the order backend does.
    return _extract_bearer_token(authorization)


def get_runtime(request: Request) -> OfflineRuntime:
    return request.app.state.runtime


async def get_controller(
    theater_id: str,
    token: str = Depends(require_token),
    runtime: OfflineRuntime = Depends(get_runtime),
) -> OfflineQueueController:
    tid = (theater_id or "").strip()
    if not tid or len(tid) > 64:
        raise HTTPException(status_code=400, detail="invalid theater_id")
    return await runtime.controller_for(tid, token)
