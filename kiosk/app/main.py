import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import settings
from .errors import StorageUnavailable
from .logs import json_log
from .routers.catalog import router as catalog_router
from .routers.offline_queue import router as offline_queue_router
from .runtime import OfflineRuntime


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def create_app(runtime: Optional[OfflineRuntime] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "runtime", None) is None:
            app.state.runtime = OfflineRuntime()
        json_log("info", "startup", env=settings.env, version=settings.api_version, api_base_url=settings.api_base_url)
        try:
            yield
        finally:
            await app.state.runtime.aclose()
            json_log("info", "shutdown")

    app = FastAPI(title="Kiosk Offline Order Queue", version=settings.api_version, lifespan=lifespan)
    app.state.runtime = runtime

    # An order that cannot be queued is a lost sale: make it loud for the POS screen.
    @app.exception_handler(StorageUnavailable)
    def _storage_unavailable(req: Request, exc: Exception):
        json_log("error", "offline_queue.storage_unavailable", request_id=_current_request_id(req), path=req.url.path, error=str(exc))
        content = {"detail": "offline storage unavailable"}
        if settings.env in {"local", "dev"}:
            content["error"] = str(exc)
        return JSONResponse(status_code=507, content=content)

    @app.exception_handler(RequestValidationError)
    def _request_validation_error(_req: Request, exc: Exception):
        content = {"detail": "validation failed"}
        if settings.env in {"local", "dev"} and hasattr(exc, "errors"):
            content["errors"] = exc.errors()
        return JSONResponse(status_code=422, content=content)

    @app.exception_handler(Exception)
    def _unhandled_exception(req: Request, exc: Exception):
        rid = _current_request_id(req)
        json_log(
            "error",
            "http.request.unhandled",
            request_id=rid,
            method=req.method,
            path=req.url.path,
            error=str(exc),
        )
        content = {"detail": "internal error", "request_id": rid}
        if settings.env in {"local", "dev"}:
            content["error"] = str(exc)
        return JSONResponse(status_code=500, content=content)

    # Correlation id + basic structured request logging.
    @app.middleware("http")
    async def _request_logging(request: Request, call_next):
        rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
        request.state.request_id = rid
        started = time.time()
        path = request.url.path
        method = request.method

        try:
            response = await call_next(request)
        except Exception as exc:
            json_log(
                "error",
                "http.request.error",
                request_id=rid,
                method=method,
                path=path,
                duration_ms=int((time.time() - started) * 1000),
                error=str(exc),
            )
            raise

        response.headers["X-Request-Id"] = rid
        if path != "/health":
            json_log(
                "info",
                "http.request",
                request_id=rid,
                method=method,
                path=path,
                status_code=response.status_code,
                duration_ms=int((time.time() - started) * 1000),
            )
        return response

    # The POS screen is served from a different origin during development.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health():
        return {"ok": True, "version": settings.api_version}

    app.include_router(offline_queue_router)
    app.include_router(catalog_router)
    return app


app = create_app()
