"""FastAPI application factory for festpass."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from festpass import event_log
from festpass.adapters.object_storage import LocalObjectStorage, resolve_signing_secret
from festpass.defaults import SIGNED_URL_TTL_SECONDS
from festpass.errors import FestpassError
from festpass.observability import add_observability_middleware
from festpass.ports import ObjectStoragePort

from festpass.api.routers import events, files, health, jobs, registrations

log = logging.getLogger("festpass.api")


def _describe_validation_error(exc: RequestValidationError) -> str:
    """``field.path: message`` for the first complaint pydantic raised."""
    for error in exc.errors():
        where = ".".join(str(part) for part in error.get("loc", ()))
        what = error.get("msg", "Invalid input")
        return f"{where}: {what}" if where else what
    return "Invalid JSON body"


def _install_error_handlers(app: FastAPI) -> None:
    """Every error leaves the API as ``{"error": ..., "reason_code": ...}``."""

    @app.exception_handler(FestpassError)
    async def on_festpass_error(request: Request, exc: FestpassError):
        if exc.http_status >= 500:
            log.error("%s on %s %s: %s", type(exc).__name__, request.method,
                      request.url.path, exc.message)
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(HTTPException)
    async def on_http_error(request: Request, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @app.exception_handler(RequestValidationError)
    async def on_invalid_body(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content={"error": _describe_validation_error(exc), "reason_code": "invalid_body"},
        )

    @app.exception_handler(Exception)
    async def on_unhandled(request: Request, exc: Exception):
        log.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": str(exc)})


def create_app(
    db_path: str | Path = "",
    storage: ObjectStoragePort | None = None,
    signing_secret: str = "",
) -> FastAPI:
    """Build and return a configured FastAPI application."""
    app = FastAPI(
        title="festpass",
        description="Festival registration and credential generation",
        version="0.1.0",
    )

    resolved_db_path = str(db_path) if db_path else os.environ.get(
        "FESTPASS_DB_PATH", str(Path(".festpass") / "state.db"),
    )
    app.state.db_path = resolved_db_path
    app.state.signing_secret = resolve_signing_secret(signing_secret)
    app.state.storage = storage or LocalObjectStorage.from_env(app.state.signing_secret)
    app.state.signed_url_ttl = int(
        os.environ.get("FESTPASS_SIGNED_URL_TTL", str(SIGNED_URL_TTL_SECONDS))
    )

    # Store backend (sqlite/postgres) comes from the runtime env.
    event_log.init(
        db_path=resolved_db_path,
        backend=os.environ.get("FESTPASS_DB_BACKEND"),
        dsn=os.environ.get("FESTPASS_PG_DSN"),
    )

    _install_error_handlers(app)

    # Last added = outermost
    add_observability_middleware(app)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    api = APIRouter()
    for module in (registrations, events, jobs):
        api.include_router(module.router)
    app.include_router(api, prefix="/api")

    # Health, metrics and signed file links live outside /api.
    app.include_router(health.router)
    app.include_router(files.router)

    return app
