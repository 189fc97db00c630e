"""HTTP API server entry point (uvicorn over the FastAPI app)."""

from __future__ import annotations

import logging
import os
from pathlib import Path

import uvicorn

from festpass.api import create_app
from festpass.observability import setup_logging, setup_tracing

log = logging.getLogger("festpass.server")


def serve(
    db_path: str | Path = "",
    host: str = "127.0.0.1",
    port: int = 9876,
    signing_secret: str = "",
) -> None:
    """Start the HTTP API server (blocking)."""
    setup_logging(os.environ.get("FESTPASS_LOG_LEVEL", "INFO"))
    setup_tracing("festpass-api")
    app = create_app(db_path=db_path, signing_secret=signing_secret)
    log.info("API listening on %s:%d", host, port)
    uvicorn.run(app, host=host, port=port, log_config=None)
