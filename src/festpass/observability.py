"""Observability: structured logging, OTLP tracing, Prometheus metrics.

OTLP tracing is optional: it works when opentelemetry packages are installed,
degrades gracefully otherwise.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import defaultdict
from typing import Any

from fastapi import FastAPI, Request, Response

_HTTP_ERROR_THRESHOLD = 500
_MS_PER_SECOND = 1000

# Context attached through ``extra=`` that is copied into the JSON line.
_CONTEXT_FIELDS = (
    "trace_id", "registration_id", "job_id", "attempt",
    "method", "path", "status_code", "duration_ms",
)

_NOISY_LOGGERS = ("uvicorn.access", "httpx", "PIL")


# ---------------------------------------------------------------------------
# Structured JSON logging
# ---------------------------------------------------------------------------

class JsonFormatter(logging.Formatter):
    """One JSON object per line; context fields only when set."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(
            (field, value)
            for field in _CONTEXT_FIELDS
            if (value := getattr(record, field, None)) is not None
        )
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Route everything through a single JSON handler on stderr."""
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# OTLP tracing (optional)
# ---------------------------------------------------------------------------

_tracer = None

try:
    from opentelemetry import trace
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

    _HAS_OTLP = True
except ImportError:
    _HAS_OTLP = False


def setup_tracing(service_name: str = "festpass") -> None:
    """Initialise OpenTelemetry tracing if packages are available."""
    global _tracer
    if not _HAS_OTLP:
        return
    provider = TracerProvider()
    try:
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        exporter = OTLPSpanExporter()
    except ImportError:
        exporter = ConsoleSpanExporter()
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    _tracer = trace.get_tracer(service_name)


def get_tracer():
    """Return the OTLP tracer (or None if not available)."""
    return _tracer


# ---------------------------------------------------------------------------
# Prometheus-compatible metrics (no external dependency)
# ---------------------------------------------------------------------------

class _Counter:
    """A labelled counter rendered in the text exposition format."""

    def __init__(self, name: str, help_text: str, labels: tuple[str, ...], kind: str = "counter") -> None:
        self.name = name
        self.help_text = help_text
        self.labels = labels
        self.kind = kind
        self.values: dict[tuple[str, ...], float] = defaultdict(float)

    def add(self, *label_values: str, amount: float = 1) -> None:
        self.values[label_values] += amount

    def render(self, suffix: str = "", fmt: str = "{:g}") -> list[str]:
        lines = []
        for label_values, value in sorted(self.values.items()):
            pairs = ",".join(f'{k}="{v}"' for k, v in zip(self.labels, label_values))
            lines.append(f"{self.name}{suffix}{{{pairs}}} {fmt.format(value)}")
        return lines

    def header(self) -> list[str]:
        return [f"# HELP {self.name} {self.help_text}", f"# TYPE {self.name} {self.kind}"]


_metrics_lock = threading.Lock()
_requests = _Counter(
    "festpass_http_requests_total", "Total HTTP requests by method, path, status.",
    ("method", "path", "status"),
)
_latency_sum = _Counter(
    "festpass_http_request_duration_seconds", "Total request duration by method and path.",
    ("method", "path"), kind="summary",
)
_latency_count = _Counter(
    "festpass_http_request_duration_seconds", "", ("method", "path"), kind="summary",
)
_errors = _Counter("festpass_http_errors_total", "Total 5xx errors.", ("method", "path"))
_jobs = _Counter("festpass_jobs_total", "Job transitions by type and outcome.", ("type", "outcome"))
_credentials = _Counter("festpass_credentials_total", "Rendered credentials by status.", ("status",))

_ALL = (_requests, _latency_sum, _latency_count, _errors, _jobs, _credentials)


def record_request(method: str, path: str, status: int, duration: float) -> None:
    with _metrics_lock:
        _requests.add(method, path, str(status))
        _latency_sum.add(method, path, amount=duration)
        _latency_count.add(method, path)
        if status >= _HTTP_ERROR_THRESHOLD:
            _errors.add(method, path)


def record_job(job_type: str, outcome: str) -> None:
    """Count a job transition: enqueued, duplicate, reclaimed, retried, completed, failed."""
    with _metrics_lock:
        _jobs.add(job_type, outcome)


def record_credential(status: str) -> None:
    with _metrics_lock:
        _credentials.add(status)


def reset_metrics() -> None:
    """Clear all counters (for tests)."""
    with _metrics_lock:
        for counter in _ALL:
            counter.values.clear()


def generate_metrics() -> str:
    """Render metrics in Prometheus text exposition format."""
    with _metrics_lock:
        lines = _requests.header() + _requests.render()
        lines += _latency_sum.header()
        lines += _latency_sum.render("_sum", "{:.6f}")
        lines += _latency_count.render("_count")
        for counter in (_errors, _jobs, _credentials):
            lines += counter.header() + counter.render()
    return "\n".join(lines) + "\n"


# ---------------------------------------------------------------------------
# FastAPI middleware
# ---------------------------------------------------------------------------

access_log = logging.getLogger("festpass.access")


def add_observability_middleware(app: FastAPI) -> None:
    """Time each request, count it, log it, and span it when tracing is on."""

    @app.middleware("http")
    async def observe_request(request: Request, call_next) -> Response:
        started = time.perf_counter()
        if _tracer is not None:
            with _tracer.start_as_current_span(f"{request.method} {request.url.path}"):
                response: Response = await call_next(request)
        else:
            response = await call_next(request)
        elapsed = time.perf_counter() - started

        # Route template keeps registration ids out of metric labels
        route = request.scope.get("route")
        record_request(
            request.method, getattr(route, "path", None) or request.url.path,
            response.status_code, elapsed,
        )
        elapsed_ms = round(elapsed * _MS_PER_SECOND, 1)
        access_log.info(
            "%s %s %d %.0fms", request.method, request.url.path, response.status_code, elapsed_ms,
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": elapsed_ms,
                "trace_id": request.headers.get("x-trace-id", ""),
            },
        )
        return response
