"""Store facade: audit log, registrations, sequences and jobs.

All persistence is delegated to a ``FestpassStore`` instance (default:
``SqliteStore``).  The store is initialised once at startup via ``init()``
or ``configure()`` and then accessed through a module-level singleton.
The audit log is append-only; the registration row, not the job row, is
the durable record of a registration's outcome.
"""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Any, Iterable

from festpass.models import Event, Job, JobState, Registration, new_id
from festpass.ports import FestpassStore

# ---------------------------------------------------------------------------
# Store singleton (thread-safe)
# ---------------------------------------------------------------------------

_store: FestpassStore | None = None
_store_lock = threading.Lock()


def configure(store: FestpassStore) -> None:
    """Set the global store instance (useful for tests and startup).

    Closes the previous store (if any) to avoid leaked connections/pools.
    """
    global _store
    with _store_lock:
        if _store is not None and _store is not store:
            _store.close()
        _store = store


def get_store() -> FestpassStore | None:
    """Return the current store (may be None if not configured)."""
    return _store


def close() -> None:
    """Close and release the global store instance. Safe to call repeatedly."""
    global _store
    with _store_lock:
        if _store is not None:
            _store.close()
            _store = None


def _get_store() -> FestpassStore:
    if _store is None:
        raise RuntimeError(
            "Store not configured. Call event_log.init() or "
            "event_log.configure() first."
        )
    return _store


def fresh_trace_id() -> str:
    """Generate a trace ID.  Honours FESTPASS_TRACE_ID for pinning."""
    return os.environ.get("FESTPASS_TRACE_ID") or f"trace-{new_id()}"


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

def init(
    db_path: str | Path | None = None,
    *,
    backend: str | None = None,
    dsn: str | None = None,
) -> None:
    """Initialise (or re-initialise) the store through the factory."""
    from festpass.adapters.store_factory import create_store
    configure(create_store(backend=backend, db_path=db_path, dsn=dsn))


# ---------------------------------------------------------------------------
# Audit events
# ---------------------------------------------------------------------------

def append(event: Event) -> Event:
    if not event.trace_id:
        event.trace_id = fresh_trace_id()
    if not event.id:
        event.id = new_id()
    return _get_store().append(event)


def record(event_type: str, registration_id: str | None = None, **payload: Any) -> Event:
    """Shorthand for appending an audit event."""
    return append(Event(event_type=event_type, registration_id=registration_id, payload=payload))


def query(
    *,
    event_type: str | None = None,
    registration_id: str | None = None,
    since: str | None = None,
    limit: int = 200,
) -> list[dict[str, Any]]:
    return _get_store().query(
        event_type=event_type, registration_id=registration_id, since=since, limit=limit,
    )


def count(**filters: Any) -> int:
    return _get_store().count(**filters)


# ---------------------------------------------------------------------------
# Registrations
# ---------------------------------------------------------------------------

def insert_registration(registration: Registration) -> None:
    _get_store().insert_registration(registration)


def get_registration(registration_id: str) -> Registration | None:
    return _get_store().get_registration(registration_id)


def list_registrations(
    *,
    contact_email: str | None = None,
    status: str | None = None,
    limit: int = 200,
) -> list[Registration]:
    return _get_store().list_registrations(
        contact_email=contact_email, status=status, limit=limit,
    )


def update_registration_if(
    registration_id: str,
    expected: Iterable[str],
    patch: dict[str, Any],
) -> bool:
    return _get_store().update_registration_if(registration_id, expected, patch)


def next_sequence_value(name: str) -> int:
    return _get_store().next_sequence_value(name)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

def enqueue_job(job: Job) -> bool:
    return _get_store().enqueue_job(job)


def claim_job(now: str, stale_before: str | None = None) -> Job | None:
    return _get_store().claim_job(now, stale_before)


def get_job(job_id: str) -> Job | None:
    return _get_store().get_job(job_id)


def list_jobs(
    *,
    state: str | None = None,
    job_key: str | None = None,
    limit: int = 200,
) -> list[Job]:
    return _get_store().list_jobs(state=state, job_key=job_key, limit=limit)


def requeue_job(job_id: str, next_retry_at: str, error: str) -> bool:
    return _get_store().requeue_job(job_id, next_retry_at, error)


def finish_job(job_id: str, state: JobState, error: str | None = None) -> bool:
    return _get_store().finish_job(job_id, state, error)


def prune_jobs(keep: int) -> int:
    return _get_store().prune_jobs(keep)
