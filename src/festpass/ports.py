"""Storage port interfaces for festpass.

Defines Protocol classes that any persistence backend must implement.
The composite ``FestpassStore`` is what application code depends on.
"""

from __future__ import annotations

from typing import Any, Iterable, Protocol, runtime_checkable

from festpass.models import Event, Job, JobState, Registration


# ---------------------------------------------------------------------------
# Individual ports
# ---------------------------------------------------------------------------

@runtime_checkable
class EventStorePort(Protocol):
    def append(self, event: Event) -> Event: ...
    def query(
        self,
        *,
        event_type: str | None = None,
        registration_id: str | None = None,
        since: str | None = None,
        limit: int = 200,
    ) -> list[dict[str, Any]]: ...
    def count(self, **filters: Any) -> int: ...


@runtime_checkable
class RegistrationStorePort(Protocol):
    def insert_registration(self, registration: Registration) -> None: ...
    def get_registration(self, registration_id: str) -> Registration | None: ...
    def list_registrations(
        self,
        *,
        contact_email: str | None = None,
        status: str | None = None,
        limit: int = 200,
    ) -> list[Registration]: ...
    def update_registration_if(
        self,
        registration_id: str,
        expected: Iterable[str],
        patch: dict[str, Any],
    ) -> bool: ...


@runtime_checkable
class SequencePort(Protocol):
    def next_sequence_value(self, name: str) -> int: ...


@runtime_checkable
class JobStorePort(Protocol):
    def enqueue_job(self, job: Job) -> bool: ...
    def claim_job(self, now: str, stale_before: str | None = None) -> Job | None: ...
    def get_job(self, job_id: str) -> Job | None: ...
    def list_jobs(
        self,
        *,
        state: str | None = None,
        job_key: str | None = None,
        limit: int = 200,
    ) -> list[Job]: ...
    def requeue_job(self, job_id: str, next_retry_at: str, error: str) -> bool: ...
    def finish_job(self, job_id: str, state: JobState, error: str | None = None) -> bool: ...
    def prune_jobs(self, keep: int) -> int: ...


@runtime_checkable
class ObjectStoragePort(Protocol):
    def get(self, bucket: str, key: str) -> bytes: ...
    def put(self, bucket: str, key: str, data: bytes) -> str: ...
    def signed_url(self, bucket: str, key: str, ttl: int) -> tuple[str, int]: ...
    def verify(self, bucket: str, key: str, expires: int, signature: str) -> bool: ...


# ---------------------------------------------------------------------------
# Composite store
# ---------------------------------------------------------------------------

@runtime_checkable
class FestpassStore(
    EventStorePort,
    RegistrationStorePort,
    SequencePort,
    JobStorePort,
    Protocol,
):
    """Everything the application needs from one persistence backend."""

    def close(self) -> None: ...
