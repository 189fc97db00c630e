"""Keyed job queue over the store.

A job's key is the registration id.  The store's partial unique index on
``job_key`` (for queued and running rows) is the only concurrency control:
a duplicate enqueue while a job is in flight is refused and reported as a
no-op.  State changes are compare-and-swap on ``state`` so a job is claimed,
retried or finished by exactly one worker.
"""

from __future__ import annotations

import logging

from festpass import event_log
from festpass.defaults import BACKOFF_BASE_SECONDS, BACKOFF_MULTIPLIER, JOB_RETENTION, QUERY_LIMIT_SMALL
from festpass.models import EventType, Job, JobHandle, JobState, JobType, iso_after, now_iso
from festpass.observability import record_job

log = logging.getLogger("festpass.jobs")


def backoff_delay(
    attempt: int,
    base: float = BACKOFF_BASE_SECONDS,
    multiplier: float = BACKOFF_MULTIPLIER,
) -> float:
    """Delay before retrying after failed attempt number *attempt* (1-based)."""
    if attempt < 1:
        raise ValueError("attempt is 1-based")
    return base * multiplier ** (attempt - 1)


def enqueue(registration_id: str, job_type: JobType) -> JobHandle | None:
    """Queue a job for *registration_id*.

    Returns ``None`` when the key already has a queued or running job.
    """
    job = Job(job_key=registration_id, job_type=job_type)
    if not event_log.enqueue_job(job):
        log.info("Duplicate enqueue for %s ignored", registration_id,
                 extra={"registration_id": registration_id})
        record_job(job_type.value, "duplicate")
        event_log.record(EventType.JOB_DUPLICATE, registration_id, job_type=job_type.value)
        return None

    record_job(job_type.value, "enqueued")
    event_log.record(
        EventType.JOB_ENQUEUED, registration_id, job_id=job.id, job_type=job_type.value,
    )
    log.info("Enqueued %s job %s", job_type.value, job.id,
             extra={"registration_id": registration_id, "job_id": job.id})
    return job.handle()


def claim_next(lease: float | None = None) -> Job | None:
    """Claim the oldest due job, or return ``None`` if nothing is due.

    With a *lease* (seconds), a running job nobody has touched for that long
    is claimed again as well.
    """
    stale_before = iso_after(-lease) if lease is not None else None
    job = event_log.claim_job(now_iso(), stale_before)
    if job is None:
        return None
    if job.reclaimed:
        record_job(job.job_type.value, "reclaimed")
        event_log.record(
            EventType.JOB_RECLAIMED, job.job_key, job_id=job.id, attempt=job.attempt_count,
        )
        log.warning(
            "Reclaimed job %s after its lease of %.0fs expired", job.id, lease,
            extra={"registration_id": job.job_key, "job_id": job.id, "attempt": job.attempt_count},
        )
    else:
        event_log.record(
            EventType.JOB_CLAIMED, job.job_key, job_id=job.id, attempt=job.attempt_count,
        )
    return job


def schedule_retry(
    job: Job,
    error: str,
    *,
    base: float = BACKOFF_BASE_SECONDS,
    multiplier: float = BACKOFF_MULTIPLIER,
) -> str | None:
    """Put a running job back in the queue after its backoff delay.

    Returns the ``next_retry_at`` timestamp, or ``None`` if the job was no
    longer running.
    """
    delay = backoff_delay(job.attempt_count, base, multiplier)
    next_retry_at = iso_after(delay)
    if not event_log.requeue_job(job.id, next_retry_at, error):
        return None
    record_job(job.job_type.value, "retried")
    event_log.record(
        EventType.JOB_RETRY_SCHEDULED, job.job_key,
        job_id=job.id, attempt=job.attempt_count, delay=delay, error=error,
    )
    log.warning(
        "Job %s attempt %d failed, retrying in %.1fs: %s",
        job.id, job.attempt_count, delay, error,
        extra={"registration_id": job.job_key, "job_id": job.id, "attempt": job.attempt_count},
    )
    return next_retry_at


def complete(job: Job) -> bool:
    if not event_log.finish_job(job.id, JobState.COMPLETED):
        return False
    record_job(job.job_type.value, "completed")
    event_log.record(EventType.JOB_COMPLETED, job.job_key, job_id=job.id)
    return True


def fail(job: Job, error: str) -> bool:
    if not event_log.finish_job(job.id, JobState.FAILED, error):
        return False
    record_job(job.job_type.value, "failed")
    event_log.record(
        EventType.JOB_FAILED, job.job_key, job_id=job.id, attempt=job.attempt_count, error=error,
    )
    return True


def prune_finished(keep: int = JOB_RETENTION) -> int:
    """Discard finished job records beyond the newest *keep*."""
    removed = event_log.prune_jobs(keep)
    if removed:
        event_log.record(EventType.JOBS_PRUNED, None, removed=removed, keep=keep)
        log.debug("Pruned %d finished jobs", removed)
    return removed


def list_jobs(
    *,
    state: str | None = None,
    job_key: str | None = None,
    limit: int = QUERY_LIMIT_SMALL,
) -> list[Job]:
    return event_log.list_jobs(state=state, job_key=job_key, limit=limit)


def in_flight(registration_id: str) -> list[Job]:
    return [
        j for j in event_log.list_jobs(job_key=registration_id)
        if j.state in (JobState.QUEUED, JobState.RUNNING)
    ]
