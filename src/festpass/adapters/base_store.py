"""Base class for FestpassStore backends (template method pattern).

All shared SQL lives here.  Backend-specific concerns (connection
management, placeholder syntax, the unique-violation exception type) are
handled by a small set of abstract members that subclasses implement.

Application code should depend on the ports, not on this module directly.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any, Iterable

from festpass.models import (
    Credential,
    Event,
    Job,
    JobState,
    JobType,
    Registration,
    RegistrationStatus,
    SelectedEvent,
    now_iso,
)


# ---------------------------------------------------------------------------
# Schema (shared between all backends)
# ---------------------------------------------------------------------------

SCHEMA = """
CREATE TABLE IF NOT EXISTS events (
    id              TEXT PRIMARY KEY,
    trace_id        TEXT NOT NULL,
    timestamp       TEXT NOT NULL,
    event_type      TEXT NOT NULL,
    registration_id TEXT,
    payload         TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_events_type         ON events(event_type);
CREATE INDEX IF NOT EXISTS idx_events_registration ON events(registration_id);
CREATE INDEX IF NOT EXISTS idx_events_time         ON events(timestamp);

CREATE TABLE IF NOT EXISTS registrations (
    registration_id    TEXT PRIMARY KEY,
    id                 TEXT NOT NULL UNIQUE,
    status             TEXT NOT NULL,
    contact_name       TEXT NOT NULL,
    contact_email      TEXT NOT NULL,
    payload            TEXT NOT NULL,
    photo_key          TEXT,
    enhanced_photo_key TEXT,
    credentials        TEXT NOT NULL DEFAULT '[]',
    error_message      TEXT,
    created_at         TEXT NOT NULL,
    updated_at         TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_registrations_email  ON registrations(contact_email);
CREATE INDEX IF NOT EXISTS idx_registrations_status ON registrations(status);

CREATE TABLE IF NOT EXISTS sequences (
    name  TEXT PRIMARY KEY,
    value INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS jobs (
    id            TEXT PRIMARY KEY,
    job_key       TEXT NOT NULL,
    job_type      TEXT NOT NULL,
    state         TEXT NOT NULL,
    attempt_count INTEGER NOT NULL DEFAULT 0,
    next_retry_at TEXT NOT NULL,
    last_error    TEXT,
    enqueued_at   TEXT NOT NULL,
    updated_at    TEXT NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS uq_jobs_in_flight
    ON jobs(job_key) WHERE state IN ('queued', 'running');
CREATE INDEX IF NOT EXISTS idx_jobs_due ON jobs(state, next_retry_at);
"""

_ALLOWED_FILTER_COLS = {"event_type", "registration_id", "trace_id"}
_PATCHABLE_COLS = {"status", "credentials", "enhanced_photo_key", "error_message"}
_CLAIM_CANDIDATES = 5


# ---------------------------------------------------------------------------
# BaseFestpassStore
# ---------------------------------------------------------------------------

class BaseFestpassStore(ABC):
    """Abstract base for FestpassStore backends.

    Subclasses implement four members: ``_connection``, ``_ph``,
    ``_integrity_error`` and ``close``.  Every port method is implemented
    once here.
    """

    # ------------------------------------------------------------------
    # Abstract template methods (what varies per backend)
    # ------------------------------------------------------------------

    @abstractmethod
    def _connection(self):
        """Context manager yielding an open connection.

        The connection must commit when the block exits cleanly and roll
        back when it raises.
        """

    @property
    @abstractmethod
    def _ph(self) -> str:
        """SQL parameter placeholder: ``'?'`` for SQLite, ``'%s'`` for PostgreSQL."""

    @property
    @abstractmethod
    def _integrity_error(self) -> type[Exception]:
        """Exception type raised on unique constraint violations."""

    @abstractmethod
    def close(self) -> None: ...

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _placeholders(self, n: int) -> str:
        return ", ".join([self._ph] * n)

    def _build_where(self, filters: dict[str, object]) -> tuple[str, list]:
        """Build a WHERE clause from a {column: value} dict, skipping Nones."""
        ph = self._ph
        clauses: list[str] = []
        params: list = []
        for col, val in filters.items():
            if val is not None:
                clauses.append(f"{col} = {ph}")
                params.append(val)
        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
        return where, params

    # ------------------------------------------------------------------
    # EventStorePort
    # ------------------------------------------------------------------

    def append(self, event: Event) -> Event:
        with self._connection() as conn:
            conn.execute(
                "INSERT INTO events (id, trace_id, timestamp, event_type, "
                f"registration_id, payload) VALUES ({self._placeholders(6)})",
                (
                    event.id,
                    event.trace_id,
                    event.timestamp,
                    event.event_type,
                    event.registration_id,
                    json.dumps(event.payload, default=str),
                ),
            )
        return event

    def query(
        self,
        *,
        event_type: str | None = None,
        registration_id: str | None = None,
        since: str | None = None,
        limit: int = 200,
    ) -> list[dict[str, Any]]:
        ph = self._ph
        where, params = self._build_where(
            {"event_type": event_type, "registration_id": registration_id},
        )
        if since:
            where += (" AND " if where else " WHERE ") + f"timestamp >= {ph}"
            params.append(since)
        params.append(limit)
        sql = f"SELECT * FROM events{where} ORDER BY timestamp DESC LIMIT {ph}"
        with self._connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_event_dict(r) for r in rows]

    def count(self, **filters: Any) -> int:
        for k in filters:
            if k not in _ALLOWED_FILTER_COLS:
                raise ValueError(f"Invalid filter column: {k}")
        where, params = self._build_where(filters)
        with self._connection() as conn:
            row = conn.execute(f"SELECT COUNT(*) AS cnt FROM events{where}", params).fetchone()
        return row["cnt"]

    # ------------------------------------------------------------------
    # RegistrationStorePort
    # ------------------------------------------------------------------

    def insert_registration(self, registration: Registration) -> None:
        with self._connection() as conn:
            conn.execute(
                "INSERT INTO registrations (registration_id, id, status, contact_name, "
                "contact_email, payload, photo_key, enhanced_photo_key, credentials, "
                f"error_message, created_at, updated_at) VALUES ({self._placeholders(12)})",
                (
                    registration.registration_id,
                    registration.id,
                    registration.status.value,
                    registration.contact_name,
                    registration.contact_email.lower(),
                    json.dumps(registration.payload()),
                    registration.photo_key,
                    registration.enhanced_photo_key,
                    json.dumps([c.to_dict() for c in registration.credentials]),
                    registration.error_message,
                    registration.created_at,
                    registration.updated_at,
                ),
            )

    def get_registration(self, registration_id: str) -> Registration | None:
        with self._connection() as conn:
            row = conn.execute(
                f"SELECT * FROM registrations WHERE registration_id = {self._ph}",
                (registration_id,),
            ).fetchone()
        return _row_to_registration(row) if row else None

    def list_registrations(
        self,
        *,
        contact_email: str | None = None,
        status: str | None = None,
        limit: int = 200,
    ) -> list[Registration]:
        where, params = self._build_where({
            "contact_email": contact_email.lower() if contact_email else None,
            "status": status,
        })
        params.append(limit)
        sql = f"SELECT * FROM registrations{where} ORDER BY created_at DESC LIMIT {self._ph}"
        with self._connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_registration(r) for r in rows]

    def update_registration_if(
        self,
        registration_id: str,
        expected: Iterable[str],
        patch: dict[str, Any],
    ) -> bool:
        """Apply *patch* only if the current status is in *expected*.

        A single conditional UPDATE; returns True when a row changed.
        """
        unknown = set(patch) - _PATCHABLE_COLS
        if unknown:
            raise ValueError(f"Cannot patch columns: {sorted(unknown)}")
        expected = [str(getattr(s, "value", s)) for s in expected]
        if not expected:
            return False

        ph = self._ph
        sets: list[str] = []
        params: list[Any] = []
        for col, val in patch.items():
            if col == "credentials":
                val = json.dumps([c.to_dict() if isinstance(c, Credential) else c for c in val])
            elif col == "status":
                val = getattr(val, "value", val)
            sets.append(f"{col} = {ph}")
            params.append(val)
        sets.append(f"updated_at = {ph}")
        params.append(now_iso())
        params.append(registration_id)
        params.extend(expected)

        sql = (
            f"UPDATE registrations SET {', '.join(sets)} "
            f"WHERE registration_id = {ph} AND status IN ({self._placeholders(len(expected))})"
        )
        with self._connection() as conn:
            cur = conn.execute(sql, params)
            return cur.rowcount == 1

    # ------------------------------------------------------------------
    # SequencePort
    # ------------------------------------------------------------------

    def next_sequence_value(self, name: str) -> int:
        """Atomically increment and return the named counter.

        The upsert takes the row lock, so the read in the same transaction
        sees this caller's increment and no other.
        """
        ph = self._ph
        with self._connection() as conn:
            conn.execute(
                f"INSERT INTO sequences (name, value) VALUES ({ph}, 1) "
                "ON CONFLICT(name) DO UPDATE SET value = sequences.value + 1",
                (name,),
            )
            row = conn.execute(
                f"SELECT value FROM sequences WHERE name = {ph}", (name,),
            ).fetchone()
        return int(row["value"])

    # ------------------------------------------------------------------
    # JobStorePort
    # ------------------------------------------------------------------

    def enqueue_job(self, job: Job) -> bool:
        """Insert *job*; returns False if its key already has a job in flight."""
        try:
            with self._connection() as conn:
                conn.execute(
                    "INSERT INTO jobs (id, job_key, job_type, state, attempt_count, "
                    "next_retry_at, last_error, enqueued_at, updated_at) "
                    f"VALUES ({self._placeholders(9)})",
                    (
                        job.id,
                        job.job_key,
                        job.job_type.value,
                        job.state.value,
                        job.attempt_count,
                        job.next_retry_at,
                        job.last_error,
                        job.enqueued_at,
                        job.updated_at,
                    ),
                )
        except self._integrity_error:
            return False
        return True

    def claim_job(self, now: str, stale_before: str | None = None) -> Job | None:
        """Move the oldest due queued job to running and return it.

        When *stale_before* is given, running jobs not touched since then
        are claimed as well: their consumer died or lost a write.  Each
        candidate is claimed with a compare-and-swap on ``state`` and
        ``updated_at``, so two workers racing for the same row cannot both
        win it.
        """
        ph = self._ph
        sql = f"SELECT * FROM jobs WHERE (state = {ph} AND next_retry_at <= {ph})"
        params: list[Any] = [JobState.QUEUED.value, now]
        if stale_before is not None:
            sql += f" OR (state = {ph} AND updated_at <= {ph})"
            params += [JobState.RUNNING.value, stale_before]
        sql += f" ORDER BY next_retry_at, enqueued_at LIMIT {ph}"
        params.append(_CLAIM_CANDIDATES)
        with self._connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        for row in rows:
            with self._connection() as conn:
                cur = conn.execute(
                    f"UPDATE jobs SET state = {ph}, attempt_count = attempt_count + 1, "
                    f"updated_at = {ph} WHERE id = {ph} AND state = {ph} AND updated_at = {ph}",
                    (JobState.RUNNING.value, now, row["id"], row["state"], row["updated_at"]),
                )
                won = cur.rowcount == 1
            if won:
                job = _row_to_job(row)
                job.reclaimed = job.state == JobState.RUNNING
                job.state = JobState.RUNNING
                job.attempt_count += 1
                job.updated_at = now
                return job
        return None

    def get_job(self, job_id: str) -> Job | None:
        with self._connection() as conn:
            row = conn.execute(
                f"SELECT * FROM jobs WHERE id = {self._ph}", (job_id,),
            ).fetchone()
        return _row_to_job(row) if row else None

    def list_jobs(
        self,
        *,
        state: str | None = None,
        job_key: str | None = None,
        limit: int = 200,
    ) -> list[Job]:
        where, params = self._build_where({"state": state, "job_key": job_key})
        params.append(limit)
        sql = f"SELECT * FROM jobs{where} ORDER BY enqueued_at DESC LIMIT {self._ph}"
        with self._connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_job(r) for r in rows]

    def requeue_job(self, job_id: str, next_retry_at: str, error: str) -> bool:
        ph = self._ph
        with self._connection() as conn:
            cur = conn.execute(
                f"UPDATE jobs SET state = {ph}, next_retry_at = {ph}, last_error = {ph}, "
                f"updated_at = {ph} WHERE id = {ph} AND state = {ph}",
                (JobState.QUEUED.value, next_retry_at, error, now_iso(),
                 job_id, JobState.RUNNING.value),
            )
            return cur.rowcount == 1

    def finish_job(self, job_id: str, state: JobState, error: str | None = None) -> bool:
        if state not in (JobState.COMPLETED, JobState.FAILED):
            raise ValueError(f"Not a terminal job state: {state}")
        ph = self._ph
        with self._connection() as conn:
            cur = conn.execute(
                f"UPDATE jobs SET state = {ph}, last_error = {ph}, updated_at = {ph} "
                f"WHERE id = {ph} AND state = {ph}",
                (state.value, error, now_iso(), job_id, JobState.RUNNING.value),
            )
            return cur.rowcount == 1

    def prune_jobs(self, keep: int) -> int:
        """Delete finished jobs beyond the newest *keep*; returns rows removed."""
        ph = self._ph
        finished = (JobState.COMPLETED.value, JobState.FAILED.value)
        with self._connection() as conn:
            cur = conn.execute(
                f"DELETE FROM jobs WHERE state IN ({ph}, {ph}) AND id NOT IN ("
                f"SELECT id FROM jobs WHERE state IN ({ph}, {ph}) "
                f"ORDER BY updated_at DESC LIMIT {ph})",
                (*finished, *finished, max(keep, 0)),
            )
            return max(cur.rowcount, 0)


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------

def _loads(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


def _row_to_event_dict(row: Any) -> dict[str, Any]:
    d = dict(row)
    d["payload"] = _loads(d["payload"])
    return d


def _row_to_registration(row: Any) -> Registration:
    d = dict(row)
    payload = _loads(d["payload"]) or {}
    return Registration(
        id=d["id"],
        registration_id=d["registration_id"],
        status=RegistrationStatus(d["status"]),
        contact_name=d["contact_name"],
        contact_email=d["contact_email"],
        contact_phone=payload.get("contact_phone"),
        college=payload.get("college"),
        events=[SelectedEvent.from_dict(e) for e in payload.get("events", [])],
        photo_key=d.get("photo_key"),
        enhanced_photo_key=d.get("enhanced_photo_key"),
        credentials=[Credential.from_dict(c) for c in _loads(d["credentials"]) or []],
        error_message=d.get("error_message"),
        created_at=d["created_at"],
        updated_at=d["updated_at"],
    )


def _row_to_job(row: Any) -> Job:
    d = dict(row)
    return Job(
        id=d["id"],
        job_key=d["job_key"],
        job_type=JobType(d["job_type"]),
        state=JobState(d["state"]),
        attempt_count=d["attempt_count"],
        next_retry_at=d["next_retry_at"],
        last_error=d.get("last_error"),
        enqueued_at=d["enqueued_at"],
        updated_at=d["updated_at"],
    )
