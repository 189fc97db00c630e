"""Core data types for festpass."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def iso_after(seconds: float) -> str:
    """Timestamp *seconds* from now, in the same sortable format as ``now_iso``."""
    moment = datetime.now(timezone.utc) + timedelta(seconds=seconds)
    return moment.isoformat(timespec="microseconds")


def new_id() -> str:
    return uuid.uuid4().hex[:12]


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class RegistrationStatus(str, Enum):
    DRAFT = "DRAFT"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    PARTIAL = "PARTIAL"


TERMINAL_STATUSES = frozenset({
    RegistrationStatus.COMPLETED,
    RegistrationStatus.FAILED,
    RegistrationStatus.PARTIAL,
})

REPROCESSABLE_STATUSES = frozenset({
    RegistrationStatus.FAILED,
    RegistrationStatus.PARTIAL,
})


class EventCategory(str, Enum):
    SOLO = "solo"
    GROUP = "group"


class ParticipantRole(str, Enum):
    PRIMARY = "primary"
    MEMBER = "member"


class JobType(str, Enum):
    FULL_CREDENTIAL = "generateFullCredential"
    SIMPLE_CREDENTIAL = "generateSimpleCredential"


class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class CredentialStatus(str, Enum):
    READY = "ready"
    PLACEHOLDER = "placeholder"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Event type registry (single source of truth for audit event strings)
# ---------------------------------------------------------------------------

class EventType:
    # Registration lifecycle
    REGISTRATION_CREATED = "registration.created"
    REGISTRATION_CONFIRMED = "registration.confirmed"
    REGISTRATION_REJECTED = "registration.rejected"
    REGISTRATION_COMPLETED = "registration.completed"
    REGISTRATION_PARTIAL = "registration.partial"
    REGISTRATION_FAILED = "registration.failed"
    REGISTRATION_REPROCESSED = "registration.reprocessed"
    REGISTRATION_ID_FALLBACK = "registration.id_fallback"
    # Queue
    JOB_ENQUEUED = "job.enqueued"
    JOB_DUPLICATE = "job.duplicate"
    JOB_CLAIMED = "job.claimed"
    JOB_RECLAIMED = "job.reclaimed"
    JOB_RETRY_SCHEDULED = "job.retry_scheduled"
    JOB_COMPLETED = "job.completed"
    JOB_FAILED = "job.failed"
    JOBS_PRUNED = "job.pruned"
    # Pipeline
    AI_ENHANCEMENT_FALLBACK = "pipeline.ai_fallback"
    CREDENTIAL_RENDERED = "pipeline.credential_rendered"
    # Access
    ACCESS_GRANTED = "access.granted"
    ACCESS_DENIED = "access.denied"
    # Worker
    WORKER_STARTED = "worker.started"
    WORKER_STOPPED = "worker.stopped"
    TEMPLATE_MISSING = "worker.template_missing"


# ---------------------------------------------------------------------------
# Registration aggregate
# ---------------------------------------------------------------------------

@dataclass
class Participant:
    id: str
    name: str
    email: str
    phone: str | None = None
    college: str | None = None
    photo_key: str | None = None
    role: ParticipantRole = ParticipantRole.MEMBER

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "college": self.college,
            "photo_key": self.photo_key,
            "role": self.role.value,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Participant:
        return cls(
            id=d["id"],
            name=d.get("name", ""),
            email=d.get("email", ""),
            phone=d.get("phone"),
            college=d.get("college"),
            photo_key=d.get("photo_key"),
            role=ParticipantRole(d.get("role", "member")),
        )


@dataclass
class SelectedEvent:
    event: str  # canonical EventName value
    participants: list[Participant] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.event,
            "participants": [p.to_dict() for p in self.participants],
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> SelectedEvent:
        return cls(
            event=d["event"],
            participants=[Participant.from_dict(p) for p in d.get("participants", [])],
        )


@dataclass
class Credential:
    """Reference to one participant's rendered ID card."""

    participant_id: str
    name: str
    email: str
    events: list[str] = field(default_factory=list)
    status: CredentialStatus = CredentialStatus.READY
    key: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "participant_id": self.participant_id,
            "name": self.name,
            "email": self.email,
            "events": list(self.events),
            "status": self.status.value,
            "key": self.key,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Credential:
        return cls(
            participant_id=d["participant_id"],
            name=d.get("name", ""),
            email=d.get("email", ""),
            events=list(d.get("events", [])),
            status=CredentialStatus(d.get("status", "ready")),
            key=d.get("key"),
            error=d.get("error"),
        )


@dataclass
class Registration:
    registration_id: str
    contact_name: str
    contact_email: str
    status: RegistrationStatus = RegistrationStatus.DRAFT
    events: list[SelectedEvent] = field(default_factory=list)
    contact_phone: str | None = None
    college: str | None = None
    photo_key: str | None = None
    enhanced_photo_key: str | None = None
    credentials: list[Credential] = field(default_factory=list)
    error_message: str | None = None
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    @property
    def event_names(self) -> list[str]:
        return [e.event for e in self.events]

    def unique_participants(self) -> list[tuple[Participant, list[str]]]:
        """Participants deduplicated by id, each with every event they are in."""
        seen: dict[str, tuple[Participant, list[str]]] = {}
        for selected in self.events:
            for p in selected.participants:
                if p.id not in seen:
                    seen[p.id] = (p, [])
                seen[p.id][1].append(selected.event)
        return list(seen.values())

    def payload(self) -> dict[str, Any]:
        """The JSON blob persisted alongside the indexed columns."""
        return {
            "events": [e.to_dict() for e in self.events],
            "contact_phone": self.contact_phone,
            "college": self.college,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "registration_id": self.registration_id,
            "status": self.status.value,
            "contact_name": self.contact_name,
            "contact_email": self.contact_email,
            "contact_phone": self.contact_phone,
            "college": self.college,
            "events": [e.to_dict() for e in self.events],
            "photo_key": self.photo_key,
            "enhanced_photo_key": self.enhanced_photo_key,
            "credentials": [c.to_dict() for c in self.credentials],
            "error_message": self.error_message,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

@dataclass
class JobHandle:
    id: str
    job_key: str
    enqueued_at: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "job_key": self.job_key, "enqueued_at": self.enqueued_at}


@dataclass
class Job:
    job_key: str
    job_type: JobType
    id: str = field(default_factory=new_id)
    state: JobState = JobState.QUEUED
    attempt_count: int = 0
    next_retry_at: str = field(default_factory=now_iso)
    last_error: str | None = None
    enqueued_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    # Set by the store when the claim took over a running job whose lease ran out.
    reclaimed: bool = field(default=False, compare=False)

    @property
    def registration_id(self) -> str:
        return self.job_key

    def handle(self) -> JobHandle:
        return JobHandle(id=self.id, job_key=self.job_key, enqueued_at=self.enqueued_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_key": self.job_key,
            "job_type": self.job_type.value,
            "state": self.state.value,
            "attempt_count": self.attempt_count,
            "next_retry_at": self.next_retry_at,
            "last_error": self.last_error,
            "enqueued_at": self.enqueued_at,
            "updated_at": self.updated_at,
        }


# ---------------------------------------------------------------------------
# Results exposed to the intake and polling layers
# ---------------------------------------------------------------------------

@dataclass
class ValidationResult:
    ok: bool
    reason_code: str = ""
    message: str = ""

    @classmethod
    def success(cls) -> ValidationResult:
        return cls(ok=True)

    @classmethod
    def failure(cls, reason_code: str, message: str) -> ValidationResult:
        return cls(ok=False, reason_code=reason_code, message=message)

    def to_dict(self) -> dict[str, Any]:
        return {"ok": self.ok, "reason_code": self.reason_code, "message": self.message}


@dataclass
class CredentialRef:
    participant_id: str
    name: str
    status: CredentialStatus
    url: str | None = None
    expires_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "participant_id": self.participant_id,
            "name": self.name,
            "status": self.status.value,
            "url": self.url,
            "expires_at": self.expires_at,
        }


@dataclass
class RegistrationStatusView:
    registration_id: str
    status: RegistrationStatus
    credential_refs: list[CredentialRef] = field(default_factory=list)
    error_message: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "registration_id": self.registration_id,
            "status": self.status.value,
            "terminal": self.is_terminal,
            "credential_refs": [c.to_dict() for c in self.credential_refs],
            "error_message": self.error_message,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> RegistrationStatusView:
        return cls(
            registration_id=d["registration_id"],
            status=RegistrationStatus(d["status"]),
            credential_refs=[
                CredentialRef(
                    participant_id=c["participant_id"],
                    name=c.get("name", ""),
                    status=CredentialStatus(c["status"]),
                    url=c.get("url"),
                    expires_at=c.get("expires_at"),
                )
                for c in d.get("credential_refs", [])
            ],
            error_message=d.get("error_message"),
        )


# ---------------------------------------------------------------------------
# Audit event
# ---------------------------------------------------------------------------

@dataclass
class Event:
    event_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    registration_id: str | None = None
    id: str = field(default_factory=new_id)
    trace_id: str = ""
    timestamp: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "trace_id": self.trace_id,
            "timestamp": self.timestamp,
            "event_type": self.event_type,
            "registration_id": self.registration_id,
            "payload": self.payload,
        }
