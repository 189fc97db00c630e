"""Registration lifecycle: create, confirm, terminal writes, reprocess.

Status changes go through ``event_log.update_registration_if``, a single
conditional UPDATE on the current status.  Legal transitions:

    DRAFT       -> PROCESSING              (confirm, after validation)
    PROCESSING  -> COMPLETED|PARTIAL|FAILED (worker terminal write)
    FAILED|PARTIAL -> PROCESSING           (operator reprocess)
"""

from __future__ import annotations

import logging
import secrets
import string
import time
from dataclasses import dataclass
from typing import Any, Mapping

from festpass import event_log, jobs, rules
from festpass.catalog import normalize_event_name
from festpass.defaults import (
    FALLBACK_SUFFIX_CHARS,
    QUERY_LIMIT_LARGE,
    REGISTRATION_PAD,
    REGISTRATION_PREFIX,
    REGISTRATION_SEQUENCE,
)
from festpass.errors import InvalidTransition, NotFound, ValidationError
from festpass.models import (
    REPROCESSABLE_STATUSES,
    TERMINAL_STATUSES,
    Credential,
    EventType,
    JobHandle,
    JobType,
    Participant,
    ParticipantRole,
    Registration,
    RegistrationStatus,
    SelectedEvent,
    ValidationResult,
)
from festpass.status import session_token

log = logging.getLogger("festpass.registrations")

_BASE36 = string.digits + string.ascii_uppercase

_TERMINAL_EVENTS = {
    RegistrationStatus.COMPLETED: EventType.REGISTRATION_COMPLETED,
    RegistrationStatus.PARTIAL: EventType.REGISTRATION_PARTIAL,
    RegistrationStatus.FAILED: EventType.REGISTRATION_FAILED,
}


@dataclass
class Submission:
    registration: Registration
    session_token: str
    job: JobHandle | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "registration_id": self.registration.registration_id,
            "status": self.registration.status.value,
            "session_token": self.session_token,
            "job": self.job.to_dict() if self.job else None,
        }


# ---------------------------------------------------------------------------
# Registration ids
# ---------------------------------------------------------------------------

def _base36(n: int) -> str:
    digits = []
    while n:
        n, rem = divmod(n, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits)) or "0"


def fallback_registration_id() -> str:
    """Time-based id with a random suffix; unique enough, not guaranteed."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(FALLBACK_SUFFIX_CHARS))
    return f"{REGISTRATION_PREFIX}-{_base36(int(time.time() * 1000))}-{suffix}"


def allocate_registration_id() -> tuple[str, bool]:
    """Return ``(registration_id, from_sequence)``.

    Prefers the store's atomic counter.  When the counter is unavailable the
    time-based fallback is used and logged as a non-sequence id.
    """
    try:
        value = event_log.next_sequence_value(REGISTRATION_SEQUENCE)
    except Exception:
        registration_id = fallback_registration_id()
        log.warning(
            "Registration sequence unavailable; issued NON-SEQUENCE id %s",
            registration_id, exc_info=True, extra={"registration_id": registration_id},
        )
        return registration_id, False
    return f"{REGISTRATION_PREFIX}-{value:0{REGISTRATION_PAD}d}", True


# ---------------------------------------------------------------------------
# Payload shaping
# ---------------------------------------------------------------------------

def _contact(payload: Mapping[str, Any]) -> dict[str, Any]:
    name = str(payload.get("name") or "").strip()
    email = str(payload.get("email") or "").strip()
    if not name or not email:
        raise ValidationError("Contact name and email are required", "missing_contact")
    if not rules.EMAIL_RE.match(email):
        raise ValidationError("Contact email has invalid format", "invalid_email")
    return {
        "name": name,
        "email": email,
        "phone": payload.get("phone"),
        "college": payload.get("college"),
        "photo_key": payload.get("photo_key"),
    }


def selection_payload(payload: Mapping[str, Any]) -> list[dict[str, Any]]:
    """Events with rosters; an empty roster means the registrant alone."""
    contact = _contact(payload)
    selection = []
    for item in payload.get("events") or []:
        if isinstance(item, str):
            item = {"event": item}
        roster = list(item.get("participants") or []) or [contact]
        selection.append({"event": item.get("event"), "participants": roster})
    return selection


def _build_events(registration_id: str, payload: Mapping[str, Any]) -> list[SelectedEvent]:
    contact = _contact(payload)
    contact_key = contact["email"].lower()
    by_email: dict[str, Participant] = {}
    events: list[SelectedEvent] = []

    for item in selection_payload(payload):
        name = normalize_event_name(item["event"])
        members: list[Participant] = []
        for raw in item["participants"]:
            email = str(raw.get("email") or "").strip()
            key = email.lower()
            if key not in by_email:
                is_primary = key == contact_key
                by_email[key] = Participant(
                    id=f"{registration_id}-{len(by_email) + 1:03d}",
                    name=str(raw.get("name") or "").strip(),
                    email=email,
                    phone=raw.get("phone"),
                    college=raw.get("college") or contact["college"],
                    photo_key=raw.get("photo_key") or (contact["photo_key"] if is_primary else None),
                    role=ParticipantRole.PRIMARY if is_primary else ParticipantRole.MEMBER,
                )
            members.append(by_email[key])
        events.append(SelectedEvent(event=name.value, participants=members))
    return events


def _events_payload(registration: Registration) -> list[dict[str, Any]]:
    return [
        {"event": e.event, "participants": [p.to_dict() for p in e.participants]}
        for e in registration.events
    ]


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def get(registration_id: str) -> Registration:
    registration = event_log.get_registration(registration_id)
    if registration is None:
        raise NotFound(f"Registration not found: {registration_id}")
    return registration


def prior_events_for(contact_email: str, *, exclude: str | None = None) -> list[str]:
    """Events already held by *contact_email* in confirmed registrations."""
    held: list[str] = []
    for registration in event_log.list_registrations(
        contact_email=contact_email.lower(), limit=QUERY_LIMIT_LARGE,
    ):
        if registration.registration_id == exclude:
            continue
        if registration.status == RegistrationStatus.DRAFT:
            continue
        held.extend(registration.event_names)
    return held


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

def create(payload: Mapping[str, Any]) -> Registration:
    """Persist a new DRAFT registration and return it."""
    contact = _contact(payload)
    registration_id, from_sequence = allocate_registration_id()
    registration = Registration(
        registration_id=registration_id,
        contact_name=contact["name"],
        contact_email=contact["email"].lower(),
        contact_phone=contact["phone"],
        college=contact["college"],
        photo_key=contact["photo_key"],
        events=_build_events(registration_id, payload),
    )
    event_log.insert_registration(registration)
    event_log.record(
        EventType.REGISTRATION_CREATED, registration_id,
        events=registration.event_names, from_sequence=from_sequence,
    )
    if not from_sequence:
        event_log.record(EventType.REGISTRATION_ID_FALLBACK, registration_id)
    return registration


def _confirm(registration_id: str) -> tuple[ValidationResult, JobHandle | None]:
    registration = get(registration_id)
    if registration.status != RegistrationStatus.DRAFT:
        log.info("Registration %s already confirmed (%s)", registration_id,
                 registration.status.value, extra={"registration_id": registration_id})
        return ValidationResult.success(), None

    result = rules.validate_payload(
        _events_payload(registration),
        prior_events_for(registration.contact_email, exclude=registration_id),
    )
    if not result.ok:
        event_log.record(
            EventType.REGISTRATION_REJECTED, registration_id,
            reason_code=result.reason_code, message=result.message,
        )
        return result, None

    won = event_log.update_registration_if(
        registration_id,
        [RegistrationStatus.DRAFT],
        {"status": RegistrationStatus.PROCESSING, "error_message": None},
    )
    if not won:
        # A concurrent confirm got there first; its job is the one in flight.
        return ValidationResult.success(), None

    # Concurrent submits from one email each miss the other while both are
    # drafts.  Now that this one is visible, re-check against the others and
    # step back to DRAFT on a clash; at least one side always sees the other.
    clash = rules.check_cross_registration_conflicts(
        prior_events_for(registration.contact_email, exclude=registration_id),
        registration.event_names,
    )
    if not clash.ok:
        event_log.update_registration_if(
            registration_id, [RegistrationStatus.PROCESSING], {"status": RegistrationStatus.DRAFT},
        )
        log.info("Registration %s lost a concurrent confirm for %s",
                 registration_id, registration.contact_email,
                 extra={"registration_id": registration_id})
        event_log.record(
            EventType.REGISTRATION_REJECTED, registration_id,
            reason_code=clash.reason_code, message=clash.message,
        )
        return clash, None

    job_type = _job_type(registration)
    handle = jobs.enqueue(registration_id, job_type)
    event_log.record(EventType.REGISTRATION_CONFIRMED, registration_id, job_type=job_type.value)
    return result, handle


def confirm(registration_id: str) -> ValidationResult:
    """Re-validate a DRAFT, move it to PROCESSING and enqueue its job.

    Confirming an already-confirmed registration is a successful no-op.
    """
    result, _ = _confirm(registration_id)
    return result


def mark_terminal(
    registration_id: str,
    outcome: RegistrationStatus,
    *,
    credentials: list[Credential] | None = None,
    error_message: str | None = None,
    enhanced_photo_key: str | None = None,
) -> bool:
    """Write a terminal outcome; only applies while the status is PROCESSING."""
    if outcome not in TERMINAL_STATUSES:
        raise ValueError(f"Not a terminal status: {outcome}")
    patch: dict[str, Any] = {"status": outcome, "error_message": error_message}
    if credentials is not None:
        patch["credentials"] = credentials
    if enhanced_photo_key is not None:
        patch["enhanced_photo_key"] = enhanced_photo_key

    applied = event_log.update_registration_if(
        registration_id, [RegistrationStatus.PROCESSING], patch,
    )
    if applied:
        event_log.record(
            _TERMINAL_EVENTS[outcome], registration_id,
            error=error_message,
            credentials=[c.status.value for c in credentials or []],
        )
    else:
        log.warning("Terminal write %s for %s skipped: not PROCESSING",
                    outcome.value, registration_id, extra={"registration_id": registration_id})
    return applied


def reprocess(registration_id: str) -> JobHandle | None:
    """Operator action: re-run generation for a FAILED or PARTIAL registration.

    Selection rules are not re-validated.  Returns ``None`` when a duplicate
    request lost the race to an earlier one.  A PROCESSING registration with
    no job in flight lost its job to a failed write and is requeued.
    """
    registration = get(registration_id)
    if registration.status == RegistrationStatus.PROCESSING:
        if jobs.in_flight(registration_id):
            return None
        return _requeue_orphan(registration)
    if registration.status not in REPROCESSABLE_STATUSES:
        raise InvalidTransition(
            f"Cannot reprocess registration in status {registration.status.value}",
        )

    won = event_log.update_registration_if(
        registration_id,
        REPROCESSABLE_STATUSES,
        {"status": RegistrationStatus.PROCESSING, "error_message": None},
    )
    if not won:
        return None

    job_type = _job_type(registration)
    handle = jobs.enqueue(registration_id, job_type)
    event_log.record(
        EventType.REGISTRATION_REPROCESSED, registration_id,
        previous_status=registration.status.value, job_type=job_type.value,
    )
    return handle


def _job_type(registration: Registration) -> JobType:
    return JobType.FULL_CREDENTIAL if registration.photo_key else JobType.SIMPLE_CREDENTIAL


def _requeue_orphan(registration: Registration) -> JobHandle | None:
    log.warning("Registration %s is PROCESSING with no job in flight; requeueing",
                registration.registration_id,
                extra={"registration_id": registration.registration_id})
    job_type = _job_type(registration)
    handle = jobs.enqueue(registration.registration_id, job_type)
    if handle is not None:
        event_log.record(
            EventType.REGISTRATION_REPROCESSED, registration.registration_id,
            previous_status=registration.status.value, job_type=job_type.value,
        )
    return handle


def submit(payload: Mapping[str, Any], *, secret: str) -> Submission:
    """Single-shot intake: validate, create, confirm and enqueue.

    Raises ``ValidationError`` or ``ConflictError`` before anything is
    persisted when the payload is not admissible.
    """
    contact = _contact(payload)
    rules.raise_for(rules.validate_payload(
        selection_payload(payload), prior_events_for(contact["email"]),
    ))
    registration = create(payload)
    result, handle = _confirm(registration.registration_id)
    rules.raise_for(result)
    return Submission(
        registration=get(registration.registration_id),
        session_token=session_token(registration.registration_id, secret),
        job=handle,
    )
