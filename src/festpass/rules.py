"""Admission rules for event selections and team rosters.

Every function here is pure: it reads the static catalog and its arguments
and returns a ``ValidationResult``.  ``raise_for`` converts a failed result
into the matching exception for callers that prefer to raise.
"""

from __future__ import annotations

import re
from typing import Any, Iterable, Mapping, Sequence

from festpass.catalog import CATALOG, EXCEPTION_EVENTS, get_definition, normalize_event_name
from festpass.errors import ConflictError, UnknownEventError, ValidationError
from festpass.models import Participant, ValidationResult

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^\+?[0-9][0-9\s-]{6,16}$")

_EXCEPTION_LABEL = ", ".join(e.value for e in EXCEPTION_EVENTS)

# Reason codes that map to ConflictError rather than ValidationError.
CONFLICT_REASONS = frozenset({
    "already_registered",
    "prior_regular_event",
    "prior_exception_event",
})


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

def validate_selection(events: Sequence[Any]) -> ValidationResult:
    """Check the 1-2 event rule and the per-category caps."""
    if not events:
        return ValidationResult.failure("no_events", "At least one event must be selected")
    if len(events) > 2:
        return ValidationResult.failure("too_many_events", "Maximum 2 events can be selected")

    try:
        names = [normalize_event_name(e) for e in events]
    except UnknownEventError as exc:
        return ValidationResult.failure(exc.reason_code, exc.message)

    repeated = next((n for i, n in enumerate(names) if n in names[:i]), None)
    if repeated is not None:
        return ValidationResult.failure(
            "duplicate_event", f"{repeated.value} is selected more than once",
        )

    exceptions = [n for n in names if CATALOG[n].is_exception]
    regular = [n for n in names if not CATALOG[n].is_exception]

    if len(exceptions) > 1:
        return ValidationResult.failure(
            "multiple_exception_events",
            f"Only one exception event allowed: choose one of {_EXCEPTION_LABEL}",
        )
    if len(regular) > 1:
        return ValidationResult.failure(
            "multiple_regular_events", "Only one non-exception event can be selected",
        )
    if len(names) == 2 and len(exceptions) != 1:
        return ValidationResult.failure(
            "pairing_requires_exception",
            f"When selecting 2 events, one must be from: {_EXCEPTION_LABEL}",
        )
    return ValidationResult.success()


# ---------------------------------------------------------------------------
# Participants
# ---------------------------------------------------------------------------

def _field(participant: Mapping[str, Any] | Participant, name: str) -> str:
    if isinstance(participant, Participant):
        value = getattr(participant, name)
    else:
        value = participant.get(name)
    return str(value).strip() if value is not None else ""


def _count_message(count: int, min_count: int, max_count: int) -> str:
    if min_count == max_count:
        noun = "participant" if min_count == 1 else "participants"
        return f"Exactly {min_count} {noun} required, got {count}"
    if count < min_count:
        return f"Minimum {min_count} participants required, got {count}"
    return f"Maximum {max_count} participants allowed, got {count}"


def validate_participants(
    participants: Sequence[Mapping[str, Any] | Participant],
    min_count: int,
    max_count: int,
) -> ValidationResult:
    """Check roster size, required fields, email format and email uniqueness."""
    count = len(participants)
    if count < min_count or count > max_count:
        return ValidationResult.failure(
            "participant_count", _count_message(count, min_count, max_count),
        )

    seen: set[str] = set()
    for i, participant in enumerate(participants, start=1):
        name = _field(participant, "name")
        email = _field(participant, "email")
        if not name or not email:
            return ValidationResult.failure(
                "missing_fields", f"Participant {i} missing required fields (name, email)",
            )
        if not EMAIL_RE.match(email):
            return ValidationResult.failure(
                "invalid_email", f"Participant {i} has invalid email format",
            )
        phone = _field(participant, "phone")
        if phone and not PHONE_RE.match(phone):
            return ValidationResult.failure(
                "invalid_phone", f"Participant {i} has invalid phone number",
            )
        seen.add(email.lower())

    if len(seen) != count:
        return ValidationResult.failure(
            "duplicate_email", "Duplicate email addresses found in participants",
        )
    return ValidationResult.success()


# ---------------------------------------------------------------------------
# Cross-registration
# ---------------------------------------------------------------------------

def check_cross_registration_conflicts(
    prior_events: Iterable[Any],
    new_selection: Sequence[Any],
) -> ValidationResult:
    """Apply the category caps to the union of a contact's prior and new events.

    *prior_events* are event names already held by the same contact email.
    """
    prior = {normalize_event_name(e) for e in prior_events}
    try:
        new = [normalize_event_name(e) for e in new_selection]
    except UnknownEventError as exc:
        return ValidationResult.failure(exc.reason_code, exc.message)

    held = [n.value for n in new if n in prior]
    if held:
        return ValidationResult.failure(
            "already_registered", f"Already registered for: {', '.join(held)}",
        )

    prior_has_exception = any(CATALOG[n].is_exception for n in prior)
    prior_has_regular = any(not CATALOG[n].is_exception for n in prior)
    new_has_exception = any(CATALOG[n].is_exception for n in new)
    new_has_regular = any(not CATALOG[n].is_exception for n in new)

    if prior_has_regular and new_has_regular:
        return ValidationResult.failure(
            "prior_regular_event",
            "This email already has a non-exception event registration",
        )
    if prior_has_exception and new_has_exception:
        return ValidationResult.failure(
            "prior_exception_event",
            "This email already has an exception event registration",
        )
    return ValidationResult.success()


# ---------------------------------------------------------------------------
# Composite
# ---------------------------------------------------------------------------

def validate_payload(
    events: Sequence[Mapping[str, Any]],
    prior_events: Iterable[Any] = (),
) -> ValidationResult:
    """Run selection, roster and conflict checks in order; first failure wins.

    Each item in *events* is ``{"event": <name>, "participants": [...]}``.
    """
    names = [item.get("event") for item in events]
    result = validate_selection(names)
    if not result.ok:
        return result

    for item in events:
        definition = get_definition(item["event"])
        roster = item.get("participants") or []
        result = validate_participants(
            roster, definition.min_participants, definition.max_participants,
        )
        if not result.ok:
            return ValidationResult.failure(
                result.reason_code, f"{definition.name.value}: {result.message}",
            )

    return check_cross_registration_conflicts(prior_events, names)


def raise_for(result: ValidationResult) -> None:
    """Raise ``ConflictError`` or ``ValidationError`` for a failed result."""
    if result.ok:
        return
    if result.reason_code in CONFLICT_REASONS:
        raise ConflictError(result.message, result.reason_code)
    raise ValidationError(result.message, result.reason_code)
