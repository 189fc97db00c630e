"""Event catalog and audit-log endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from festpass import event_log
from festpass.api.auth import require_viewer
from festpass.catalog import list_events

router = APIRouter(tags=["events"])


@router.get("/events")
def catalog(category: str | None = None):
    """Public event catalog; ``category`` is solo, group or exception."""
    return [d.to_dict() for d in list_events(category=category)]


@router.get("/audit")
def audit(
    type: str | None = None,
    registration_id: str | None = None,
    since: str | None = None,
    limit: int = 100,
    principal: dict = Depends(require_viewer),
):
    return event_log.query(
        event_type=type, registration_id=registration_id, since=since, limit=limit,
    )
