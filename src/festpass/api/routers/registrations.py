"""Registration intake, status polling and operator reprocess endpoints."""

from __future__ import annotations

import base64
import binascii

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from festpass import event_log, registrations
from festpass.api.auth import require_operator, require_session, require_viewer
from festpass.api.schemas import ParticipantBody, RegistrationBody, ReprocessResponse
from festpass.defaults import PHOTO_BUCKET, QUERY_LIMIT_SMALL
from festpass.errors import ValidationError
from festpass.models import new_id
from festpass.ports import ObjectStoragePort
from festpass.status import build_view

router = APIRouter(tags=["registrations"])


def _store_photo(storage: ObjectStoragePort, encoded: str | None) -> str | None:
    """Decode a base64 (or data-URL) photo and store it; returns its key."""
    if not encoded:
        return None
    if encoded.startswith("data:"):
        encoded = encoded.partition(",")[2]
    try:
        data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("Photo is not valid base64", "invalid_photo") from None
    if not data:
        return None
    key = f"upload_{new_id()}"
    storage.put(PHOTO_BUCKET, key, data)
    return key


def _participant(storage: ObjectStoragePort, body: ParticipantBody) -> dict:
    return {
        "name": body.name,
        "email": body.email,
        "phone": body.phone,
        "college": body.college,
        "photo_key": _store_photo(storage, body.photo),
    }


@router.post("/registrations", status_code=201)
def submit_registration(request: Request, body: RegistrationBody):
    """Validate, persist and enqueue; returns the id and a polling token."""
    storage = request.app.state.storage
    payload = {
        "name": body.name,
        "email": body.email,
        "phone": body.phone,
        "college": body.college,
        "photo_key": _store_photo(storage, body.photo),
        "events": [
            {
                "event": sel.event,
                "participants": [_participant(storage, p) for p in sel.participants],
            }
            for sel in body.selections()
        ],
    }
    submission = registrations.submit(payload, secret=request.app.state.signing_secret)
    result = submission.to_dict()
    result["status_url"] = f"/api/registrations/{submission.registration.registration_id}/status"
    return JSONResponse(status_code=201, content=result)


@router.get("/registrations/{registration_id}/status")
def registration_status(
    registration_id: str,
    request: Request,
    _token: str = Depends(require_session),
):
    """Read-only status view with signed credential URLs."""
    view = build_view(
        registration_id, request.app.state.storage, ttl=request.app.state.signed_url_ttl,
    )
    return view.to_dict()


@router.get("/registrations")
def list_registrations(
    email: str | None = None,
    status: str | None = None,
    limit: int = QUERY_LIMIT_SMALL,
    principal: dict = Depends(require_viewer),
):
    found = event_log.list_registrations(
        contact_email=email.lower() if email else None, status=status, limit=limit,
    )
    return [r.to_dict() for r in found]


@router.get("/registrations/{registration_id}")
def get_registration(
    registration_id: str,
    principal: dict = Depends(require_viewer),
):
    return registrations.get(registration_id).to_dict()


@router.post("/registrations/{registration_id}/reprocess", response_model=ReprocessResponse)
def reprocess_registration(
    registration_id: str,
    principal: dict = Depends(require_operator),
):
    """Re-run generation for a FAILED or PARTIAL registration."""
    handle = registrations.reprocess(registration_id)
    registration = registrations.get(registration_id)
    return ReprocessResponse(
        registration_id=registration_id,
        status=registration.status.value,
        job=handle.to_dict() if handle else None,
    )
