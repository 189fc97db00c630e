"""Operator authentication, session-token checks and access auditing.

Operator endpoints use ``x-api-key`` (or ``Authorization: Bearer``) keys
configured in ``FESTPASS_API_KEYS`` as ``key:role:actor`` entries; keys are
compared by sha256 hash.  Registrants poll their own registration with the
session token handed out at submit time.
"""

from __future__ import annotations

import hashlib
import logging
import os
from typing import Any

from fastapi import HTTPException, Request

from festpass import event_log
from festpass.models import EventType
from festpass.status import verify_session_token

log = logging.getLogger("festpass.auth")

_KEY_PREFIX_LEN = 4             # characters of API key shown in logs


# ---------------------------------------------------------------------------
# Role hierarchy
# ---------------------------------------------------------------------------

ROLE_RANK = {"viewer": 0, "operator": 1, "admin": 2}


# ---------------------------------------------------------------------------
# Core helpers
# ---------------------------------------------------------------------------

def _parse_api_keys() -> dict[str, dict[str, str]]:
    """Parse FESTPASS_API_KEYS env var: key:role:actor[,key:role:actor...]"""
    raw = os.environ.get("FESTPASS_API_KEYS", "")
    keys: dict[str, dict[str, str]] = {}
    for entry in raw.split(","):
        parts = entry.strip().split(":")
        if len(parts) >= 3 and parts[0]:
            k, role, actor = parts[0], parts[1], parts[2]
            hashed = hashlib.sha256(k.encode()).hexdigest()
            keys[hashed] = {"role": role, "actor": actor, "key_prefix": k[:_KEY_PREFIX_LEN]}
    return keys


def _auth_required() -> bool:
    return os.environ.get("FESTPASS_AUTH_REQUIRED", "1") == "1"


def _bearer(request: Request) -> str:
    header = request.headers.get("authorization", "")
    scheme, _, value = header.partition(" ")
    return value.strip() if scheme.lower() == "bearer" else ""


# ---------------------------------------------------------------------------
# Access auditing
# ---------------------------------------------------------------------------

def _record_access_event(
    event_type: str,
    *,
    method: str = "",
    path: str = "",
    actor: str = "",
    role: str = "",
    reason: str = "",
    registration_id: str | None = None,
) -> None:
    """Record an access.granted or access.denied event in the audit log."""
    try:
        event_log.record(
            event_type, registration_id,
            method=method, path=path, actor=actor, role=role, reason=reason,
        )
    except Exception:
        # Never let audit logging break the request
        log.debug("Failed to record access event", exc_info=True)


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------

def _authenticate(api_key: str, method: str, path: str) -> dict[str, Any]:
    """Validate API key and return principal, or raise 401."""
    if not api_key:
        _record_access_event(EventType.ACCESS_DENIED, method=method, path=path, reason="no_api_key")
        raise HTTPException(status_code=401, detail="Unauthorized")

    hashed = hashlib.sha256(api_key.encode()).hexdigest()
    principal = _parse_api_keys().get(hashed)
    if principal is None:
        _record_access_event(EventType.ACCESS_DENIED, method=method, path=path, reason="invalid_key")
        raise HTTPException(status_code=401, detail="Unauthorized")
    return principal


def _authorize_role(principal: dict[str, Any], min_role: str, method: str, path: str) -> None:
    """Check role, raise 403 if insufficient."""
    if ROLE_RANK.get(principal["role"], -1) < ROLE_RANK.get(min_role, 99):
        _record_access_event(
            EventType.ACCESS_DENIED, method=method, path=path,
            actor=principal.get("actor", ""), role=principal.get("role", ""),
            reason="insufficient_role",
        )
        raise HTTPException(status_code=403, detail="Forbidden")


def _resolve_principal(request: Request, min_role: str) -> dict[str, Any]:
    """Authenticate and authorize a request, raising HTTPException on failure."""
    if not _auth_required():
        return {"role": "admin", "actor": "anonymous"}

    method = request.method
    path = request.url.path
    api_key = request.headers.get("x-api-key", "") or _bearer(request)

    principal = _authenticate(api_key, method, path)
    _authorize_role(principal, min_role, method, path)

    # Record successful access (skip GET to reduce noise)
    if method != "GET":
        _record_access_event(
            EventType.ACCESS_GRANTED, method=method, path=path,
            actor=principal.get("actor", ""), role=principal.get("role", ""),
        )
    return principal


def require_viewer(request: Request) -> dict[str, Any]:
    return _resolve_principal(request, "viewer")


def require_operator(request: Request) -> dict[str, Any]:
    return _resolve_principal(request, "operator")


def require_session(request: Request, registration_id: str, token: str | None = None) -> str:
    """Accept the registration's session token from the header or ``?token=``.

    An operator key with viewer rank is accepted too, so staff can look at
    any registration's status.
    """
    supplied = _bearer(request) or (token or "")
    secret = request.app.state.signing_secret
    if verify_session_token(registration_id, supplied, secret):
        return supplied
    api_key = request.headers.get("x-api-key", "")
    if api_key:
        _resolve_principal(request, "viewer")
        return api_key
    _record_access_event(
        EventType.ACCESS_DENIED, method=request.method, path=request.url.path,
        reason="bad_session_token", registration_id=registration_id,
    )
    raise HTTPException(status_code=401, detail="Invalid or missing session token")
