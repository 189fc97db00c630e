"""Read-only status projection for client polling.

``build_view`` never writes: it reads the registration row and resolves
each credential key to a short-lived signed URL.
"""

from __future__ import annotations

import hashlib
import hmac

from festpass import event_log
from festpass.defaults import CREDENTIAL_BUCKET, SIGNED_URL_TTL_SECONDS
from festpass.errors import NotFound
from festpass.models import CredentialRef, CredentialStatus, RegistrationStatusView
from festpass.ports import ObjectStoragePort

_TOKEN_CHARS = 32


def session_token(registration_id: str, secret: str) -> str:
    """Opaque token that lets a client poll one registration."""
    digest = hmac.new(secret.encode(), f"session:{registration_id}".encode(), hashlib.sha256)
    return digest.hexdigest()[:_TOKEN_CHARS]


def verify_session_token(registration_id: str, token: str, secret: str) -> bool:
    if not token:
        return False
    return hmac.compare_digest(session_token(registration_id, secret), token)


def build_view(
    registration_id: str,
    storage: ObjectStoragePort,
    *,
    ttl: int = SIGNED_URL_TTL_SECONDS,
) -> RegistrationStatusView:
    registration = event_log.get_registration(registration_id)
    if registration is None:
        raise NotFound(f"Registration not found: {registration_id}")

    refs: list[CredentialRef] = []
    for credential in registration.credentials:
        url = expires_at = None
        if credential.key and credential.status != CredentialStatus.FAILED:
            url, expires_at = storage.signed_url(CREDENTIAL_BUCKET, credential.key, ttl)
        refs.append(CredentialRef(
            participant_id=credential.participant_id,
            name=credential.name,
            status=credential.status,
            url=url,
            expires_at=expires_at,
        ))

    return RegistrationStatusView(
        registration_id=registration.registration_id,
        status=registration.status,
        credential_refs=refs,
        error_message=registration.error_message,
    )
