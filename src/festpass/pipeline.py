"""Credential pipeline: one job in, one terminal outcome out.

``CredentialPipeline.run`` does the work for a claimed job and returns a
``PipelineResult``; it never touches job or registration state.  The worker
owns those writes so that retry and terminal decisions live in one place.

Error contract:

- ``TransientIOError`` propagates (the worker retries the job).
- ``FatalAssetError`` propagates (the worker fails the job, no retry).
- ``AIServiceError``, timeouts and an open breaker are absorbed: the photo
  falls back to local enhancement, then to the original bytes.
- A failure rendering one participant's card is recorded on that card only.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field
from typing import Any

from PIL import Image

from festpass import event_log
from festpass.compositor import CredentialFields, Template, compose
from festpass.defaults import (
    AI_BREAKER_FAILURES,
    AI_BREAKER_RECOVERY_SECONDS,
    AI_TIMEOUT_SECONDS,
    CREDENTIAL_BUCKET,
    PHOTO_BUCKET,
)
from festpass.enhance.local import local_enhance
from festpass.enhance.null_adapter import NullEnhancer
from festpass.enhance.port import EnhancerPort
from festpass.errors import AIServiceError, FatalAssetError, NotFound, TransientIOError
from festpass.models import (
    Credential,
    CredentialStatus,
    EventType,
    Job,
    JobType,
    Participant,
    ParticipantRole,
    Registration,
    RegistrationStatus,
)
from festpass.observability import record_credential
from festpass.ports import ObjectStoragePort
from festpass.resilience import CircuitBreaker, with_timeout

log = logging.getLogger("festpass.pipeline")


@dataclass
class PipelineResult:
    status: RegistrationStatus
    credentials: list[Credential] = field(default_factory=list)
    enhanced_photo_key: str | None = None
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "credentials": [c.to_dict() for c in self.credentials],
            "enhanced_photo_key": self.enhanced_photo_key,
            "error_message": self.error_message,
        }


def credential_key(participant_id: str) -> str:
    return f"id_card_{participant_id}.png"


def enhanced_photo_key(registration_id: str) -> str:
    return f"enhanced_{registration_id}.png"


def overall_status(credentials: list[Credential]) -> tuple[RegistrationStatus, str | None]:
    """COMPLETED if all ready, FAILED if nothing was produced, else PARTIAL."""
    if credentials and all(c.status == CredentialStatus.READY for c in credentials):
        return RegistrationStatus.COMPLETED, None
    produced = [c for c in credentials if c.status != CredentialStatus.FAILED]
    if not produced:
        errors = sorted({c.error for c in credentials if c.error})
        detail = "; ".join(errors) if errors else "no participants"
        return RegistrationStatus.FAILED, f"No credentials produced: {detail}"
    failed = len(credentials) - len(produced)
    placeholders = sum(1 for c in produced if c.status == CredentialStatus.PLACEHOLDER)
    parts = []
    if failed:
        parts.append(f"{failed} failed")
    if placeholders:
        parts.append(f"{placeholders} placeholder")
    return RegistrationStatus.PARTIAL, f"{len(credentials)} credentials: " + ", ".join(parts)


class CredentialPipeline:
    """Renders every credential for one registration."""

    def __init__(
        self,
        storage: ObjectStoragePort,
        template: Template | None,
        *,
        enhancer: EnhancerPort | None = None,
        template_error: str | None = None,
        ai_timeout: float = AI_TIMEOUT_SECONDS,
        breaker: CircuitBreaker | None = None,
        include_qr: bool = True,
    ) -> None:
        self.storage = storage
        self.template = template
        self.template_error = template_error or "Base template not loaded"
        self.enhancer = enhancer or NullEnhancer()
        self.ai_timeout = ai_timeout
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=AI_BREAKER_FAILURES,
            recovery_timeout=AI_BREAKER_RECOVERY_SECONDS,
            name="ai-enhance",
        )
        self.include_qr = include_qr

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def fetch_photo(self, key: str | None) -> bytes | None:
        """Stored photo bytes; a missing object counts as no photo."""
        if not key:
            return None
        try:
            return self.storage.get(PHOTO_BUCKET, key)
        except NotFound:
            log.info("Photo %s not in storage; using placeholder", key)
            return None

    def _ai_enhance(self, photo: bytes) -> bytes:
        """Enhancer output, refused unless Pillow can decode it."""
        enhanced = self.enhancer.enhance(photo)
        try:
            with Image.open(io.BytesIO(enhanced)) as img:
                img.verify()
        except (OSError, SyntaxError, ValueError) as exc:
            raise AIServiceError(f"Enhancer returned an undecodable image: {exc}") from exc
        return enhanced

    def enhance(self, registration_id: str, photo: bytes) -> bytes:
        """AI enhancement, bounded; degrades to local, then to the original."""
        if self.enhancer.is_available():
            bounded = with_timeout(self.ai_timeout)(self._ai_enhance)
            try:
                return self.breaker.call(bounded, photo)
            except Exception as exc:  # CircuitOpen, OperationTimeout, AIServiceError
                log.warning(
                    "AI enhancement failed, using local enhancement: %s", exc,
                    extra={"registration_id": registration_id},
                )
                event_log.record(
                    EventType.AI_ENHANCEMENT_FALLBACK, registration_id,
                    model=self.enhancer.model, error=str(exc),
                )
        try:
            return local_enhance(photo)
        except (OSError, ValueError) as exc:
            log.info("Local enhancement failed, using original photo: %s", exc,
                     extra={"registration_id": registration_id})
            return photo

    def render(
        self,
        participant: Participant,
        events: list[str],
        photo: bytes | None,
    ) -> Credential:
        """Compose and store one card.  Only storage and template errors escape."""
        credential = Credential(
            participant_id=participant.id,
            name=participant.name,
            email=participant.email,
            events=list(events),
        )
        fields = CredentialFields(
            name=participant.name,
            organization=participant.college,
            events=events,
            credential_id=participant.id,
        )
        try:
            composed = compose(fields, photo, template=self.template, include_qr=self.include_qr)
            key = credential_key(participant.id)
            self.storage.put(CREDENTIAL_BUCKET, key, composed.data)
        except (FatalAssetError, TransientIOError):
            raise
        except Exception as exc:
            log.exception("Rendering credential for %s failed", participant.id)
            credential.status = CredentialStatus.FAILED
            credential.error = str(exc)
            return credential

        credential.key = key
        credential.status = (
            CredentialStatus.PLACEHOLDER if composed.placeholder else CredentialStatus.READY
        )
        return credential

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self, job: Job) -> PipelineResult:
        registration = event_log.get_registration(job.registration_id)
        if registration is None:
            raise NotFound(f"Registration not found: {job.registration_id}")
        if self.template is None:
            raise FatalAssetError(self.template_error)
        return self._run(job, registration)

    def _run(self, job: Job, registration: Registration) -> PipelineResult:
        rid = registration.registration_id
        primary_photo = self.fetch_photo(registration.photo_key)
        enhanced_key = None

        if job.job_type == JobType.FULL_CREDENTIAL and primary_photo is not None:
            primary_photo = self.enhance(rid, primary_photo)
            enhanced_key = enhanced_photo_key(rid)
            self.storage.put(PHOTO_BUCKET, enhanced_key, primary_photo)

        credentials: list[Credential] = []
        for participant, events in registration.unique_participants():
            if participant.role == ParticipantRole.PRIMARY:
                photo = primary_photo
            else:
                photo = self.fetch_photo(participant.photo_key)
            credential = self.render(participant, events, photo)
            record_credential(credential.status.value)
            event_log.record(
                EventType.CREDENTIAL_RENDERED, rid,
                participant_id=participant.id, status=credential.status.value,
                error=credential.error,
            )
            credentials.append(credential)

        status, message = overall_status(credentials)
        log.info("Registration %s rendered: %s", rid, status.value,
                 extra={"registration_id": rid, "job_id": job.id})
        return PipelineResult(
            status=status,
            credentials=credentials,
            enhanced_photo_key=enhanced_key,
            error_message=message,
        )
