"""Credential pipeline: photo fallbacks, partial outcomes, error contract."""

from __future__ import annotations

import time
from unittest.mock import patch

import pytest

from festpass import event_log, jobs, pipeline, registrations
from festpass.compositor import load_template
from festpass.defaults import CREDENTIAL_BUCKET, PHOTO_BUCKET
from festpass.errors import AIServiceError, FatalAssetError, NotFound, TransientIOError
from festpass.models import (
    Credential,
    CredentialStatus,
    EventType,
    Job,
    JobType,
    RegistrationStatus,
)
from festpass.pipeline import CredentialPipeline, overall_status

from conftest import TEST_SECRET, contact, make_payload, person, png_bytes


class FakeEnhancer:
    provider_name = "fake"
    model = "fake-model"

    def __init__(self, result=None, error=None, delay=0.0):
        self.result = result
        self.error = error
        self.delay = delay
        self.calls = 0

    def is_available(self):
        return True

    def enhance(self, photo):
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error
        return self.result


class FlakyStorage:
    """Wraps real storage; writes to the credentials bucket fail."""

    def __init__(self, inner):
        self.inner = inner

    def get(self, bucket, key):
        return self.inner.get(bucket, key)

    def put(self, bucket, key, data):
        if bucket == CREDENTIAL_BUCKET:
            raise TransientIOError("disk full")
        return self.inner.put(bucket, key, data)

    def exists(self, bucket, key):
        return self.inner.exists(bucket, key)

    def signed_url(self, bucket, key, ttl):
        return self.inner.signed_url(bucket, key, ttl)


@pytest.fixture
def template(template_path):
    return load_template(template_path)


def _submit_team(storage, *, member_photos=("m1",)):
    """Dumb Charades team of three; the contact and listed members have photos."""
    storage.put(PHOTO_BUCKET, "contact", png_bytes(color=(200, 90, 60)))
    for key in member_photos:
        storage.put(PHOTO_BUCKET, key, png_bytes(color=(60, 90, 200)))
    roster = [
        contact(photo_key="contact"),
        person(1, photo_key=member_photos[0] if member_photos else None),
        person(2),
    ]
    payload = make_payload([("Dumb Charades", roster)], photo_key="contact")
    submission = registrations.submit(payload, secret=TEST_SECRET)
    return submission.registration, jobs.claim_next()


class TestOverallStatus:
    def _cred(self, status, error=None):
        return Credential(participant_id="p", name="n", email="e@x.io", status=status, error=error)

    def test_all_ready(self):
        creds = [self._cred(CredentialStatus.READY)] * 2
        assert overall_status(creds) == (RegistrationStatus.COMPLETED, None)

    def test_placeholder_is_partial(self):
        status, message = overall_status([
            self._cred(CredentialStatus.READY), self._cred(CredentialStatus.PLACEHOLDER),
        ])
        assert status == RegistrationStatus.PARTIAL
        assert message == "2 credentials: 1 placeholder"

    def test_some_failed_is_partial(self):
        status, message = overall_status([
            self._cred(CredentialStatus.READY), self._cred(CredentialStatus.FAILED, "boom"),
        ])
        assert status == RegistrationStatus.PARTIAL
        assert "1 failed" in message

    def test_nothing_produced_is_failed(self):
        status, message = overall_status([self._cred(CredentialStatus.FAILED, "boom")])
        assert status == RegistrationStatus.FAILED
        assert message == "No credentials produced: boom"

    def test_no_participants_is_failed(self):
        assert overall_status([])[0] == RegistrationStatus.FAILED


class TestRun:
    def test_member_without_photo_gives_partial(self, db_path, storage, template):
        reg, job = _submit_team(storage)
        assert job.job_type == JobType.FULL_CREDENTIAL

        result = CredentialPipeline(storage, template).run(job)

        assert result.status == RegistrationStatus.PARTIAL
        statuses = [c.status for c in result.credentials]
        assert statuses == [
            CredentialStatus.READY, CredentialStatus.READY, CredentialStatus.PLACEHOLDER,
        ]
        for credential in result.credentials:
            assert storage.exists(CREDENTIAL_BUCKET, credential.key)
            assert credential.events == ["Dumb Charades"]
        assert result.credentials[0].key == f"id_card_{reg.registration_id}-001.png"

    def test_all_photos_gives_completed(self, db_path, storage, template):
        storage.put(PHOTO_BUCKET, "m2", png_bytes())
        storage.put(PHOTO_BUCKET, "contact", png_bytes())
        storage.put(PHOTO_BUCKET, "m1", png_bytes())
        roster = [contact(photo_key="contact"), person(1, photo_key="m1"), person(2, photo_key="m2")]
        registrations.submit(
            make_payload([("Dumb Charades", roster)], photo_key="contact"), secret=TEST_SECRET,
        )
        result = CredentialPipeline(storage, template).run(jobs.claim_next())
        assert result.status == RegistrationStatus.COMPLETED
        assert result.error_message is None

    def test_full_job_stores_enhanced_photo(self, db_path, storage, template):
        reg, job = _submit_team(storage)
        result = CredentialPipeline(storage, template).run(job)
        assert result.enhanced_photo_key == f"enhanced_{reg.registration_id}.png"
        assert storage.exists(PHOTO_BUCKET, result.enhanced_photo_key)

    def test_simple_job_skips_enhancement(self, db_path, storage, template):
        registrations.submit(make_payload(["Debate"]), secret=TEST_SECRET)
        job = jobs.claim_next()
        assert job.job_type == JobType.SIMPLE_CREDENTIAL
        result = CredentialPipeline(storage, template).run(job)
        assert result.enhanced_photo_key is None
        # No photo at all: a placeholder card is still a card
        assert result.status == RegistrationStatus.PARTIAL

    def test_photo_missing_from_storage_uses_placeholder(self, db_path, storage, template):
        registrations.submit(make_payload(["Debate"], photo_key="gone"), secret=TEST_SECRET)
        result = CredentialPipeline(storage, template).run(jobs.claim_next())
        assert result.credentials[0].status == CredentialStatus.PLACEHOLDER

    def test_rendered_events_recorded(self, db_path, storage, template):
        reg, job = _submit_team(storage)
        CredentialPipeline(storage, template).run(job)
        events = event_log.query(event_type=EventType.CREDENTIAL_RENDERED,
                                 registration_id=reg.registration_id)
        assert len(events) == 3

    def test_one_card_failing_is_isolated(self, db_path, storage, template):
        reg, job = _submit_team(storage)
        real_compose = pipeline.compose

        def compose(fields, photo, **kw):
            if fields.name == "Member 2":
                raise RuntimeError("font exploded")
            return real_compose(fields, photo, **kw)

        with patch.object(pipeline, "compose", side_effect=compose):
            result = CredentialPipeline(storage, template).run(job)

        assert result.status == RegistrationStatus.PARTIAL
        failed = result.credentials[2]
        assert failed.status == CredentialStatus.FAILED
        assert failed.error == "font exploded"
        assert failed.key is None


class TestErrorContract:
    def test_missing_template_is_fatal(self, db_path, storage):
        _, job = _submit_team(storage)
        with pytest.raises(FatalAssetError) as exc_info:
            CredentialPipeline(storage, None, template_error="Base template not found: x").run(job)
        assert exc_info.value.message == "Base template not found: x"

    def test_unknown_registration(self, db_path, storage, template):
        job = Job(job_key="NV25-99999", job_type=JobType.SIMPLE_CREDENTIAL)
        with pytest.raises(NotFound):
            CredentialPipeline(storage, template).run(job)

    def test_storage_write_failure_propagates(self, db_path, storage, template):
        _, job = _submit_team(storage)
        with pytest.raises(TransientIOError):
            CredentialPipeline(FlakyStorage(storage), template).run(job)


class TestEnhancement:
    def test_ai_result_used(self, db_path, storage, template):
        enhanced = png_bytes(color=(1, 2, 3))
        enhancer = FakeEnhancer(result=enhanced)
        reg, job = _submit_team(storage)

        result = CredentialPipeline(storage, template, enhancer=enhancer).run(job)

        assert enhancer.calls == 1
        assert storage.get(PHOTO_BUCKET, result.enhanced_photo_key) == enhanced
        assert event_log.count(event_type=EventType.AI_ENHANCEMENT_FALLBACK) == 0

    def test_ai_error_falls_back_to_local(self, db_path, storage, template):
        enhancer = FakeEnhancer(error=AIServiceError("quota"))
        reg, job = _submit_team(storage)

        result = CredentialPipeline(storage, template, enhancer=enhancer).run(job)

        assert result.status == RegistrationStatus.PARTIAL
        stored = storage.get(PHOTO_BUCKET, result.enhanced_photo_key)
        assert stored.startswith(b"\x89PNG")
        (event,) = event_log.query(event_type=EventType.AI_ENHANCEMENT_FALLBACK)
        assert event["payload"]["model"] == "fake-model"
        assert "quota" in event["payload"]["error"]

    def test_undecodable_ai_output_falls_back_to_local(self, db_path, storage, template):
        enhancer = FakeEnhancer(result=b"<html>quota exceeded</html>")
        reg, job = _submit_team(storage)

        result = CredentialPipeline(storage, template, enhancer=enhancer).run(job)

        stored = storage.get(PHOTO_BUCKET, result.enhanced_photo_key)
        assert stored.startswith(b"\x89PNG")
        assert result.credentials[0].status == CredentialStatus.READY
        (event,) = event_log.query(event_type=EventType.AI_ENHANCEMENT_FALLBACK)
        assert "undecodable" in event["payload"]["error"]

    def test_ai_timeout_falls_back(self, db_path, storage, template):
        enhancer = FakeEnhancer(result=b"late", delay=1.0)
        pipe = CredentialPipeline(storage, template, enhancer=enhancer, ai_timeout=0.05)
        photo = png_bytes()
        out = pipe.enhance("NV25-00001", photo)
        assert out != b"late"
        assert out.startswith(b"\x89PNG")

    def test_undecodable_photo_returned_unchanged(self, db_path, storage, template):
        pipe = CredentialPipeline(storage, template)
        assert pipe.enhance("NV25-00001", b"not an image") == b"not an image"
