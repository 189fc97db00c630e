"""HTTP API: intake, status polling, signed files, operator endpoints."""

from __future__ import annotations

import base64
import os
from unittest.mock import patch
from urllib.parse import urlsplit

import pytest
from fastapi.testclient import TestClient

from festpass import event_log, jobs, registrations
from festpass.api import create_app
from festpass.enhance.null_adapter import NullEnhancer
from festpass.enhance.port import EnhancerResolution
from festpass.models import EventType, RegistrationStatus
from festpass.status import session_token
from festpass.worker import QueueWorker, WorkerConfig

from conftest import TEST_SECRET, contact, cricket_team, make_payload, person, png_bytes

API_KEYS = "op-key:operator:ops,view-key:viewer:desk"


@pytest.fixture
def client(db_path, storage):
    with patch.dict(os.environ, {"FESTPASS_AUTH_REQUIRED": "0"}):
        app = create_app(db_path=str(db_path), storage=storage, signing_secret=TEST_SECRET)
        yield TestClient(app)


@pytest.fixture
def secured(db_path, storage):
    env = {"FESTPASS_AUTH_REQUIRED": "1", "FESTPASS_API_KEYS": API_KEYS}
    with patch.dict(os.environ, env):
        app = create_app(db_path=str(db_path), storage=storage, signing_secret=TEST_SECRET)
        yield TestClient(app)


def _photo_b64():
    return base64.b64encode(png_bytes()).decode()


def _submit(client, payload=None):
    resp = client.post("/api/registrations", json=payload or make_payload(["Debate"]))
    assert resp.status_code == 201, resp.text
    return resp.json()


def _drain(storage, template_path):
    config = WorkerConfig()
    config.template_path = str(template_path)
    config.backoff_base = 0
    worker = QueueWorker(config, storage=storage,
                         resolution=EnhancerResolution(enhancer=NullEnhancer()))
    return worker.run_once()


# ---------------------------------------------------------------------------
# Intake
# ---------------------------------------------------------------------------

class TestSubmit:
    def test_accepted(self, client):
        data = _submit(client)
        rid = data["registration_id"]
        assert rid == "NV25-00001"
        assert data["status"] == "PROCESSING"
        assert data["session_token"] == session_token(rid, TEST_SECRET)
        assert data["status_url"] == f"/api/registrations/{rid}/status"
        assert data["job"]["job_key"] == rid

    def test_plain_event_names_accepted(self, client):
        payload = {"name": "Asha Rao", "email": "asha@college.edu", "events": ["Debate"]}
        assert client.post("/api/registrations", json=payload).status_code == 201

    def test_photo_stored_and_full_job_queued(self, client, storage):
        data = _submit(client, make_payload(["Debate"], photo=_photo_b64()))
        reg = registrations.get(data["registration_id"])
        assert reg.photo_key.startswith("upload_")
        assert storage.exists("photos", reg.photo_key)
        (job,) = jobs.in_flight(reg.registration_id)
        assert job.job_type.value == "generateFullCredential"

    def test_data_url_photo(self, client):
        photo = "data:image/png;base64," + _photo_b64()
        data = _submit(client, make_payload(["Debate"], photo=photo))
        assert registrations.get(data["registration_id"]).photo_key

    def test_member_photos(self, client):
        roster = [contact(), person(1, photo=_photo_b64())]
        data = _submit(client, make_payload([("Quiz", roster)]))
        reg = registrations.get(data["registration_id"])
        member = reg.events[0].participants[1]
        assert member.photo_key.startswith("upload_")

    def test_invalid_photo(self, client):
        resp = client.post("/api/registrations", json=make_payload(["Debate"], photo="%%%"))
        assert resp.status_code == 422
        assert resp.json()["reason_code"] == "invalid_photo"

    def test_two_exception_events_rejected(self, client):
        payload = make_payload([
            ("Group Dance", [contact()] + [person(i) for i in range(1, 6)]),
            ("Cricket", cricket_team()),
        ])
        resp = client.post("/api/registrations", json=payload)
        assert resp.status_code == 422
        body = resp.json()
        assert body["reason_code"] == "multiple_exception_events"
        assert "Only one exception event allowed" in body["error"]
        assert event_log.list_registrations() == []

    def test_quiz_needs_two(self, client):
        resp = client.post("/api/registrations", json=make_payload(["Quiz"]))
        assert resp.status_code == 422
        assert resp.json()["reason_code"] == "participant_count"

    def test_unknown_event(self, client):
        resp = client.post("/api/registrations", json=make_payload(["Chess"]))
        assert resp.status_code == 422
        assert resp.json()["reason_code"] == "unknown_event"

    def test_cross_registration_conflict(self, client):
        _submit(client)
        resp = client.post("/api/registrations", json=make_payload(["Rangoli"]))
        assert resp.status_code == 409
        assert resp.json()["reason_code"] == "prior_regular_event"

    def test_malformed_body(self, client):
        resp = client.post("/api/registrations", json={"email": "asha@college.edu"})
        assert resp.status_code == 422
        assert resp.json()["reason_code"] == "invalid_body"


# ---------------------------------------------------------------------------
# Status polling and signed files
# ---------------------------------------------------------------------------

class TestStatus:
    def test_bearer_token(self, client):
        data = _submit(client)
        resp = client.get(data["status_url"],
                          headers={"Authorization": f"Bearer {data['session_token']}"})
        assert resp.status_code == 200
        view = resp.json()
        assert view["status"] == "PROCESSING"
        assert view["terminal"] is False
        assert view["credential_refs"] == []

    def test_query_token(self, client):
        data = _submit(client)
        resp = client.get(data["status_url"], params={"token": data["session_token"]})
        assert resp.status_code == 200

    def test_missing_token(self, client):
        data = _submit(client)
        resp = client.get(data["status_url"])
        assert resp.status_code == 401
        assert "error" in resp.json()

    def test_token_is_per_registration(self, client):
        first = _submit(client)
        second = _submit(client, make_payload(["Debate"], email="ravi@college.edu"))
        resp = client.get(second["status_url"], params={"token": first["session_token"]})
        assert resp.status_code == 401
        assert event_log.count(event_type=EventType.ACCESS_DENIED) == 1

    def test_unknown_registration(self, client):
        token = session_token("NV25-99999", TEST_SECRET)
        resp = client.get("/api/registrations/NV25-99999/status", params={"token": token})
        assert resp.status_code == 404

    def test_completed_view_has_signed_urls(self, client, storage, template_path):
        data = _submit(client, make_payload(["Debate"], photo=_photo_b64()))
        assert _drain(storage, template_path) == 1

        view = client.get(data["status_url"], params={"token": data["session_token"]}).json()
        assert view["status"] == "COMPLETED"
        assert view["terminal"] is True
        (ref,) = view["credential_refs"]
        assert ref["status"] == "ready"
        assert ref["expires_at"] > 0

        resp = client.get(ref["url"])
        assert resp.status_code == 200
        assert resp.headers["content-type"] == "image/png"
        assert resp.content.startswith(b"\x89PNG")

    def test_tampered_link_refused(self, client, storage, template_path):
        data = _submit(client)
        _drain(storage, template_path)
        view = client.get(data["status_url"], params={"token": data["session_token"]}).json()
        url = view["credential_refs"][0]["url"]
        parts = urlsplit(url)
        resp = client.get(parts.path, params={"expires": 9999999999, "sig": "0" * 64})
        assert resp.status_code == 403

    def test_unsigned_link_refused(self, client):
        assert client.get("/files/credentials/id_card_x.png").status_code == 403


# ---------------------------------------------------------------------------
# Operator endpoints
# ---------------------------------------------------------------------------

def _fail(rid):
    job = jobs.claim_next()
    jobs.fail(job, "boom")
    registrations.mark_terminal(rid, RegistrationStatus.FAILED, error_message="boom")


class TestReprocess:
    def test_failed_requeued_once(self, client):
        rid = _submit(client)["registration_id"]
        _fail(rid)

        first = client.post(f"/api/registrations/{rid}/reprocess")
        assert first.status_code == 200
        assert first.json()["status"] == "PROCESSING"
        assert first.json()["job"]["job_key"] == rid

        second = client.post(f"/api/registrations/{rid}/reprocess")
        assert second.status_code == 200
        assert second.json()["job"] is None

    def test_processing_is_noop(self, client):
        rid = _submit(client)["registration_id"]
        resp = client.post(f"/api/registrations/{rid}/reprocess")
        assert resp.status_code == 200
        assert resp.json()["job"] is None
        assert len(jobs.in_flight(rid)) == 1

    def test_completed_cannot_be_reprocessed(self, client):
        rid = _submit(client)["registration_id"]
        jobs.complete(jobs.claim_next())
        registrations.mark_terminal(rid, RegistrationStatus.COMPLETED)
        resp = client.post(f"/api/registrations/{rid}/reprocess")
        assert resp.status_code == 409
        assert resp.json()["reason_code"] == "invalid_transition"

    def test_unknown(self, client):
        assert client.post("/api/registrations/NV25-99999/reprocess").status_code == 404


class TestListings:
    def test_registrations_filtered_by_email(self, client):
        _submit(client)
        _submit(client, make_payload(["Debate"], email="ravi@college.edu"))
        resp = client.get("/api/registrations", params={"email": "RAVI@college.edu"})
        assert [r["contact_email"] for r in resp.json()] == ["ravi@college.edu"]

    def test_registration_detail(self, client):
        rid = _submit(client)["registration_id"]
        body = client.get(f"/api/registrations/{rid}").json()
        assert body["events"][0]["event"] == "Debate"

    def test_jobs_and_prune(self, client):
        rid = _submit(client)["registration_id"]
        listed = client.get("/api/jobs", params={"registration_id": rid}).json()
        assert listed[0]["state"] == "queued"
        resp = client.post("/api/jobs/prune", params={"keep": 0})
        assert resp.json() == {"removed": 0, "keep": 0}

    def test_audit(self, client):
        rid = _submit(client)["registration_id"]
        events = client.get("/api/audit", params={"registration_id": rid}).json()
        types = {e["event_type"] for e in events}
        assert EventType.REGISTRATION_CREATED in types
        assert EventType.JOB_ENQUEUED in types


class TestAuth:
    def test_no_key(self, secured):
        assert secured.get("/api/jobs").status_code == 401

    def test_bad_key(self, secured):
        assert secured.get("/api/jobs", headers={"x-api-key": "nope"}).status_code == 401

    def test_viewer_can_read(self, secured):
        assert secured.get("/api/jobs", headers={"x-api-key": "view-key"}).status_code == 200

    def test_viewer_cannot_prune(self, secured):
        resp = secured.post("/api/jobs/prune", headers={"x-api-key": "view-key"})
        assert resp.status_code == 403

    def test_operator_can_prune(self, secured):
        resp = secured.post("/api/jobs/prune", headers={"Authorization": "Bearer op-key"})
        assert resp.status_code == 200
        assert event_log.count(event_type=EventType.ACCESS_GRANTED) == 1

    def test_intake_is_public(self, secured):
        assert _submit(secured)["status"] == "PROCESSING"

    def test_staff_key_reads_any_status(self, secured):
        rid = _submit(secured)["registration_id"]
        resp = secured.get(f"/api/registrations/{rid}/status", headers={"x-api-key": "view-key"})
        assert resp.status_code == 200


# ---------------------------------------------------------------------------
# Catalog, health, metrics
# ---------------------------------------------------------------------------

class TestCatalogAndHealth:
    def test_events(self, client):
        events = client.get("/api/events").json()
        names = {e["name"] for e in events}
        assert {"Cricket", "Quiz", "Debate"} <= names

    def test_events_by_category(self, client):
        solo = client.get("/api/events", params={"category": "solo"}).json()
        assert solo
        assert all(e["category"] == "solo" for e in solo)

    def test_health(self, client):
        assert client.get("/health").json()["status"] == "ok"
        assert client.get("/health/ready").status_code == 200

    def test_metrics(self, client):
        _submit(client)
        text = client.get("/metrics").text
        assert 'festpass_http_requests_total{method="POST",path="/api/registrations",status="201"} 1' in text
        assert 'outcome="enqueued"' in text
