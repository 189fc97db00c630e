"""Registration lifecycle: ids, intake, confirm, terminal writes, reprocess."""

from __future__ import annotations

import re
import threading
from unittest.mock import patch

import pytest

from festpass import event_log, jobs, registrations, rules
from festpass.errors import ConflictError, InvalidTransition, NotFound, ValidationError
from festpass.models import (
    Credential,
    CredentialStatus,
    EventType,
    JobType,
    ParticipantRole,
    RegistrationStatus,
)
from festpass.status import session_token, verify_session_token

from conftest import TEST_SECRET, contact, cricket_team, make_payload, person


def _scenario_c():
    return make_payload([
        ("Cricket", cricket_team()),
        ("Quiz", [contact(), person(1)]),
    ])


# ---------------------------------------------------------------------------
# Registration ids
# ---------------------------------------------------------------------------

class TestRegistrationIds:
    def test_sequential_ids(self, db_path):
        first = registrations.create(make_payload(["Debate"]))
        second = registrations.create(make_payload(["Debate"], email="ravi@college.edu"))
        assert first.registration_id == "NV25-00001"
        assert second.registration_id == "NV25-00002"

    def test_concurrent_creation_yields_unique_ids(self, db_path):
        ids: list[str] = []
        lock = threading.Lock()

        def create(n):
            reg = registrations.create(make_payload(["Debate"], email=f"p{n}@college.edu"))
            with lock:
                ids.append(reg.registration_id)

        threads = [threading.Thread(target=create, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(ids) == 8
        assert len(set(ids)) == 8

    def test_fallback_when_sequence_unavailable(self, db_path, caplog):
        with patch.object(event_log, "next_sequence_value", side_effect=RuntimeError("down")):
            reg = registrations.create(make_payload(["Debate"]))
        assert re.fullmatch(r"NV25-[0-9A-Z]+-[0-9A-Z]{4}", reg.registration_id)
        assert "NON-SEQUENCE" in caplog.text
        events = event_log.query(event_type=EventType.REGISTRATION_ID_FALLBACK)
        assert events[0]["registration_id"] == reg.registration_id

    def test_fallback_ids_differ(self):
        assert registrations.fallback_registration_id() != registrations.fallback_registration_id()


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------

class TestCreate:
    def test_draft_with_participant_ids(self, db_path):
        reg = registrations.create(_scenario_c())
        assert reg.status == RegistrationStatus.DRAFT
        assert reg.event_names == ["Cricket", "Quiz"]
        cricket, quiz = reg.events
        assert cricket.participants[0].id == f"{reg.registration_id}-001"
        assert cricket.participants[0].role == ParticipantRole.PRIMARY
        # The contact plays both events and keeps one id
        assert quiz.participants[0].id == cricket.participants[0].id
        assert quiz.participants[1].id == cricket.participants[1].id

    def test_unique_participants_collect_events(self, db_path):
        reg = registrations.create(_scenario_c())
        unique = reg.unique_participants()
        assert len(unique) == 11
        primary, events = unique[0]
        assert primary.email == "asha@college.edu"
        assert events == ["Cricket", "Quiz"]

    def test_empty_roster_means_registrant(self, db_path):
        reg = registrations.create(make_payload(["Debate"], photo_key="upload_1"))
        (participant,) = reg.events[0].participants
        assert participant.name == "Asha Rao"
        assert participant.photo_key == "upload_1"
        assert participant.role == ParticipantRole.PRIMARY

    def test_contact_email_stored_lowercase(self, db_path):
        reg = registrations.create(make_payload(["Debate"], email="Asha@College.EDU"))
        assert event_log.get_registration(reg.registration_id).contact_email == "asha@college.edu"

    def test_missing_contact(self, db_path):
        with pytest.raises(ValidationError) as exc_info:
            registrations.create({"events": ["Debate"]})
        assert exc_info.value.reason_code == "missing_contact"

    def test_unknown_event_rejected_at_create(self, db_path):
        with pytest.raises(ValidationError):
            registrations.create(make_payload(["Chess"]))


# ---------------------------------------------------------------------------
# Submit (single-shot intake)
# ---------------------------------------------------------------------------

class TestSubmit:
    def test_scenario_c_accepted_and_enqueued(self, db_path):
        submission = registrations.submit(_scenario_c(), secret=TEST_SECRET)
        reg = submission.registration
        assert reg.status == RegistrationStatus.PROCESSING
        assert submission.job is not None
        assert submission.job.job_key == reg.registration_id
        (job,) = jobs.in_flight(reg.registration_id)
        assert job.job_type == JobType.SIMPLE_CREDENTIAL
        assert verify_session_token(reg.registration_id, submission.session_token, TEST_SECRET)

    def test_photo_selects_full_credential(self, db_path):
        submission = registrations.submit(
            make_payload(["Debate"], photo_key="upload_1"), secret=TEST_SECRET,
        )
        (job,) = jobs.in_flight(submission.registration.registration_id)
        assert job.job_type == JobType.FULL_CREDENTIAL

    def test_scenario_a_rejected_nothing_persisted(self, db_path):
        payload = make_payload([
            ("Group Dance", [contact()] + [person(i) for i in range(1, 6)]),
            ("Cricket", cricket_team()),
        ])
        with pytest.raises(ValidationError) as exc_info:
            registrations.submit(payload, secret=TEST_SECRET)
        assert exc_info.value.reason_code == "multiple_exception_events"
        assert event_log.list_registrations() == []
        assert jobs.list_jobs() == []

    def test_scenario_b_rejected(self, db_path):
        with pytest.raises(ValidationError) as exc_info:
            registrations.submit(make_payload(["Quiz"]), secret=TEST_SECRET)
        assert "Exactly 2 participants required" in exc_info.value.message

    def test_cross_registration_conflict(self, db_path):
        registrations.submit(make_payload(["Debate"]), secret=TEST_SECRET)
        with pytest.raises(ConflictError) as exc_info:
            registrations.submit(make_payload(["Rangoli"]), secret=TEST_SECRET)
        assert exc_info.value.reason_code == "prior_regular_event"

    def test_other_category_allowed_later(self, db_path):
        registrations.submit(make_payload(["Debate"]), secret=TEST_SECRET)
        second = registrations.submit(
            make_payload([("Cricket", cricket_team())]), secret=TEST_SECRET,
        )
        assert second.registration.status == RegistrationStatus.PROCESSING

    def test_to_dict_shape(self, db_path):
        data = registrations.submit(make_payload(["Debate"]), secret=TEST_SECRET).to_dict()
        assert set(data) == {"registration_id", "status", "session_token", "job"}
        assert data["session_token"] == session_token(data["registration_id"], TEST_SECRET)


# ---------------------------------------------------------------------------
# Confirm
# ---------------------------------------------------------------------------

class TestConfirm:
    def test_confirm_moves_to_processing(self, db_path):
        reg = registrations.create(make_payload(["Debate"]))
        assert registrations.confirm(reg.registration_id).ok
        assert registrations.get(reg.registration_id).status == RegistrationStatus.PROCESSING

    def test_confirm_twice_is_noop(self, db_path):
        reg = registrations.create(make_payload(["Debate"]))
        registrations.confirm(reg.registration_id)
        assert registrations.confirm(reg.registration_id).ok
        assert len(jobs.list_jobs(job_key=reg.registration_id)) == 1

    def test_concurrent_confirm_enqueues_once(self, db_path):
        reg = registrations.create(make_payload(["Debate"]))
        barrier = threading.Barrier(6)

        def go():
            barrier.wait()
            registrations.confirm(reg.registration_id)

        threads = [threading.Thread(target=go) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(jobs.list_jobs(job_key=reg.registration_id)) == 1

    def test_invalid_draft_stays_draft(self, db_path):
        reg = registrations.create(make_payload(["Quiz"]))
        result = registrations.confirm(reg.registration_id)
        assert not result.ok
        assert result.reason_code == "participant_count"
        assert registrations.get(reg.registration_id).status == RegistrationStatus.DRAFT
        assert event_log.query(event_type=EventType.REGISTRATION_REJECTED)

    def test_drafts_do_not_count_as_prior(self, db_path):
        registrations.create(make_payload(["Debate"]))
        reg = registrations.create(make_payload(["Rangoli"]))
        assert registrations.confirm(reg.registration_id).ok

    def test_rival_confirmed_meanwhile_sends_draft_back(self, db_path):
        first = registrations.create(make_payload(["Debate"]))
        rival = registrations.create(make_payload(["Extempore"]))
        real_validate = rules.validate_payload

        def validate_while_rival_confirms(*args, **kwargs):
            result = real_validate(*args, **kwargs)
            event_log.update_registration_if(
                rival.registration_id, [RegistrationStatus.DRAFT],
                {"status": RegistrationStatus.PROCESSING},
            )
            return result

        with patch.object(rules, "validate_payload", side_effect=validate_while_rival_confirms):
            result = registrations.confirm(first.registration_id)

        assert result.reason_code == "prior_regular_event"
        assert registrations.get(first.registration_id).status == RegistrationStatus.DRAFT
        assert jobs.in_flight(first.registration_id) == []
        assert registrations.get(rival.registration_id).status == RegistrationStatus.PROCESSING

    def test_unknown_registration(self, db_path):
        with pytest.raises(NotFound):
            registrations.confirm("NV25-99999")


# ---------------------------------------------------------------------------
# Terminal writes and reprocess
# ---------------------------------------------------------------------------

def _processing():
    return registrations.submit(make_payload(["Debate"]), secret=TEST_SECRET).registration


class TestMarkTerminal:
    def test_applies_once(self, db_path):
        reg = _processing()
        creds = [Credential(participant_id="p", name="n", email="e@x.io", key="k")]
        assert registrations.mark_terminal(
            reg.registration_id, RegistrationStatus.COMPLETED, credentials=creds,
        )
        assert not registrations.mark_terminal(
            reg.registration_id, RegistrationStatus.FAILED, error_message="late",
        )
        stored = registrations.get(reg.registration_id)
        assert stored.status == RegistrationStatus.COMPLETED
        assert stored.credentials[0].status == CredentialStatus.READY
        assert len(event_log.query(event_type=EventType.REGISTRATION_COMPLETED)) == 1

    def test_rejects_non_terminal(self, db_path):
        reg = _processing()
        with pytest.raises(ValueError):
            registrations.mark_terminal(reg.registration_id, RegistrationStatus.PROCESSING)

    def test_draft_cannot_become_terminal(self, db_path):
        reg = registrations.create(make_payload(["Debate"]))
        assert not registrations.mark_terminal(reg.registration_id, RegistrationStatus.FAILED)


class TestReprocess:
    def _failed(self):
        reg = _processing()
        (job,) = jobs.in_flight(reg.registration_id)
        claimed = jobs.claim_next()
        assert claimed.id == job.id
        jobs.fail(claimed, "boom")
        registrations.mark_terminal(reg.registration_id, RegistrationStatus.FAILED,
                                    error_message="boom")
        return reg

    def test_failed_is_reprocessed(self, db_path):
        reg = self._failed()
        handle = registrations.reprocess(reg.registration_id)
        assert handle is not None
        stored = registrations.get(reg.registration_id)
        assert stored.status == RegistrationStatus.PROCESSING
        assert stored.error_message is None

    def test_duplicate_reprocess_is_noop(self, db_path):
        reg = self._failed()
        assert registrations.reprocess(reg.registration_id) is not None
        assert registrations.reprocess(reg.registration_id) is None
        assert len(jobs.in_flight(reg.registration_id)) == 1

    def test_processing_without_live_job_is_requeued(self, db_path):
        reg = _processing()
        # The job row finished but the terminal registration write never landed.
        jobs.complete(jobs.claim_next())

        handle = registrations.reprocess(reg.registration_id)

        assert handle is not None
        assert len(jobs.in_flight(reg.registration_id)) == 1
        (event,) = event_log.query(event_type=EventType.REGISTRATION_REPROCESSED)
        assert event["payload"]["previous_status"] == "PROCESSING"

    def test_completed_cannot_be_reprocessed(self, db_path):
        reg = _processing()
        registrations.mark_terminal(reg.registration_id, RegistrationStatus.COMPLETED)
        with pytest.raises(InvalidTransition):
            registrations.reprocess(reg.registration_id)

    def test_draft_cannot_be_reprocessed(self, db_path):
        reg = registrations.create(make_payload(["Debate"]))
        with pytest.raises(InvalidTransition):
            registrations.reprocess(reg.registration_id)
