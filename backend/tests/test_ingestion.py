"""
Tests for session lifecycle and the event ingestion gateway
"""
from datetime import timedelta
from unittest.mock import Mock

import pytest

from conftest import EXAM_START, STUDENT_ID


def at(seconds):
    return EXAM_START + timedelta(seconds=seconds)


@pytest.fixture
def notifier():
    return Mock()


@pytest.fixture
def ingestion(db, locks, notifier):
    from examguard.services.ingestion_service import IngestionService

    return IngestionService(db, notifier=notifier, locks=locks)


class TestSessionService:
    """Tests for SessionService"""

    def test_open_session(self, db, exam, locks):
        from examguard.services.session_service import SessionService

        session = SessionService(db, locks=locks).open_session(exam.id, STUDENT_ID, student_name="Alice")
        assert session.id.startswith("SES_")
        assert session.is_open

    def test_open_session_is_idempotent_for_same_attempt(self, db, exam_session, locks):
        from examguard.services.session_service import SessionService

        service = SessionService(db, locks=locks)
        again = service.open_session(exam_session.exam_id, STUDENT_ID, session_id=exam_session.id)
        assert again.id == exam_session.id

    def test_open_session_rejects_foreign_id(self, db, exam_session, locks):
        from examguard.services.session_service import SessionService

        with pytest.raises(ValueError):
            SessionService(db, locks=locks).open_session(exam_session.exam_id, "someone-else", session_id=exam_session.id)

    def test_open_session_unknown_exam(self, db, locks):
        from examguard.core.exceptions import ExamNotFoundError
        from examguard.services.session_service import SessionService

        with pytest.raises(ExamNotFoundError):
            SessionService(db, locks=locks).open_session("NOPE", STUDENT_ID)

    def test_end_session_twice(self, db, exam_session, locks):
        from examguard.core.exceptions import SessionClosedError
        from examguard.services.session_service import SessionService

        service = SessionService(db, locks=locks)
        ended = service.end_session(exam_session.id)
        assert ended.status == "submitted"
        assert ended.end_time is not None

        with pytest.raises(SessionClosedError):
            service.end_session(exam_session.id)

    def test_live_profile_rejects_closed(self, db, exam_session, locks):
        from examguard.core.exceptions import SessionClosedError
        from examguard.services.session_service import SessionService

        service = SessionService(db, locks=locks)
        service.end_session(exam_session.id)
        with pytest.raises(SessionClosedError):
            service.live_profile(exam_session.id)


class TestIngestion:
    """Tests for IngestionService.ingest"""

    def test_unknown_session(self, ingestion):
        from examguard.core.exceptions import SessionNotFoundError

        with pytest.raises(SessionNotFoundError):
            ingestion.ingest("SES_MISSING", "tab_switch", at(10), severity="high")

    def test_event_is_stored_and_scored(self, ingestion, exam_session, notifier):
        decision = ingestion.ingest(exam_session.id, "tab_switch", at(10), severity="high", metadata={"camera_active": True})

        assert decision.terminated is False
        assert decision.duplicate is False
        assert decision.profile.risk_score == 10.0
        assert decision.profile.violation_count == 1
        notifier.assert_not_called()

        records = ingestion.sessions.records(exam_session.id)
        assert len(records) == 1
        assert records[0].severity == "critical"
        assert records[0].metadata == {"camera_active": True}

    def test_redelivery_is_idempotent(self, ingestion, exam_session):
        ingestion.ingest(exam_session.id, "tab_switch", at(10), severity="high")
        first = ingestion.ingest(exam_session.id, "window_blur", at(70), severity="medium")
        again = ingestion.ingest(exam_session.id, "window_blur", at(70), severity="medium")

        assert again.duplicate is True
        assert again.profile.violation_count == first.profile.violation_count == 2
        assert again.profile.risk_score == first.profile.risk_score

    def test_audit_events_are_logged_not_counted(self, ingestion, exam_session):
        decision = ingestion.ingest(exam_session.id, "session_start", at(0), severity="info")

        assert decision.profile.violation_count == 0
        assert decision.profile.risk_score == 0.0
        assert len(ingestion.sessions.records(exam_session.id)) == 1

    def test_closed_session_rejects_new_events(self, ingestion, exam_session):
        from examguard.core.exceptions import SessionClosedError

        ingestion.ingest(exam_session.id, "tab_switch", at(10), severity="high")
        ingestion.sessions.end_session(exam_session.id)

        with pytest.raises(SessionClosedError):
            ingestion.ingest(exam_session.id, "tab_switch", at(20), severity="high")

        # a retry of an already-stored event is still answered
        retry = ingestion.ingest(exam_session.id, "tab_switch", at(10), severity="high")
        assert retry.duplicate is True
        assert retry.terminated is False

    def test_termination_on_risk(self, ingestion, exam_session, notifier):
        first = ingestion.ingest(exam_session.id, "dev_tools_open", at(10), severity="critical")
        assert first.terminated is False

        second = ingestion.ingest(exam_session.id, "dev_tools_open", at(12), severity="critical")
        assert second.terminated is True
        assert second.profile.status == "terminated"
        assert "risk score" in second.reason

        session = ingestion.sessions.get_session(exam_session.id)
        assert session.status == "terminated"
        assert session.termination_reason == second.reason
        notifier.assert_called_once_with(exam_session.id, second.reason)

    def test_termination_on_violation_ceiling(self, db, exam_session, locks, notifier):
        from examguard.services.ingestion_service import IngestionService
        from examguard.services.termination_policy import TerminationPolicy

        service = IngestionService(
            db, notifier=notifier, locks=locks,
            policy=TerminationPolicy(risk_threshold=1000, violation_ceiling=3),
        )
        decisions = [
            service.ingest(exam_session.id, "right_click", at(60 * i), severity="low")
            for i in range(1, 4)
        ]
        assert [d.terminated for d in decisions] == [False, False, True]
        assert "violations" in decisions[-1].reason

    def test_events_after_termination_rejected(self, ingestion, exam_session):
        from examguard.core.exceptions import SessionClosedError

        ingestion.ingest(exam_session.id, "dev_tools_open", at(10), severity="critical")
        ingestion.ingest(exam_session.id, "dev_tools_open", at(12), severity="critical")

        with pytest.raises(SessionClosedError):
            ingestion.ingest(exam_session.id, "tab_switch", at(30), severity="high")

    def test_notifier_failure_does_not_fail_ingest(self, db, exam_session, locks):
        from examguard.services.ingestion_service import IngestionService

        notifier = Mock(side_effect=RuntimeError("broker down"))
        service = IngestionService(db, notifier=notifier, locks=locks)
        service.ingest(exam_session.id, "dev_tools_open", at(10), severity="critical")
        decision = service.ingest(exam_session.id, "dev_tools_open", at(12), severity="critical")

        assert decision.terminated is True
        notifier.assert_called_once()

    def test_replay_scores_identically(self, db, exam, locks, notifier):
        """Same log, delivered in a different order, yields the same profile"""
        from examguard.models import ExamSession
        from examguard.services.ingestion_service import IngestionService

        for session_id in ("SES_A", "SES_B"):
            db.add(ExamSession(id=session_id, exam_id=exam.id, student_id=STUDENT_ID, start_time=EXAM_START))
        db.commit()

        service = IngestionService(db, notifier=notifier, locks=locks)
        log = [("copy_paste", 30, "medium"), ("window_blur", 200, "medium"), ("tab_switch", 400, "high")]

        for event_type, seconds, severity in log:
            a = service.ingest("SES_A", event_type, at(seconds), severity=severity)
        for event_type, seconds, severity in reversed(log):
            service.ingest("SES_B", event_type, at(seconds), severity=severity)
        b = service.ingest("SES_B", "tab_switch", at(400), severity="high")

        assert b.duplicate is True
        assert a.profile.risk_score == b.profile.risk_score
        assert a.profile.violation_count == b.profile.violation_count == 3

    def test_no_lock_left_after_termination(self, ingestion, exam_session, locks):
        ingestion.ingest(exam_session.id, "dev_tools_open", at(10), severity="critical")
        ingestion.ingest(exam_session.id, "dev_tools_open", at(12), severity="critical")
        assert len(locks) == 0


class TestTerminatedSessionReads:
    """Reads after termination score the log on the clock the decision used"""

    def terminate(self, ingestion, session_id):
        decisions = [
            ingestion.ingest(session_id, "tab_switch", at(60 * i), severity="high")
            for i in range(1, 7)
        ]
        assert [d.terminated for d in decisions] == [False] * 5 + [True]
        return decisions[-1]

    def test_end_time_is_decision_clock(self, ingestion, exam_session):
        decision = self.terminate(ingestion, exam_session.id)

        session = ingestion.sessions.get_session(exam_session.id)
        assert decision.profile.risk_score == 90.0
        assert session.end_time == at(360)

    def test_dashboard_shows_terminating_score(self, db, ingestion, exam_session):
        from examguard.services.aggregation_service import AggregationService

        decision = self.terminate(ingestion, exam_session.id)
        later = EXAM_START + timedelta(days=1)
        data = AggregationService(db).dashboard(exam_session.exam_id, now=later)

        row = data["students"][0]
        assert row["risk_score"] == round(decision.profile.risk_score)
        assert row["status"] == "terminated"

    def test_summary_and_export_agree(self, db, ingestion, exam_session):
        from examguard.services.aggregation_service import AggregationService
        from examguard.services.export_service import ExportService

        decision = self.terminate(ingestion, exam_session.id)
        later = EXAM_START + timedelta(days=1)

        summary = AggregationService(db).student_summary(exam_session.id, now=later)
        rows = ExportService(db).rows(exam_session.exam_id, now=later)

        assert summary["risk_score"] == 90
        assert {r["session_risk_score"] for r in rows} == {round(decision.profile.risk_score, 2)}
