"""
Tests for concurrent ingestion and the client run loops
"""
import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from unittest.mock import Mock

import pytest
from sqlalchemy.orm import sessionmaker

from conftest import EXAM_START, STUDENT_ID


def at(seconds):
    return EXAM_START + timedelta(seconds=seconds)


@pytest.fixture
def session_factory(tmp_path):
    """File-backed database so every worker thread gets its own connection"""
    from examguard.core.database import Base, build_engine
    from examguard.models import Exam, ExamSession

    engine = build_engine(f"sqlite:///{tmp_path / 'concurrency.db'}")
    Base.metadata.create_all(engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    db = factory()
    db.add(Exam(id="EXAM_C", title="Final", start_time=EXAM_START))
    for i in range(4):
        db.add(ExamSession(id=f"SES_C{i}", exam_id="EXAM_C", student_id=f"{STUDENT_ID}-{i}", start_time=EXAM_START))
    db.commit()
    db.close()

    yield factory
    engine.dispose()


def ingest_with_own_session(factory, locks, notifier, session_id, event_type, timestamp, severity):
    from examguard.services.ingestion_service import IngestionService

    db = factory()
    try:
        return IngestionService(db, notifier=notifier, locks=locks).ingest(
            session_id, event_type, timestamp, severity=severity
        )
    finally:
        db.close()


def run_in_threads(calls):
    """Start every call behind one barrier and collect results or exceptions"""
    barrier = threading.Barrier(len(calls))

    def run(call):
        barrier.wait()
        try:
            return call()
        except Exception as e:
            return e

    with ThreadPoolExecutor(max_workers=len(calls)) as pool:
        return list(pool.map(run, calls))


class TestConcurrentIngestion:
    """Ingestion is serialised per session and parallel across sessions"""

    def test_sessions_ingest_in_parallel(self, session_factory, locks):
        from examguard.services.risk_scoring import risk_engine
        from examguard.services.session_service import SessionService

        notifier = Mock()
        session_ids = [f"SES_C{s}" for s in range(4) for _ in range(3)]
        calls = [
            (lambda s=s, i=i: ingest_with_own_session(
                session_factory, locks, notifier, f"SES_C{s}", "right_click", at(60 * i), "low"))
            for s in range(4) for i in range(1, 4)
        ]
        results = run_in_threads(calls)

        assert not [r for r in results if isinstance(r, Exception)]
        db = session_factory()
        try:
            service = SessionService(db, locks=locks)
            for s in range(4):
                session_id = f"SES_C{s}"
                records = service.records(session_id)
                assert len(records) == 3

                decisions = [d for sid, d in zip(session_ids, results) if sid == session_id]
                assert sorted(d.profile.violation_count for d in decisions) == [1, 2, 3]
                final = max(decisions, key=lambda d: d.profile.violation_count)
                assert final.profile == risk_engine.profile(session_id, records, EXAM_START, at(180))
        finally:
            db.close()
        notifier.assert_not_called()

    def test_one_session_is_serialised(self, session_factory, locks):
        """Every ingest sees its own row and all earlier ones, never a shared count"""
        notifier = Mock()
        calls = [
            (lambda i=i: ingest_with_own_session(
                session_factory, locks, notifier, "SES_C0", "right_click", at(60 * i), "low"))
            for i in range(1, 9)
        ]
        results = run_in_threads(calls)

        assert not [r for r in results if isinstance(r, Exception)]
        assert sorted(d.profile.violation_count for d in results) == list(range(1, 9))

    def test_concurrent_redelivery_stores_once(self, session_factory, locks):
        notifier = Mock()
        calls = [
            (lambda: ingest_with_own_session(
                session_factory, locks, notifier, "SES_C0", "tab_switch", at(30), "high"))
            for _ in range(6)
        ]
        results = run_in_threads(calls)

        assert [r.duplicate for r in results].count(False) == 1
        assert {r.profile.violation_count for r in results} == {1}

    def test_no_event_slips_in_after_termination(self, session_factory, locks):
        from examguard.core.exceptions import SessionClosedError
        from examguard.services.session_service import SessionService

        notifier = Mock()
        calls = [
            (lambda i=i: ingest_with_own_session(
                session_factory, locks, notifier, "SES_C1", "dev_tools_open", at(10 + i), "critical"))
            for i in range(8)
        ]
        results = run_in_threads(calls)

        decisions = [r for r in results if not isinstance(r, Exception)]
        errors = [r for r in results if isinstance(r, Exception)]
        assert sorted(d.terminated for d in decisions) == [False, True]
        assert len(errors) == 6
        assert all(isinstance(e, SessionClosedError) for e in errors)
        notifier.assert_called_once()

        db = session_factory()
        try:
            assert len(SessionService(db, locks=locks).records("SES_C1")) == 2
        finally:
            db.close()
        assert len(locks) == 0

    def test_no_event_slips_in_after_end(self, session_factory, locks):
        from examguard.core.exceptions import SessionClosedError
        from examguard.services.session_service import SessionService

        def end():
            db = session_factory()
            try:
                return SessionService(db, locks=locks).end_session("SES_C2")
            finally:
                db.close()

        notifier = Mock()
        calls = [end] + [
            (lambda i=i: ingest_with_own_session(
                session_factory, locks, notifier, "SES_C2", "window_blur", at(60 * i), "medium"))
            for i in range(1, 6)
        ]
        results = run_in_threads(calls)

        assert not isinstance(results[0], Exception)
        stored = [r for r in results[1:] if not isinstance(r, Exception)]
        rejected = [r for r in results[1:] if isinstance(r, Exception)]
        assert all(isinstance(e, SessionClosedError) for e in rejected)
        assert len(stored) + len(rejected) == 5

        db = session_factory()
        try:
            service = SessionService(db, locks=locks)
            assert len(service.records("SES_C2")) == len(stored)
            assert service.get_session("SES_C2").status == "submitted"
        finally:
            db.close()


class TestLockRegistry:
    def test_same_lock_while_held(self, locks):
        with locks.hold("SES_1"):
            assert locks.lock_for("SES_1").locked()
            assert len(locks) == 1

    def test_unreferenced_lock_is_forgotten(self, locks):
        kept = locks.lock_for("SES_1")
        locks.lock_for("SES_2")

        assert locks.lock_for("SES_1") is kept
        assert len(locks) == 1

    def test_idle_locks_are_dropped(self, locks):
        for i in range(100):
            with locks.hold(f"SES_{i}"):
                pass
        assert len(locks) == 0


class TestClientRunLoops:
    """Tests for SignalAdapter.run and ProctoringAgent.run"""

    class SteppingClock:
        def __init__(self, step_seconds=2):
            self.now = EXAM_START
            self.step = timedelta(seconds=step_seconds)

        def __call__(self):
            self.now = self.now + self.step
            return self.now

    class EmptyRoom:
        async def analyze(self):
            return []

    def test_adapter_run_polls_until_stopped(self):
        from examguard.client.signals import SignalAdapter, SignalKind

        adapter = SignalAdapter("SES_1", frame_analyzer=self.EmptyRoom(), clock=self.SteppingClock(), poll_interval=0.01)

        async def scenario():
            stop = asyncio.Event()
            task = asyncio.create_task(adapter.run(stop))
            await asyncio.sleep(0.1)
            stop.set()
            await asyncio.wait_for(task, timeout=2)

        asyncio.run(scenario())
        assert adapter.channel.qsize() >= 2
        assert adapter.channel.get_nowait().kind == SignalKind.FRAME

    def test_agent_run_stops_on_termination(self):
        from examguard.client.agent import ProctoringAgent
        from examguard.client.signals import SignalAdapter

        delivered = []

        async def sink(event):
            delivered.append(event)
            return {"terminated": len(delivered) >= 3}

        on_force_submit = Mock()
        adapter = SignalAdapter("SES_1", frame_analyzer=self.EmptyRoom(), clock=self.SteppingClock(), poll_interval=0.01)
        agent = ProctoringAgent("SES_1", adapter, sink, on_force_submit=on_force_submit)

        async def scenario():
            stop = asyncio.Event()
            await asyncio.wait_for(agent.run(stop), timeout=5)
            return stop

        stop = asyncio.run(scenario())

        assert agent.terminated
        assert stop.is_set()
        on_force_submit.assert_called_once()
        assert [e.event_type for e in delivered] == ["session_start", "no_face", "no_face"]

    def test_agent_run_honours_external_stop(self):
        from examguard.client.agent import ProctoringAgent
        from examguard.client.signals import SignalAdapter

        delivered = []

        async def sink(event):
            delivered.append(event)
            return {"terminated": False}

        adapter = SignalAdapter("SES_1", clock=self.SteppingClock(), poll_interval=0.01)
        agent = ProctoringAgent("SES_1", adapter, sink)

        async def scenario():
            stop = asyncio.Event()
            runner = asyncio.create_task(agent.run(stop))
            await asyncio.sleep(0.05)
            stop.set()
            await asyncio.wait_for(runner, timeout=5)

        asyncio.run(scenario())

        assert not agent.finished
        assert [e.event_type for e in delivered] == ["session_start", "session_end"]
