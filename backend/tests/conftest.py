"""
Pytest configuration for the ExamGuard backend
"""
import os
import sys
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

os.environ.setdefault("SECRET_KEY", "test-secret-key-for-examguard-tests")
os.environ["DATABASE_URL_OVERRIDE"] = "sqlite://"
os.environ["CACHE_ENABLED"] = "false"
os.environ["CELERY_TASK_ALWAYS_EAGER"] = "true"

from examguard.core.database import Base, SessionLocal, engine, get_db  # noqa: E402
from examguard.core.locks import SessionLockRegistry  # noqa: E402
from examguard.core.security import create_access_token  # noqa: E402
from examguard.core.violations import ViolationRecord  # noqa: E402
from examguard.models import Exam, ExamSession  # noqa: E402

EXAM_START = datetime(2026, 3, 2, 9, 0, 0)
STUDENT_ID = "student-1"
OTHER_STUDENT_ID = "student-2"
INSTRUCTOR_ID = "instructor-1"


def make_event(event_type, at, severity="warning", session_id="SES_1", sequence=0, **metadata):
    """Build a detached log record for pure scoring and aggregation tests"""
    return ViolationRecord(
        session_id=session_id,
        event_type=event_type,
        severity=severity,
        timestamp=at,
        metadata=metadata,
        sequence=sequence,
    )


@pytest.fixture(scope="session", autouse=True)
def create_tables():
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        with engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                conn.execute(table.delete())


@pytest.fixture(scope="function")
def locks():
    return SessionLockRegistry()


@pytest.fixture(scope="function")
def exam(db):
    exam = Exam(id="EXAM_1", title="Midterm", instructor_id=INSTRUCTOR_ID, start_time=EXAM_START, duration_minutes=120)
    db.add(exam)
    db.commit()
    return exam


@pytest.fixture(scope="function")
def exam_session(db, exam):
    session = ExamSession(
        id="SES_1",
        exam_id=exam.id,
        student_id=STUDENT_ID,
        student_name="Alice",
        student_email="alice@example.com",
        start_time=EXAM_START,
    )
    db.add(session)
    db.commit()
    return session


@pytest.fixture(scope="function")
def app():
    from examguard.main import app

    def override_get_db():
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield app
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def client(app):
    return TestClient(app)


def auth_headers_for(user_id, role="student"):
    token = create_access_token(user_id, role=role, expires_delta=timedelta(hours=1))
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(scope="function")
def student_headers():
    return auth_headers_for(STUDENT_ID)


@pytest.fixture(scope="function")
def other_student_headers():
    return auth_headers_for(OTHER_STUDENT_ID)


@pytest.fixture(scope="function")
def instructor_headers():
    return auth_headers_for(INSTRUCTOR_ID, role="instructor")
