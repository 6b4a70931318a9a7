from enum import Enum

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer
from sqlalchemy.orm import relationship
from datetime import datetime
from ..core.database import Base


class SessionStatus(str, Enum):
    STARTED = "started"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    TERMINATED = "terminated"


OPEN_SESSION_STATUSES = (SessionStatus.STARTED.value, SessionStatus.IN_PROGRESS.value)


class Exam(Base):
    __tablename__ = "exams"

    id = Column(String, primary_key=True, index=True)
    title = Column(String, nullable=False)
    instructor_id = Column(String, nullable=True, index=True)
    start_time = Column(DateTime, default=datetime.utcnow)
    duration_minutes = Column(Integer, nullable=True)

    sessions = relationship("ExamSession", back_populates="exam")

    def __repr__(self):
        return f"<Exam {self.id} {self.title!r}>"


class ExamSession(Base):
    """One candidate's attempt at one exam"""

    __tablename__ = "exam_sessions"

    id = Column(String, primary_key=True, index=True)
    exam_id = Column(String, ForeignKey("exams.id"), nullable=False, index=True)
    student_id = Column(String, nullable=False, index=True)
    student_name = Column(String, nullable=True)
    student_email = Column(String, nullable=True)
    start_time = Column(DateTime, default=datetime.utcnow)
    end_time = Column(DateTime, nullable=True)
    status = Column(String, default=SessionStatus.IN_PROGRESS.value)
    termination_reason = Column(String, nullable=True)

    exam = relationship("Exam", back_populates="sessions")
    events = relationship(
        "ViolationEvent",
        back_populates="session",
        order_by="ViolationEvent.id",
    )

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_SESSION_STATUSES

    def __repr__(self):
        return f"<ExamSession {self.id} exam={self.exam_id} status={self.status}>"
