from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime
from ..core.database import Base
from ..core.violations import ViolationRecord


class ViolationEvent(Base):
    """Append-only proctoring log row. Rows are inserted, never updated."""

    __tablename__ = "violation_events"
    __table_args__ = (
        UniqueConstraint("session_id", "event_type", "timestamp", name="uq_violation_event_delivery"),
    )

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String, ForeignKey("exam_sessions.id"), nullable=False, index=True)
    exam_id = Column(String, ForeignKey("exams.id"), nullable=False, index=True)
    event_type = Column(String, nullable=False, index=True)
    severity = Column(String, nullable=False, default="warning")
    description = Column(Text, default="")
    event_metadata = Column(JSON, default=dict)
    timestamp = Column(DateTime, nullable=False, index=True)
    time_into_exam = Column(Integer, nullable=True)
    received_at = Column(DateTime, default=datetime.utcnow)

    session = relationship("ExamSession", back_populates="events")

    def to_record(self) -> ViolationRecord:
        return ViolationRecord(
            session_id=self.session_id,
            event_type=self.event_type,
            severity=self.severity,
            timestamp=self.timestamp,
            description=self.description or "",
            metadata=dict(self.event_metadata or {}),
            time_into_exam=self.time_into_exam,
            sequence=self.id or 0,
        )

    def __repr__(self):
        return f"<ViolationEvent {self.event_type} for session {self.session_id}>"
