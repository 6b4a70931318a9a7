from .exam import Exam, ExamSession, SessionStatus
from .violation_event import ViolationEvent

__all__ = [
    "Exam",
    "ExamSession",
    "SessionStatus",
    "ViolationEvent",
]
