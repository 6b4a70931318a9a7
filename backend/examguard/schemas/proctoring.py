from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from typing import Optional, Dict, Any

from ..core.violations import normalize_severity


class LogEventRequest(BaseModel):
    session_id: str = Field(alias="sessionId")
    event_type: str = Field(alias="eventType", min_length=1, max_length=64)
    severity: Optional[str] = "medium"
    description: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime
    time_into_exam: Optional[int] = Field(default=None, alias="timeIntoExam", ge=0)

    class Config:
        populate_by_name = True

    @field_validator("event_type")
    @classmethod
    def clean_event_type(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("severity")
    @classmethod
    def clean_severity(cls, value: Optional[str]) -> str:
        return normalize_severity(value)


class LogEventResponse(BaseModel):
    terminated: bool
    duplicate: bool = False
    risk_score: float
    violation_count: int
    status: str
    reason: Optional[str] = None


class SessionOpenRequest(BaseModel):
    exam_id: str
    session_id: Optional[str] = None
    student_name: Optional[str] = None
    student_email: Optional[str] = None


class SessionEndRequest(BaseModel):
    reason: Optional[str] = None


class SessionResponse(BaseModel):
    id: str
    exam_id: str
    student_id: str
    student_name: Optional[str] = None
    start_time: datetime
    end_time: Optional[datetime] = None
    status: str
    termination_reason: Optional[str] = None

    class Config:
        from_attributes = True


class RiskProfileResponse(BaseModel):
    session_id: str
    risk_score: float
    violation_count: int
    last_event_at: Optional[datetime] = None
    status: str
