from .proctoring import (
    LogEventRequest,
    LogEventResponse,
    SessionOpenRequest,
    SessionEndRequest,
    SessionResponse,
    RiskProfileResponse,
)

__all__ = [
    "LogEventRequest",
    "LogEventResponse",
    "SessionOpenRequest",
    "SessionEndRequest",
    "SessionResponse",
    "RiskProfileResponse",
]
