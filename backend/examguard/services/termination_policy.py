from dataclasses import dataclass
from typing import Optional

from ..core.config import settings
from .risk_scoring import SessionRiskProfile, STATUS_TERMINATED


@dataclass(frozen=True)
class TerminationDecision:
    terminated: bool
    reason: Optional[str] = None


class TerminationPolicy:
    """Force-submit once the risk score or the violation count crosses its ceiling"""

    def __init__(self, risk_threshold: Optional[float] = None, violation_ceiling: Optional[int] = None):
        self.risk_threshold = settings.terminate_risk_score if risk_threshold is None else risk_threshold
        self.violation_ceiling = settings.terminate_violation_count if violation_ceiling is None else violation_ceiling

    def evaluate(self, profile: SessionRiskProfile) -> TerminationDecision:
        if profile.status == STATUS_TERMINATED:
            return TerminationDecision(True, "session already terminated")
        if profile.risk_score >= self.risk_threshold:
            return TerminationDecision(
                True, f"risk score {profile.risk_score:.1f} reached {self.risk_threshold:g}"
            )
        if profile.violation_count >= self.violation_ceiling:
            return TerminationDecision(
                True, f"{profile.violation_count} violations reached ceiling {self.violation_ceiling}"
            )
        return TerminationDecision(False)


termination_policy = TerminationPolicy()
