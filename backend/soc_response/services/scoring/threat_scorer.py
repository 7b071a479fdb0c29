# backend/soc_response/services/scoring/threat_scorer.py
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence
from zoneinfo import ZoneInfo
import logging

from soc_response.schemas.events import EventSeverity, EventType, SecurityEventIn
from soc_response.services.core_service.retry import call_with_timeout
from soc_response.services.scoring.contributors import ScoreContributor

logger = logging.getLogger(__name__)


EVENT_TYPE_BASE_SCORES: Dict[EventType, int] = {
    EventType.AUTHENTICATION: 10,
    EventType.AUTHORIZATION: 15,
    EventType.DATA_ACCESS: 20,
    EventType.FILE_OPERATION: 15,
    EventType.ADMIN_OPERATION: 30,
    EventType.API_ACCESS: 10,
    EventType.SYSTEM_OPERATION: 25,
    EventType.THREAT_DETECTED: 80,
    EventType.ANOMALY_DETECTED: 60,
    EventType.COMPLIANCE_VIOLATION: 40,
    EventType.SECURITY_ALERT: 70,
}

SEVERITY_MULTIPLIERS: Dict[EventSeverity, float] = {
    EventSeverity.INFO: 1.0,
    EventSeverity.LOW: 1.2,
    EventSeverity.MEDIUM: 1.5,
    EventSeverity.HIGH: 2.0,
    EventSeverity.CRITICAL: 3.0,
}

OFF_HOURS_START = 22
OFF_HOURS_END = 6
OFF_HOURS_BONUS = 10
MAX_CONTRIBUTION = 100.0


@dataclass
class ScoreContext:
    """Contextual signals gathered for one event."""
    local_hour: int
    contributions: Dict[str, float] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)


def is_off_hours(hour: int) -> bool:
    return hour >= OFF_HOURS_START or hour < OFF_HOURS_END


class ThreatScorer:
    """
    score = base(event_type) * multiplier(severity)
            + off-hours bonus + sum(contextual contributions), clamped to [0, 100].

    `score` is a pure function of (event, context). All I/O happens in
    `gather_context`, where a failing or slow contributor counts as 0.
    """

    def __init__(
        self,
        contributors: Sequence[ScoreContributor] = (),
        timezone_name: str = "UTC",
        lookup_timeout: float = 2.0,
    ) -> None:
        self.contributors: List[ScoreContributor] = list(contributors)
        self.tz = ZoneInfo(timezone_name)
        self.lookup_timeout = lookup_timeout

    def local_hour(self, ts: datetime) -> int:
        return ts.replace(tzinfo=timezone.utc).astimezone(self.tz).hour

    async def gather_context(self, event: SecurityEventIn, ts: datetime) -> ScoreContext:
        ctx = ScoreContext(local_hour=self.local_hour(ts))

        for contributor in self.contributors:
            try:
                value = await call_with_timeout(
                    lambda: contributor.contribution(event),
                    self.lookup_timeout,
                    f"score contributor {contributor.name}",
                )
            except Exception as exc:
                logger.warning(
                    "Score contributor %s failed (%s); contributing 0.",
                    contributor.name, exc,
                )
                ctx.errors[contributor.name] = f"{type(exc).__name__}: {exc}"
                value = 0.0

            ctx.contributions[contributor.name] = max(0.0, min(float(value or 0.0), MAX_CONTRIBUTION))

        return ctx

    @staticmethod
    def score(event: SecurityEventIn, context: Optional[ScoreContext] = None) -> int:
        score = float(EVENT_TYPE_BASE_SCORES.get(event.event_type, 10))
        score *= SEVERITY_MULTIPLIERS.get(event.severity, 1.0)

        if context is not None:
            if is_off_hours(context.local_hour):
                score += OFF_HOURS_BONUS
            score += sum(context.contributions.values())

        return int(max(0, min(round(score), 100)))
