# backend/soc_response/services/metrics/metrics_service.py
import time
from datetime import datetime, timedelta
from typing import Callable, Optional

from soc_response.core.errors import ValidationError
from soc_response.schemas.metrics import SecurityMetrics, SystemHealth
from soc_response.services.correlation.rule_engine import AlertRuleEngine
from soc_response.services.events.alert_store_service import AlertStoreService
from soc_response.services.events.event_pipeline_service import EventPipelineService
from soc_response.services.events.event_store_service import EventStoreService
from soc_response.services.incidents.incident_service import IncidentLifecycleManager

WARNING_FAILURE_RATE = 0.01
CRITICAL_FAILURE_RATE = 0.10
DEFAULT_RANGE = timedelta(hours=24)


def health_status(processed: int, failed: int) -> str:
    total = processed + failed
    if total == 0:
        return "healthy"
    rate = failed / total
    if rate > CRITICAL_FAILURE_RATE:
        return "critical"
    if rate > WARNING_FAILURE_RATE:
        return "warning"
    return "healthy"


class MetricsService:
    """Read-only rollup over stored events, alerts and incidents."""

    def __init__(
        self,
        event_store: EventStoreService,
        alert_store: AlertStoreService,
        rule_engine: AlertRuleEngine,
        incidents: IncidentLifecycleManager,
        pipeline: EventPipelineService,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.event_store = event_store
        self.alert_store = alert_store
        self.rule_engine = rule_engine
        self.incidents = incidents
        self.pipeline = pipeline
        self.clock = clock
        self._started = time.monotonic()

    def get_security_metrics(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> SecurityMetrics:
        end = end or self.clock()
        start = start or end - DEFAULT_RANGE
        if start > end:
            raise ValidationError("start must not be after end", {"start": start, "end": end})

        by_type = self.event_store.count_by_group("event_type", start, end)
        by_severity = self.event_store.count_by_group("severity", start, end)

        processed = self.pipeline.processed_events
        failed = self.pipeline.failed_events

        return SecurityMetrics(
            total_events=sum(by_type.values()),
            events_by_type=by_type,
            events_by_severity=by_severity,
            top_threats=self.alert_store.top_threats(start, end),
            threat_score=self.event_store.average_threat_score(start, end),
            active_alerts=self.rule_engine.active_suppressions,
            incident_count=self.incidents.repository.count(start, end),
            open_incidents=len(self.incidents.open_incidents),
            system_health=SystemHealth(
                status=health_status(processed, failed),
                uptime=round(time.monotonic() - self._started, 3),
                processed_events=processed,
                failed_events=failed,
            ),
        )
