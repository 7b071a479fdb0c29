# backend/soc_response/services/events/event_pipeline_service.py
import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Union

from pydantic import ValidationError as PydanticValidationError

from soc_response.core.errors import validation_error_from_pydantic
from soc_response.schemas.correlation import IndicatorMatch, PatternMatch, TriggeredAlert
from soc_response.schemas.events import EventIngestResponse, SecurityEvent, SecurityEventIn
from soc_response.services.correlation.correlation_engine import CorrelationEngine
from soc_response.services.correlation.rule_engine import AlertRuleEngine
from soc_response.services.events.alert_store_service import (
    ALERT_CORRELATION_PATTERN,
    ALERT_INDICATOR_MATCH,
    ALERT_RULE_TRIGGERED,
    AlertStoreService,
)
from soc_response.services.events.event_bus import (
    TOPIC_PATTERN_MATCH,
    TOPIC_SECURITY_EVENT,
    EventBus,
)
from soc_response.services.events.event_store_service import EventStoreService
from soc_response.services.indicators.indicator_matcher import IndicatorMatcher
from soc_response.services.scoring.threat_scorer import ThreatScorer

logger = logging.getLogger(__name__)


class EventPipelineService:
    """
    End-to-end pipeline for a single ingested event:

      1. Validate the payload
      2. Gather scoring context and compute the threat score
      3. Persist the event
      4. In parallel: indicator matching, correlation, alert rules
      5. Record detections as alerts
      6. Mark the event processed
      7. Publish the event and its pattern matches on the bus
    """

    def __init__(
        self,
        event_store: EventStoreService,
        alert_store: AlertStoreService,
        scorer: ThreatScorer,
        matcher: IndicatorMatcher,
        correlation: CorrelationEngine,
        rule_engine: AlertRuleEngine,
        bus: EventBus,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.event_store = event_store
        self.alert_store = alert_store
        self.scorer = scorer
        self.matcher = matcher
        self.correlation = correlation
        self.rule_engine = rule_engine
        self.bus = bus
        self.clock = clock

        self.processed_events = 0
        self.failed_events = 0

    async def ingest(self, payload: Union[SecurityEventIn, Dict[str, Any]]) -> EventIngestResponse:
        # --------------------------------------------------
        # 1) Validate
        # --------------------------------------------------
        if not isinstance(payload, SecurityEventIn):
            try:
                payload = SecurityEventIn.model_validate(payload)
            except PydanticValidationError as exc:
                raise validation_error_from_pydantic(exc, "security event")

        try:
            return await self._process(payload)
        except Exception:
            self.failed_events += 1
            raise

    async def _process(self, payload: SecurityEventIn) -> EventIngestResponse:
        # --------------------------------------------------
        # 2) Score
        # --------------------------------------------------
        ts = payload.timestamp or self.clock()
        context = await self.scorer.gather_context(payload, ts)
        score = self.scorer.score(payload, context)

        event = SecurityEvent(
            **payload.model_dump(exclude={"timestamp"}),
            id=str(uuid.uuid4()),
            timestamp=ts,
            threat_score=score,
        )

        # --------------------------------------------------
        # 3) Persist
        # --------------------------------------------------
        self.event_store.save(event)

        # --------------------------------------------------
        # 4) Detection stages, each isolated from the others
        # --------------------------------------------------
        indicator_matches, pattern_matches, triggered = await asyncio.gather(
            self._stage("indicator matching", self._match_indicators(event)),
            self._stage("correlation", self.correlation.observe(event)),
            self._stage("alert rules", self.rule_engine.evaluate(event)),
        )

        # --------------------------------------------------
        # 5) Record detections
        # --------------------------------------------------
        self._record_alerts(event, indicator_matches, pattern_matches, triggered)

        # --------------------------------------------------
        # 6) Mark processed
        # --------------------------------------------------
        enrichment = {
            "score_context": {
                "local_hour": context.local_hour,
                "contributions": context.contributions,
                "errors": context.errors,
            },
            "indicator_matches": [m.indicator_id for m in indicator_matches],
            "patterns": [m.type for m in pattern_matches],
            "rules": [a.rule_name for a in triggered],
        }
        self.event_store.mark_processed(event.id, enrichment)
        event = event.model_copy(update={"processed": True, "enrichment": enrichment})
        self.processed_events += 1

        logger.info(
            "Ingested event %s (%s, score=%d): %d indicator hits, %d patterns, %d rules.",
            event.id, event.event_type.value, score,
            len(indicator_matches), len(pattern_matches), len(triggered),
        )

        # --------------------------------------------------
        # 7) Publish
        # --------------------------------------------------
        for match in pattern_matches:
            await self.bus.publish(TOPIC_PATTERN_MATCH, {"match": match, "event": event})
        await self.bus.publish(TOPIC_SECURITY_EVENT, {"event": event})

        return EventIngestResponse(
            event=event,
            indicator_matches=indicator_matches,
            pattern_matches=pattern_matches,
            triggered_alerts=triggered,
        )

    async def _match_indicators(self, event: SecurityEvent) -> List[IndicatorMatch]:
        return self.matcher.match(event, event.timestamp)

    @staticmethod
    async def _stage(name: str, coro) -> list:
        try:
            return await coro
        except Exception:
            logger.exception("Pipeline stage %s failed; continuing without it.", name)
            return []

    def _record_alerts(
        self,
        event: SecurityEvent,
        indicator_matches: List[IndicatorMatch],
        pattern_matches: List[PatternMatch],
        triggered: List[TriggeredAlert],
    ) -> None:
        for m in indicator_matches:
            self.alert_store.record(
                ALERT_INDICATOR_MATCH,
                m.indicator_type,
                m.severity,
                f"Threat indicator match: {m.indicator_type}",
                f"Event {event.id} matched indicator {m.indicator_id} on {m.matched_field}",
                event.id,
                m.model_dump(mode="json"),
                created_at=event.timestamp,
            )
        for m in pattern_matches:
            self.alert_store.record(
                ALERT_CORRELATION_PATTERN,
                m.type,
                m.severity,
                f"Correlation pattern: {m.type}",
                m.description,
                event.id,
                m.model_dump(mode="json"),
                created_at=event.timestamp,
            )
        for a in triggered:
            self.alert_store.record(
                ALERT_RULE_TRIGGERED,
                a.rule_name,
                a.severity,
                f"Alert rule triggered: {a.rule_name}",
                f"{a.actual_count} matching events (threshold {a.threshold})",
                event.id,
                a.model_dump(mode="json"),
                created_at=event.timestamp,
            )
