# backend/soc_response/services/engine.py
import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type, TypeVar, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from soc_response.core.config import Settings
from soc_response.core.errors import validation_error_from_pydantic
from soc_response.db.init_db import init_db
from soc_response.schemas.events import EventIngestResponse, SecurityEvent, SecurityEventIn
from soc_response.schemas.incidents import (
    Incident,
    IncidentAction,
    IncidentActionRequest,
    IncidentCommunication,
    IncidentCommunicationCreate,
    IncidentCreate,
    IncidentEvidence,
    IncidentEvidenceCreate,
    IncidentFilters,
    IncidentUpdate,
)
from soc_response.schemas.indicators import ThreatIndicator, ThreatIndicatorCreate
from soc_response.schemas.metrics import SecurityMetrics
from soc_response.schemas.rules import AlertRule, AlertRuleCreate
from soc_response.services.alerting.alert_dispatcher import AlertDispatcher
from soc_response.services.correlation.correlation_engine import CorrelationEngine
from soc_response.services.correlation.rule_engine import AlertRuleEngine
from soc_response.services.correlation.rule_store_service import RuleStoreService, default_rules
from soc_response.services.events.alert_store_service import AlertStoreService
from soc_response.services.events.event_bus import EventBus
from soc_response.services.events.event_pipeline_service import EventPipelineService
from soc_response.services.events.event_store_service import EventStoreService
from soc_response.services.incidents.auto_detection import IncidentAutoDetector
from soc_response.services.incidents.collaborators import (
    CommanderAssignment,
    PostIncidentScheduler,
    ScriptActionRunner,
)
from soc_response.services.incidents.incident_repository import IncidentRepository
from soc_response.services.incidents.incident_service import IncidentLifecycleManager
from soc_response.services.indicators.indicator_feed import HttpIndicatorFeed
from soc_response.services.indicators.indicator_matcher import IndicatorMatcher
from soc_response.services.indicators.indicator_store_service import IndicatorStoreService
from soc_response.services.metrics.metrics_service import MetricsService
from soc_response.services.scoring.contributors import (
    AbuseIPDBReputation,
    CountryChangeAnomaly,
    WatchlistUserRisk,
)
from soc_response.services.scoring.threat_scorer import ThreatScorer

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def _validate(model: Type[M], data: Union[M, Dict[str, Any]], what: str) -> M:
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise validation_error_from_pydantic(exc, what)


class SecurityEngine:
    """
    Wires the detection side (scoring, indicators, correlation, rules) to the
    incident side through the event bus, and owns the background loops.

    Collaborators can be swapped by passing them in; anything left out is
    built from settings.
    """

    def __init__(
        self,
        settings: Settings,
        db_engine: Engine,
        session_factory: sessionmaker,
        notifier: Optional[AlertDispatcher] = None,
        action_runner: Optional[ScriptActionRunner] = None,
        scorer: Optional[ThreatScorer] = None,
        indicator_feed: Optional[HttpIndicatorFeed] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.settings = settings
        self.db_engine = db_engine
        self.clock = clock

        self.bus = EventBus()
        self.notifier = notifier or AlertDispatcher(
            slack_webhook_url=settings.SLACK_ALERT_WEBHOOK_URL,
            generic_webhook_url=settings.GENERIC_ALERT_WEBHOOK_URL,
            timeout=settings.NOTIFIER_TIMEOUT,
        )

        # Detection side
        self.event_store = EventStoreService(session_factory)
        self.alert_store = AlertStoreService(session_factory)
        self.indicator_store = IndicatorStoreService(session_factory)
        self.rule_store = RuleStoreService(session_factory)
        self.indicator_feed = indicator_feed or HttpIndicatorFeed(
            settings.INDICATOR_FEED_URL,
            settings.INDICATOR_FEED_TOKEN,
            settings.INDICATOR_FEED_TIMEOUT,
        )
        self.scorer = scorer or ThreatScorer(
            contributors=[
                AbuseIPDBReputation(settings.ABUSEIPDB_API_KEY),
                WatchlistUserRisk(),
                CountryChangeAnomaly(),
            ],
            timezone_name=settings.LOCAL_TIMEZONE,
            lookup_timeout=settings.SCORING_LOOKUP_TIMEOUT,
        )
        self.matcher = IndicatorMatcher()
        self.correlation = CorrelationEngine(settings.CORRELATION_WINDOW_SECONDS)
        self.rule_engine = AlertRuleEngine(self.rule_store, self.event_store, self.notifier, self.bus)
        self.pipeline = EventPipelineService(
            self.event_store,
            self.alert_store,
            self.scorer,
            self.matcher,
            self.correlation,
            self.rule_engine,
            self.bus,
            clock=clock,
        )

        # Incident side
        self.incidents = IncidentLifecycleManager(
            repository=IncidentRepository(session_factory),
            notifier=self.notifier,
            action_runner=action_runner or ScriptActionRunner(
                settings.ACTION_SCRIPTS_DIR,
                dry_run=settings.ACTION_RUNNER_DRY_RUN,
                timeout=settings.ACTION_RUNNER_TIMEOUT,
            ),
            commanders=CommanderAssignment(settings.INCIDENT_COMMANDERS),
            reviews=PostIncidentScheduler(settings.POST_INCIDENT_REVIEW_DAYS),
            clock=clock,
            escalation_minute_seconds=settings.ESCALATION_MINUTE_SECONDS,
            action_timeout=settings.ACTION_RUNNER_TIMEOUT + 5,
            collaborator_timeout=settings.NOTIFIER_TIMEOUT,
            ingest=self.ingest_event,
        )
        self.auto_detector = IncidentAutoDetector(self.incidents, self.bus)
        self.metrics = MetricsService(
            self.event_store,
            self.alert_store,
            self.rule_engine,
            self.incidents,
            self.pipeline,
            clock=clock,
        )

        self._tasks: List[asyncio.Task] = []

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------
    async def start(self, background: bool = True) -> None:
        init_db(self.db_engine)
        now = self.clock()

        if self.settings.SEED_DEFAULT_RULES:
            self.rule_engine.seed_defaults(default_rules(self.settings.DEFAULT_ALERT_EMAIL), now)
        else:
            self.rule_engine.load()

        self.matcher.replace(self.indicator_store.list_active(now))
        await self.refresh_indicator_feed()

        self.incidents.reload_open_incidents()
        self.auto_detector.rebuild()

        if background:
            self._tasks = [
                self._every(self.settings.INDICATOR_SWEEP_INTERVAL, self.sweep_indicators, "indicator sweep"),
                self._every(self.settings.INDICATOR_FEED_REFRESH_INTERVAL, self.refresh_indicator_feed, "feed refresh"),
                self._every(self.settings.CORRELATION_PRUNE_INTERVAL, self._prune_correlation, "correlation prune"),
                self._every(self.settings.SUPPRESSION_CLEANUP_INTERVAL, self._cleanup_suppressions, "suppression cleanup"),
            ]
        logger.info(
            "Security engine started: %d rules, %d indicators, %d open incidents.",
            len(self.rule_engine.rules), len(self.matcher.indicators), len(self.incidents.open_incidents),
        )

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.incidents.shutdown()
        logger.info("Security engine stopped.")

    def _every(self, interval: float, job: Callable[[], Awaitable[Any]], name: str) -> asyncio.Task:
        async def loop() -> None:
            while True:
                await asyncio.sleep(interval)
                try:
                    await job()
                except Exception:
                    logger.exception("Background job %s failed.", name)

        return asyncio.create_task(loop(), name=name)

    # -------------------------------------------------------------------------
    # Background jobs
    # -------------------------------------------------------------------------
    async def sweep_indicators(self) -> Tuple[int, int]:
        now = self.clock()
        dropped = self.matcher.sweep(now)
        deactivated = self.indicator_store.deactivate_expired(now)
        if dropped or deactivated:
            logger.info("Indicator sweep: %d dropped from cache, %d deactivated.", len(dropped), deactivated)
        return len(dropped), deactivated

    async def refresh_indicator_feed(self) -> int:
        try:
            items = await self.indicator_feed.list_active()
        except Exception as exc:
            logger.warning("Indicator feed refresh failed: %s", exc)
            return 0
        if not items:
            return 0

        now = self.clock()
        written = self.indicator_store.upsert_many(items, now)
        self.matcher.replace(self.indicator_store.list_active(now))
        logger.info("Indicator feed refresh wrote %d indicators.", written)
        return written

    async def _prune_correlation(self) -> None:
        self.correlation.prune(self.clock())
        self.auto_detector.prune()

    async def _cleanup_suppressions(self) -> None:
        self.rule_engine.cleanup_suppressions(self.clock())

    # -------------------------------------------------------------------------
    # Detection operations
    # -------------------------------------------------------------------------
    async def ingest_event(self, payload: Union[SecurityEventIn, Dict[str, Any]]) -> EventIngestResponse:
        return await self.pipeline.ingest(payload)

    def get_event(self, event_id: str) -> SecurityEvent:
        return self.event_store.get_event(event_id)

    def list_events(self, limit: int = 50) -> List[SecurityEvent]:
        return self.event_store.list_events(limit=limit)

    def create_indicator(self, data: Union[ThreatIndicatorCreate, Dict[str, Any]]) -> ThreatIndicator:
        data = _validate(ThreatIndicatorCreate, data, "threat indicator")
        indicator = self.indicator_store.create(data, self.clock())
        self.matcher.add(indicator)
        logger.info("Indicator %s %s registered.", indicator.type.value, indicator.value)
        return indicator

    def list_indicators(self) -> List[ThreatIndicator]:
        return list(self.matcher.indicators)

    def create_alert_rule(self, data: Union[AlertRuleCreate, Dict[str, Any]]) -> AlertRule:
        data = _validate(AlertRuleCreate, data, "alert rule")
        return self.rule_engine.create_rule(data, self.clock())

    def list_rules(self) -> List[AlertRule]:
        return list(self.rule_engine.rules)

    # -------------------------------------------------------------------------
    # Incident operations
    # -------------------------------------------------------------------------
    async def create_incident(self, data: Union[IncidentCreate, Dict[str, Any]]) -> Incident:
        return await self.incidents.create_incident(data)

    async def update_incident(
        self,
        incident_id: str,
        data: Union[IncidentUpdate, Dict[str, Any]],
        updated_by: str = "SYSTEM",
    ) -> Incident:
        return await self.incidents.update_incident(incident_id, data, updated_by)

    async def escalate_incident(self, incident_id: str, reason: Optional[str] = None, actor: str = "SYSTEM") -> Incident:
        return await self.incidents.escalate_incident(incident_id, reason, actor)

    async def execute_incident_action(
        self,
        incident_id: str,
        request: Union[IncidentActionRequest, Dict[str, Any]],
        actor: str = "SYSTEM",
    ) -> IncidentAction:
        return await self.incidents.execute_incident_action(incident_id, request, actor)

    async def send_incident_communication(
        self,
        incident_id: str,
        data: Union[IncidentCommunicationCreate, Dict[str, Any]],
    ) -> IncidentCommunication:
        return await self.incidents.send_incident_communication(incident_id, data)

    async def add_evidence(
        self,
        incident_id: str,
        data: Union[IncidentEvidenceCreate, Dict[str, Any]],
    ) -> IncidentEvidence:
        return await self.incidents.add_evidence(incident_id, data)

    def get_incident(self, incident_id: str) -> Incident:
        return self.incidents.get_incident(incident_id)

    def list_incidents(self, filters: Union[IncidentFilters, Dict[str, Any], None] = None) -> List[Incident]:
        return self.incidents.list_incidents(filters)

    def get_security_metrics(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> SecurityMetrics:
        return self.metrics.get_security_metrics(start, end)
