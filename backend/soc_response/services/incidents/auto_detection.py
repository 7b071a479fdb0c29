# backend/soc_response/services/incidents/auto_detection.py
import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

from soc_response.schemas.correlation import PatternMatch, TriggeredAlert
from soc_response.schemas.events import EventSeverity, SecurityEvent
from soc_response.schemas.incidents import IncidentCategory, IncidentCreate, IncidentSeverity
from soc_response.schemas.rules import AlertRule
from soc_response.core.errors import NotFoundError
from soc_response.services.events.event_bus import (
    TOPIC_PATTERN_MATCH,
    TOPIC_RULE_INCIDENT,
    TOPIC_SECURITY_EVENT,
    EventBus,
)
from soc_response.services.incidents.incident_service import (
    SELF_LOG_SOURCE,
    SYSTEM_ACTOR,
    IncidentLifecycleManager,
)

logger = logging.getLogger(__name__)

PATTERN_CATEGORIES = {
    "BRUTE_FORCE_SUCCESS": IncidentCategory.SECURITY_BREACH,
    "VELOCITY_ATTACK": IncidentCategory.SECURITY_BREACH,
    "PRIVILEGE_ESCALATION": IncidentCategory.SECURITY_BREACH,
    "DATA_EXFILTRATION": IncidentCategory.DATA_LEAK,
}

SEVERITY_TO_INCIDENT = {
    "CRITICAL": IncidentSeverity.P1_CRITICAL,
    "HIGH": IncidentSeverity.P2_HIGH,
    "MEDIUM": IncidentSeverity.P3_MEDIUM,
    "LOW": IncidentSeverity.P4_LOW,
}

HIGH_RISK_SCORE = 80


class IncidentAutoDetector:
    """
    Bus subscriber that opens incidents from detections:

    - CRITICAL/HIGH pattern matches, one open incident per
      (pattern type, correlation key); repeats go on that incident's timeline
    - CREATE_INCIDENT rule actions
    - CRITICAL events scoring above 80

    Events emitted by the incident manager itself are ignored.
    """

    def __init__(self, manager: IncidentLifecycleManager, bus: EventBus) -> None:
        self.manager = manager
        # (pattern type, correlation key) -> incident id
        self._by_pattern: Dict[Tuple[str, str], str] = {}
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}

        bus.subscribe(TOPIC_PATTERN_MATCH, self.on_pattern_match)
        bus.subscribe(TOPIC_RULE_INCIDENT, self.on_rule_incident)
        bus.subscribe(TOPIC_SECURITY_EVENT, self.on_security_event)

    def rebuild(self) -> int:
        """Restore the dedupe index from the open incidents' metadata."""
        index: Dict[Tuple[str, str], str] = {}
        for incident in self.manager.open_incidents:
            pattern = incident.metadata.get("pattern_type")
            key = incident.metadata.get("correlation_key")
            if pattern and key:
                index[(pattern, key)] = incident.id
        self._by_pattern = index
        return len(index)

    def _open_incident_for(self, dedupe: Tuple[str, str]) -> Optional[str]:
        incident_id = self._by_pattern.get(dedupe)
        if incident_id is None:
            return None
        try:
            incident = self.manager.get_incident(incident_id)
        except NotFoundError:
            incident = None
        if incident is not None and incident.is_open:
            return incident_id
        self._by_pattern.pop(dedupe, None)
        return None

    def prune(self) -> int:
        """
        Forget (pattern, key) entries whose incident is no longer open, and
        drop idle locks for keys that no longer map to an incident.
        """
        open_ids = {i.id for i in self.manager.open_incidents}
        index = {k: v for k, v in self._by_pattern.items() if v in open_ids}
        dropped = len(self._by_pattern) - len(index)
        self._by_pattern = index
        self._locks = {
            k: lock for k, lock in self._locks.items() if k in index or lock.locked()
        }
        return dropped

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------
    async def on_pattern_match(self, payload: Dict[str, Any]) -> None:
        match: PatternMatch = payload["match"]
        event: SecurityEvent = payload["event"]
        if event.source == SELF_LOG_SOURCE:
            return
        severity = SEVERITY_TO_INCIDENT.get(match.severity)
        if severity not in (IncidentSeverity.P1_CRITICAL, IncidentSeverity.P2_HIGH):
            return

        dedupe = (match.type, match.correlation_key)
        async with self._locks.setdefault(dedupe, asyncio.Lock()):
            existing = self._open_incident_for(dedupe)
            if existing is not None:
                await self.manager.add_timeline_entry(
                    existing,
                    SYSTEM_ACTOR,
                    "PATTERN_REDETECTED",
                    match.description,
                    {"event_ids": match.event_ids, "detected_at": match.detected_at.isoformat()},
                )
                return

            incident = await self.manager.create_incident(
                IncidentCreate(
                    title=f"Security Pattern Detected: {match.type}",
                    description=f"Automated detection of {match.type}: {match.description}",
                    severity=severity,
                    category=PATTERN_CATEGORIES.get(match.type, IncidentCategory.SECURITY_BREACH),
                    source="SecurityMonitoring",
                    affected_systems=[event.resource_id or event.source],
                    initial_evidence=list(match.event_ids),
                    reported_by=SYSTEM_ACTOR,
                    site_id=event.site_id,
                    metadata={
                        "auto_detected": True,
                        "pattern_type": match.type,
                        "correlation_key": match.correlation_key,
                        "event_count": match.metadata.get("event_count", len(match.event_ids)),
                    },
                )
            )
            self._by_pattern[dedupe] = incident.id
            logger.info("Pattern %s on %s opened incident %s.", match.type, match.correlation_key, incident.id)

    async def on_rule_incident(self, payload: Dict[str, Any]) -> None:
        alert: TriggeredAlert = payload["alert"]
        rule: AlertRule = payload["rule"]
        event: SecurityEvent = payload["event"]
        if event.source == SELF_LOG_SOURCE:
            return

        title = f"Alert Rule Triggered: {rule.name}"[:200]
        description = (
            f"{rule.description or rule.name}. {alert.actual_count} matching events "
            f"within {rule.time_window}s (threshold {alert.threshold})."
        )
        category = self.manager.config.classify(
            f"{rule.name} {rule.description}", default=IncidentCategory.SECURITY_BREACH
        )
        await self.manager.create_incident(
            IncidentCreate(
                title=title,
                description=description,
                severity=SEVERITY_TO_INCIDENT[alert.severity],
                category=category,
                source="AlertRule",
                affected_systems=[event.resource_id or event.source],
                initial_evidence=list(alert.matching_event_ids),
                reported_by=SYSTEM_ACTOR,
                site_id=event.site_id,
                metadata={
                    "auto_detected": True,
                    "rule_id": rule.id,
                    "suppression_key": alert.suppression_key,
                },
            )
        )

    async def on_security_event(self, payload: Dict[str, Any]) -> None:
        event: SecurityEvent = payload["event"]
        if event.source == SELF_LOG_SOURCE:
            return
        if event.severity != EventSeverity.CRITICAL or event.threat_score <= HIGH_RISK_SCORE:
            return

        await self.manager.create_incident(
            IncidentCreate(
                title=f"Critical Security Event: {event.title or event.event_type.value}"[:200],
                description=(
                    f"Critical {event.event_type.value} event from {event.source} "
                    f"scored {event.threat_score}. {event.description}"
                ).strip(),
                severity=IncidentSeverity.P1_CRITICAL,
                category=self.manager.config.classify(
                    f"{event.title} {event.description}", default=IncidentCategory.SECURITY_BREACH
                ),
                source="SecurityMonitoring",
                affected_systems=[event.resource_id or event.source],
                initial_evidence=[event.id],
                reported_by=SYSTEM_ACTOR,
                site_id=event.site_id,
                metadata={"auto_detected": True, "event_id": event.id},
            )
        )
