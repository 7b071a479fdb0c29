# backend/soc_response/services/events/alert_store_service.py
from typing import Any, Dict, List, Optional
from datetime import datetime
import uuid

from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from soc_response.models.event_record import SecurityAlertRecord
from soc_response.schemas.metrics import ThreatCount

ALERT_INDICATOR_MATCH = "THREAT_INDICATOR_MATCH"
ALERT_CORRELATION_PATTERN = "CORRELATION_PATTERN"
ALERT_RULE_TRIGGERED = "RULE_TRIGGERED"

_SEVERITY_RANK = {"INFO": 0, "LOW": 1, "MEDIUM": 2, "HIGH": 3, "CRITICAL": 4}


class AlertStoreService:
    """Persists detection facts so metrics and audits can count them."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def _get_db(self) -> Session:
        return self._session_factory()

    def record(
        self,
        alert_type: str,
        subtype: Optional[str],
        severity: str,
        title: str,
        description: str,
        event_id: Optional[str],
        details: Dict[str, Any],
        created_at: Optional[datetime] = None,
    ) -> str:
        db = self._get_db()
        try:
            alert_id = str(uuid.uuid4())
            db.add(
                SecurityAlertRecord(
                    id=alert_id,
                    type=alert_type,
                    subtype=subtype,
                    severity=severity,
                    title=title,
                    description=description,
                    event_id=event_id,
                    details=details,
                    resolved=False,
                    created_at=created_at or datetime.utcnow(),
                )
            )
            db.commit()
            return alert_id
        finally:
            db.close()

    def top_threats(self, start: datetime, end: datetime, limit: int = 5) -> List[ThreatCount]:
        """Most frequent pattern / indicator / rule subtypes in range."""
        db = self._get_db()
        try:
            rows = (
                db.query(
                    SecurityAlertRecord.subtype,
                    SecurityAlertRecord.severity,
                    func.count(SecurityAlertRecord.id),
                )
                .filter(
                    SecurityAlertRecord.created_at >= start,
                    SecurityAlertRecord.created_at <= end,
                )
                .group_by(SecurityAlertRecord.subtype, SecurityAlertRecord.severity)
                .all()
            )
        finally:
            db.close()

        merged: Dict[str, ThreatCount] = {}
        for subtype, severity, count in rows:
            key = subtype or "UNKNOWN"
            current = merged.get(key)
            if current is None:
                merged[key] = ThreatCount(type=key, count=int(count), severity=severity)
                continue
            current.count += int(count)
            if _SEVERITY_RANK.get(severity, 0) > _SEVERITY_RANK.get(current.severity, 0):
                current.severity = severity

        ranked = sorted(merged.values(), key=lambda t: (-t.count, t.type))
        return ranked[:limit]

