# backend/soc_response/services/events/event_store_service.py

from typing import Any, Dict, List, Optional, Sequence
from datetime import datetime, timedelta
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from soc_response.core.errors import NotFoundError
from soc_response.models.event_record import SecurityEventRecord
from soc_response.schemas.events import SecurityEvent
from soc_response.schemas.rules import RuleCondition
from soc_response.services.correlation.conditions import (
    column_equality_filters,
    event_document,
    matches_all,
)

logger = logging.getLogger(__name__)

# Columns that equality conditions may be pushed down onto
_FILTERABLE_COLUMNS = {
    "event_type", "severity", "source", "user_id", "site_id", "ip_address",
    "session_id", "resource_id", "resource_type", "action",
}

# Upper bound on rows pulled for one rule window evaluation
FIND_RECENT_LIMIT = 5000


class EventStoreService:
    """
    DB-backed security event store (Postgres via SQLAlchemy).

    The correlation engine and rule engine only see SecurityEvent models;
    row <-> model mapping stays in here.
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def _get_db(self) -> Session:
        return self._session_factory()

    @staticmethod
    def _to_model(r: SecurityEventRecord) -> SecurityEvent:
        return SecurityEvent(
            id=r.id,
            event_type=r.event_type,
            severity=r.severity,
            source=r.source,
            title=r.title or "",
            description=r.description or "",
            user_id=r.user_id,
            site_id=r.site_id,
            ip_address=r.ip_address,
            user_agent=r.user_agent,
            session_id=r.session_id,
            resource_id=r.resource_id,
            resource_type=r.resource_type,
            action=r.action,
            metadata=r.attributes or {},
            timestamp=r.occurred_at,
            threat_score=r.threat_score or 0,
            processed=bool(r.processed),
            enrichment=r.enrichment or {},
        )

    # --------------------------------------------------------
    # Create / store
    # --------------------------------------------------------
    def save(self, event: SecurityEvent) -> None:
        db = self._get_db()
        try:
            record = SecurityEventRecord(
                id=event.id,
                event_type=event.event_type.value,
                severity=event.severity.value,
                source=event.source,
                title=event.title,
                description=event.description,
                user_id=event.user_id,
                site_id=event.site_id,
                ip_address=event.ip_address,
                user_agent=event.user_agent,
                session_id=event.session_id,
                resource_id=event.resource_id,
                resource_type=event.resource_type,
                action=event.action,
                attributes=event.metadata,
                enrichment=event.enrichment,
                threat_score=event.threat_score,
                processed=event.processed,
                occurred_at=event.timestamp,
                created_at=datetime.utcnow(),
            )
            db.add(record)
            db.commit()
        finally:
            db.close()

    # --------------------------------------------------------
    # Read single
    # --------------------------------------------------------
    def get_event(self, event_id: str) -> SecurityEvent:
        db = self._get_db()
        try:
            record = db.get(SecurityEventRecord, event_id)
            if record is None:
                raise NotFoundError(f"Event {event_id} not found")
            return self._to_model(record)
        finally:
            db.close()

    # --------------------------------------------------------
    # Read list
    # --------------------------------------------------------
    def list_events(self, limit: int = 50) -> List[SecurityEvent]:
        """
        Return latest `limit` events ordered by occurrence desc.
        """
        db = self._get_db()
        try:
            q = (
                db.query(SecurityEventRecord)
                .order_by(SecurityEventRecord.occurred_at.desc())
                .limit(limit)
            )
            return [self._to_model(r) for r in q]
        finally:
            db.close()

    def find_recent(
        self,
        conditions: Sequence[RuleCondition],
        window_seconds: int,
        now: datetime,
    ) -> List[SecurityEvent]:
        """
        Events inside [now - window, now] that satisfy every condition.
        Simple equality conditions are filtered in SQL, the rest in Python.
        """
        cutoff = now - timedelta(seconds=window_seconds)
        db = self._get_db()
        try:
            q = db.query(SecurityEventRecord).filter(
                SecurityEventRecord.occurred_at >= cutoff,
                SecurityEventRecord.occurred_at <= now,
            )
            for name, value in column_equality_filters(conditions).items():
                if name in _FILTERABLE_COLUMNS:
                    q = q.filter(getattr(SecurityEventRecord, name) == value)

            q = q.order_by(SecurityEventRecord.occurred_at.desc()).limit(FIND_RECENT_LIMIT)
            events = [self._to_model(r) for r in q]
        finally:
            db.close()

        return [e for e in events if matches_all(conditions, event_document(e))]

    def count_by_group(
        self,
        field: str,
        start: datetime,
        end: datetime,
    ) -> Dict[str, int]:
        """Event counts grouped by one column over a time range."""
        column = getattr(SecurityEventRecord, field)
        db = self._get_db()
        try:
            rows = (
                db.query(column, func.count(SecurityEventRecord.id))
                .filter(
                    SecurityEventRecord.occurred_at >= start,
                    SecurityEventRecord.occurred_at <= end,
                )
                .group_by(column)
                .all()
            )
            return {str(k): int(v) for k, v in rows}
        finally:
            db.close()

    def average_threat_score(self, start: datetime, end: datetime) -> float:
        db = self._get_db()
        try:
            avg: Optional[Any] = (
                db.query(func.avg(SecurityEventRecord.threat_score))
                .filter(
                    SecurityEventRecord.occurred_at >= start,
                    SecurityEventRecord.occurred_at <= end,
                )
                .scalar()
            )
            return round(float(avg), 2) if avg is not None else 0.0
        finally:
            db.close()

    # --------------------------------------------------------
    # Partial update (processed flag + enrichment)
    # --------------------------------------------------------
    def mark_processed(self, event_id: str, enrichment: Dict[str, Any]) -> None:
        """
        Flip processed=true and attach enrichment; the only mutation an
        event ever sees after ingestion.
        """
        db = self._get_db()
        try:
            record = db.get(SecurityEventRecord, event_id)
            if record is None:
                raise NotFoundError(f"Event {event_id} not found")
            merged = dict(record.enrichment or {})
            merged.update(enrichment)
            record.enrichment = merged
            record.processed = True
            db.commit()
        finally:
            db.close()
