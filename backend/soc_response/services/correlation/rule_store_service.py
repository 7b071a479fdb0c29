# backend/soc_response/services/correlation/rule_store_service.py
from typing import List
from datetime import datetime
import logging
import uuid

from sqlalchemy.orm import Session, sessionmaker

from soc_response.core.errors import ConflictError, NotFoundError
from soc_response.models.rule_record import AlertRuleRecord
from soc_response.schemas.rules import AlertRule, AlertRuleCreate

logger = logging.getLogger(__name__)


def default_rules(alert_email: str) -> List[AlertRuleCreate]:
    """Rules every fresh deployment starts with."""
    return [
        AlertRuleCreate(
            name="Multiple Failed Logins",
            description="Detect multiple failed login attempts",
            severity="HIGH",
            conditions=[
                {"field": "event_type", "operator": "equals", "value": "AUTHENTICATION"},
                {"field": "metadata.success", "operator": "equals", "value": False},
            ],
            time_window=300,
            threshold=5,
            actions=[
                {"type": "EMAIL", "target": alert_email},
                {"type": "CREATE_INCIDENT", "target": "security"},
            ],
            suppression_time=3600,
        ),
        AlertRuleCreate(
            name="Admin Operations Off Hours",
            description="Detect administrative operations during off hours",
            severity="MEDIUM",
            conditions=[
                {"field": "event_type", "operator": "equals", "value": "ADMIN_OPERATION"},
            ],
            time_window=900,
            threshold=1,
            actions=[{"type": "EMAIL", "target": alert_email}],
            suppression_time=7200,
        ),
    ]


class RuleStoreService:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def _get_db(self) -> Session:
        return self._session_factory()

    @staticmethod
    def _to_model(r: AlertRuleRecord) -> AlertRule:
        return AlertRule(
            id=r.id,
            name=r.name,
            description=r.description or "",
            enabled=bool(r.enabled),
            severity=r.severity,
            conditions=r.conditions or [],
            actions=r.actions or [],
            time_window=r.time_window,
            threshold=r.threshold,
            suppression_time=r.suppression_time,
            trigger_count=r.trigger_count or 0,
            last_triggered=r.last_triggered,
            created_at=r.created_at,
        )

    def list_rules(self, enabled_only: bool = False) -> List[AlertRule]:
        db = self._get_db()
        try:
            q = db.query(AlertRuleRecord)
            if enabled_only:
                q = q.filter(AlertRuleRecord.enabled.is_(True))
            return [self._to_model(r) for r in q.order_by(AlertRuleRecord.created_at)]
        finally:
            db.close()

    def create(self, data: AlertRuleCreate, now: datetime) -> AlertRule:
        db = self._get_db()
        try:
            if db.query(AlertRuleRecord).filter(AlertRuleRecord.name == data.name).first():
                raise ConflictError(f"Alert rule {data.name!r} already exists")

            record = AlertRuleRecord(
                id=str(uuid.uuid4()),
                name=data.name,
                description=data.description,
                enabled=data.enabled,
                severity=data.severity.value,
                conditions=[c.model_dump(mode="json") for c in data.conditions],
                actions=[a.model_dump(mode="json") for a in data.actions],
                time_window=data.time_window,
                threshold=data.threshold,
                suppression_time=data.suppression_time,
                trigger_count=0,
                created_at=now,
            )
            db.add(record)
            db.commit()
            return self._to_model(record)
        finally:
            db.close()

    def seed_defaults(self, rules: List[AlertRuleCreate], now: datetime) -> int:
        created = 0
        for data in rules:
            try:
                self.create(data, now)
                created += 1
            except ConflictError:
                continue
        if created:
            logger.info("Seeded %d default alert rules.", created)
        return created

    def record_trigger(self, rule_id: str, now: datetime) -> None:
        db = self._get_db()
        try:
            record = db.get(AlertRuleRecord, rule_id)
            if record is None:
                raise NotFoundError(f"Alert rule {rule_id} not found")
            record.trigger_count = (record.trigger_count or 0) + 1
            record.last_triggered = now
            db.commit()
        finally:
            db.close()
