# backend/soc_response/services/indicators/indicator_store_service.py
from typing import List
from datetime import datetime
import uuid

from sqlalchemy import or_
from sqlalchemy.orm import Session, sessionmaker

from soc_response.models.rule_record import ThreatIndicatorRecord
from soc_response.schemas.indicators import ThreatIndicator, ThreatIndicatorCreate


class IndicatorStoreService:
    """Durable copy of the IOC set; the matcher only ever holds a snapshot."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def _get_db(self) -> Session:
        return self._session_factory()

    @staticmethod
    def _to_model(r: ThreatIndicatorRecord) -> ThreatIndicator:
        return ThreatIndicator(
            id=r.id,
            type=r.type,
            value=r.value,
            severity=r.severity,
            confidence=r.confidence,
            source=r.source,
            description=r.description or "",
            expires_at=r.expires_at,
            metadata=r.attributes or {},
            created_at=r.created_at,
            active=bool(r.active),
        )

    def create(self, data: ThreatIndicatorCreate, now: datetime) -> ThreatIndicator:
        db = self._get_db()
        try:
            record = ThreatIndicatorRecord(
                id=str(uuid.uuid4()),
                type=data.type.value,
                value=data.value,
                severity=data.severity.value,
                confidence=data.confidence,
                source=data.source,
                description=data.description,
                attributes=data.metadata,
                active=True,
                expires_at=data.expires_at,
                created_at=now,
            )
            db.add(record)
            db.commit()
            return self._to_model(record)
        finally:
            db.close()

    def upsert_many(self, items: List[ThreatIndicatorCreate], now: datetime) -> int:
        """
        Merge feed indicators keyed on (type, value, source). Existing rows get
        their severity / confidence / expiry refreshed and are reactivated.
        """
        written = 0
        db = self._get_db()
        try:
            for data in items:
                record = (
                    db.query(ThreatIndicatorRecord)
                    .filter(
                        ThreatIndicatorRecord.type == data.type.value,
                        ThreatIndicatorRecord.value == data.value,
                        ThreatIndicatorRecord.source == data.source,
                    )
                    .first()
                )
                if record is None:
                    record = ThreatIndicatorRecord(
                        id=str(uuid.uuid4()),
                        type=data.type.value,
                        value=data.value,
                        source=data.source,
                        created_at=now,
                    )
                    db.add(record)
                record.severity = data.severity.value
                record.confidence = data.confidence
                record.description = data.description
                record.attributes = data.metadata
                record.expires_at = data.expires_at
                record.active = data.expires_at is None or data.expires_at > now
                written += 1
            db.commit()
            return written
        finally:
            db.close()

    def list_active(self, now: datetime) -> List[ThreatIndicator]:
        db = self._get_db()
        try:
            q = db.query(ThreatIndicatorRecord).filter(
                ThreatIndicatorRecord.active.is_(True),
                or_(
                    ThreatIndicatorRecord.expires_at.is_(None),
                    ThreatIndicatorRecord.expires_at > now,
                ),
            )
            return [self._to_model(r) for r in q]
        finally:
            db.close()

    def deactivate_expired(self, now: datetime) -> int:
        db = self._get_db()
        try:
            count = (
                db.query(ThreatIndicatorRecord)
                .filter(
                    ThreatIndicatorRecord.active.is_(True),
                    ThreatIndicatorRecord.expires_at.is_not(None),
                    ThreatIndicatorRecord.expires_at <= now,
                )
                .update({ThreatIndicatorRecord.active: False}, synchronize_session=False)
            )
            db.commit()
            return int(count)
        finally:
            db.close()
