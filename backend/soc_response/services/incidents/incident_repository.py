# backend/soc_response/services/incidents/incident_repository.py
from typing import List, Optional
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from soc_response.models.incident_record import IncidentRecord
from soc_response.schemas.incidents import (
    OPEN_STATUSES,
    Incident,
    IncidentFilters,
)


class IncidentRepository:
    """
    Incidents are stored as one row each: indexed columns for filtering plus
    the full document (timeline, actions, communications, evidence) as JSON.
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def _get_db(self) -> Session:
        return self._session_factory()

    @staticmethod
    def _to_model(r: IncidentRecord) -> Incident:
        return Incident.model_validate(r.document)

    def save(self, incident: Incident) -> None:
        db = self._get_db()
        try:
            record = db.get(IncidentRecord, incident.id)
            if record is None:
                record = IncidentRecord(id=incident.id)
                db.add(record)

            record.title = incident.title
            record.description = incident.description
            record.severity = incident.severity.value
            record.category = incident.category.value
            record.status = incident.status.value
            record.priority = incident.priority
            record.source = incident.source
            record.reported_by = incident.reported_by
            record.assigned_to = incident.assigned_to
            record.incident_commander = incident.incident_commander
            record.site_id = incident.site_id
            record.created_at = incident.created_at
            record.updated_at = incident.updated_at
            record.acknowledged_at = incident.acknowledged_at
            record.resolved_at = incident.resolved_at
            record.closed_at = incident.closed_at
            record.document = incident.model_dump(mode="json")
            db.commit()
        finally:
            db.close()

    def get(self, incident_id: str) -> Optional[Incident]:
        db = self._get_db()
        try:
            record = db.get(IncidentRecord, incident_id)
            return self._to_model(record) if record is not None else None
        finally:
            db.close()

    def list(self, filters: IncidentFilters) -> List[Incident]:
        db = self._get_db()
        try:
            q = db.query(IncidentRecord)
            if filters.status:
                q = q.filter(IncidentRecord.status == filters.status.value)
            if filters.severity:
                q = q.filter(IncidentRecord.severity == filters.severity.value)
            if filters.category:
                q = q.filter(IncidentRecord.category == filters.category.value)
            if filters.assigned_to:
                q = q.filter(IncidentRecord.assigned_to == filters.assigned_to)
            if filters.site_id:
                q = q.filter(IncidentRecord.site_id == filters.site_id)
            if filters.start:
                q = q.filter(IncidentRecord.created_at >= filters.start)
            if filters.end:
                q = q.filter(IncidentRecord.created_at <= filters.end)

            q = q.order_by(IncidentRecord.created_at.desc()).limit(filters.limit)
            return [self._to_model(r) for r in q]
        finally:
            db.close()

    def list_open(self) -> List[Incident]:
        db = self._get_db()
        try:
            q = db.query(IncidentRecord).filter(
                IncidentRecord.status.in_([s.value for s in OPEN_STATUSES])
            )
            return [self._to_model(r) for r in q.order_by(IncidentRecord.created_at)]
        finally:
            db.close()

    def count(self, start: datetime, end: datetime) -> int:
        db = self._get_db()
        try:
            return int(
                db.query(func.count(IncidentRecord.id))
                .filter(
                    IncidentRecord.created_at >= start,
                    IncidentRecord.created_at <= end,
                )
                .scalar()
                or 0
            )
        finally:
            db.close()
