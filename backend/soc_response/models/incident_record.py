# backend/soc_response/models/incident_record.py
from sqlalchemy import Column, DateTime, Integer, String, Text
from datetime import datetime
from soc_response.db.base_class import Base, JSONType


class IncidentRecord(Base):
    __tablename__ = "incidents"

    id = Column(String, primary_key=True, index=True)   # INC-P1-<ts>-<rand>
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    severity = Column(String, index=True, nullable=False)
    category = Column(String, index=True, nullable=False)
    status = Column(String, index=True, nullable=False)
    priority = Column(Integer, nullable=False)
    source = Column(String, nullable=False)
    reported_by = Column(String, nullable=False)
    assigned_to = Column(String, index=True, nullable=True)
    incident_commander = Column(String, nullable=True)
    site_id = Column(String, index=True, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow)
    acknowledged_at = Column(DateTime, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    closed_at = Column(DateTime, nullable=True)

    # Full incident document: timeline / actions / communications / evidence
    document = Column(JSONType, nullable=False)
