# backend/soc_response/models/event_record.py
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text
from datetime import datetime
from soc_response.db.base_class import Base, JSONType


class SecurityEventRecord(Base):
    __tablename__ = "security_events"

    id = Column(String, primary_key=True, index=True)   # store UUID as string
    event_type = Column(String, index=True, nullable=False)
    severity = Column(String, index=True, nullable=False)
    source = Column(String, index=True, nullable=False)
    title = Column(String, nullable=True)
    description = Column(Text, nullable=True)

    user_id = Column(String, index=True, nullable=True)
    site_id = Column(String, nullable=True)
    ip_address = Column(String, index=True, nullable=True)
    user_agent = Column(String, nullable=True)
    session_id = Column(String, nullable=True)
    resource_id = Column(String, nullable=True)
    resource_type = Column(String, nullable=True)
    action = Column(String, nullable=True)

    # "metadata" is reserved on declarative classes
    attributes = Column("metadata", JSONType, default=dict)
    enrichment = Column(JSONType, default=dict)

    threat_score = Column(Integer, default=0, index=True)
    processed = Column(Boolean, default=False)

    occurred_at = Column(DateTime, index=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)


class SecurityAlertRecord(Base):
    """Derived detection facts: indicator hits, pattern matches, rule triggers."""
    __tablename__ = "security_alerts"

    id = Column(String, primary_key=True, index=True)
    type = Column(String, index=True, nullable=False)  # THREAT_INDICATOR_MATCH | CORRELATION_PATTERN | RULE_TRIGGERED
    subtype = Column(String, index=True, nullable=True)  # pattern type / indicator type / rule id
    severity = Column(String, index=True, nullable=False)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    event_id = Column(String, index=True, nullable=True)
    details = Column(JSONType, default=dict)
    resolved = Column(Boolean, default=False)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
