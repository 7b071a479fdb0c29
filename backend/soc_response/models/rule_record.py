# backend/soc_response/models/rule_record.py
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text
from datetime import datetime
from soc_response.db.base_class import Base, JSONType


class AlertRuleRecord(Base):
    __tablename__ = "alert_rules"

    id = Column(String, primary_key=True, index=True)
    name = Column(String, unique=True, index=True, nullable=False)
    description = Column(Text, nullable=True)
    enabled = Column(Boolean, default=True, index=True)
    severity = Column(String, nullable=False)

    conditions = Column(JSONType, nullable=False)   # [{"field", "operator", "value"}, ...]
    actions = Column(JSONType, default=list)        # [{"type", "target", "template"}, ...]
    time_window = Column(Integer, nullable=False)   # seconds
    threshold = Column(Integer, nullable=False)
    suppression_time = Column(Integer, nullable=True)  # seconds

    trigger_count = Column(Integer, default=0)
    last_triggered = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class ThreatIndicatorRecord(Base):
    __tablename__ = "threat_indicators"

    id = Column(String, primary_key=True, index=True)
    type = Column(String, index=True, nullable=False)
    value = Column(String, index=True, nullable=False)
    severity = Column(String, nullable=False)
    confidence = Column(Integer, nullable=False)
    source = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    attributes = Column("metadata", JSONType, default=dict)

    active = Column(Boolean, default=True, index=True)
    expires_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
