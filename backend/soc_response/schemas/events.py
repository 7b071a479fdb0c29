# backend/soc_response/schemas/events.py
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator

from soc_response.schemas.correlation import (
    IndicatorMatch,
    PatternMatch,
    TriggeredAlert,
)


class EventType(str, Enum):
    AUTHENTICATION = "AUTHENTICATION"
    AUTHORIZATION = "AUTHORIZATION"
    DATA_ACCESS = "DATA_ACCESS"
    FILE_OPERATION = "FILE_OPERATION"
    ADMIN_OPERATION = "ADMIN_OPERATION"
    API_ACCESS = "API_ACCESS"
    SYSTEM_OPERATION = "SYSTEM_OPERATION"
    THREAT_DETECTED = "THREAT_DETECTED"
    ANOMALY_DETECTED = "ANOMALY_DETECTED"
    COMPLIANCE_VIOLATION = "COMPLIANCE_VIOLATION"
    SECURITY_ALERT = "SECURITY_ALERT"


class EventSeverity(str, Enum):
    INFO = "INFO"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """All timestamps are stored as naive UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class SecurityEventIn(BaseModel):
    """
    Security telemetry ingestion payload.
    This is what upstream collectors POST to the API.
    """
    event_type: EventType
    severity: EventSeverity = EventSeverity.INFO
    source: str = Field(..., min_length=1, description="Emitting system or sensor")
    title: str = ""
    description: str = ""

    user_id: Optional[str] = None
    site_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    resource_id: Optional[str] = None
    resource_type: Optional[str] = None
    action: Optional[str] = None

    metadata: Dict[str, Any] = Field(
        default_factory=dict,
        description="Free-form attributes, e.g. {'success': false, 'referrer': ...}",
    )

    timestamp: Optional[datetime] = Field(
        None,
        description="When the event occurred. If omitted, backend will set to now().",
    )

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v)


class SecurityEvent(SecurityEventIn):
    """An ingested, scored event. Immutable apart from `processed`/`enrichment`."""
    id: str
    timestamp: datetime
    threat_score: int = 0
    processed: bool = False
    enrichment: Dict[str, Any] = Field(default_factory=dict)


class EventIngestResponse(BaseModel):
    event: SecurityEvent
    indicator_matches: List[IndicatorMatch] = Field(default_factory=list)
    pattern_matches: List[PatternMatch] = Field(default_factory=list)
    triggered_alerts: List[TriggeredAlert] = Field(default_factory=list)
