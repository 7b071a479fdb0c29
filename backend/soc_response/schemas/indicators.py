# backend/soc_response/schemas/indicators.py
from typing import Any, Dict, Optional
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator

from soc_response.schemas.events import to_naive_utc


class IndicatorType(str, Enum):
    MALICIOUS_IP = "MALICIOUS_IP"
    SUSPICIOUS_DOMAIN = "SUSPICIOUS_DOMAIN"
    KNOWN_MALWARE = "KNOWN_MALWARE"
    SUSPICIOUS_USER_AGENT = "SUSPICIOUS_USER_AGENT"
    GEOLOCATION_ANOMALY = "GEOLOCATION_ANOMALY"
    VELOCITY_ANOMALY = "VELOCITY_ANOMALY"
    PRIVILEGE_ESCALATION = "PRIVILEGE_ESCALATION"
    DATA_EXFILTRATION = "DATA_EXFILTRATION"
    BRUTE_FORCE = "BRUTE_FORCE"


class IndicatorSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ThreatIndicatorCreate(BaseModel):
    type: IndicatorType
    value: str = Field(..., min_length=1)
    severity: IndicatorSeverity
    confidence: int = Field(..., ge=0, le=100)
    source: str
    description: str = ""
    expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("expires_at")
    @classmethod
    def _normalize_expiry(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v)


class ThreatIndicator(ThreatIndicatorCreate):
    id: str
    created_at: datetime
    active: bool = True

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now
