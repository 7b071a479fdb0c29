# backend/soc_response/schemas/correlation.py
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime


class IndicatorMatch(BaseModel):
    """An event hit a live indicator of compromise."""
    indicator_id: str
    indicator_type: str
    severity: str
    confidence: int
    matched_field: str
    matched_value: str
    event_id: str


class PatternMatch(BaseModel):
    """
    A detector fired on a correlation group, e.g.
    - "5 events for user:u1 within 60s"
    - "3 failed logins followed by a success"
    """
    type: str  # VELOCITY_ATTACK | BRUTE_FORCE_SUCCESS | PRIVILEGE_ESCALATION | DATA_EXFILTRATION
    correlation_key: str
    severity: str  # HIGH | CRITICAL
    description: str
    event_ids: List[str]
    detected_at: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TriggeredAlert(BaseModel):
    """An alert rule crossed its threshold and was dispatched."""
    rule_id: str
    rule_name: str
    severity: str
    event_id: str
    suppression_key: str
    matching_event_ids: List[str]
    threshold: int
    actual_count: int
    actions: List[str]
    triggered_at: datetime
    failed_actions: List[str] = Field(default_factory=list)
    incident_requested: Optional[str] = None
