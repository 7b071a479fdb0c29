# backend/soc_response/schemas/metrics.py
from typing import Dict, List
from pydantic import BaseModel


class ThreatCount(BaseModel):
    type: str
    count: int
    severity: str


class SystemHealth(BaseModel):
    status: str  # healthy | warning | critical
    uptime: float  # seconds
    processed_events: int
    failed_events: int


class SecurityMetrics(BaseModel):
    total_events: int
    events_by_type: Dict[str, int]
    events_by_severity: Dict[str, int]
    top_threats: List[ThreatCount]
    threat_score: float
    active_alerts: int
    incident_count: int
    open_incidents: int
    system_health: SystemHealth
