# backend/soc_response/schemas/incidents.py
from typing import Any, Dict, List, Optional
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, model_validator


class IncidentSeverity(str, Enum):
    P1_CRITICAL = "P1_CRITICAL"
    P2_HIGH = "P2_HIGH"
    P3_MEDIUM = "P3_MEDIUM"
    P4_LOW = "P4_LOW"

    @property
    def prefix(self) -> str:
        return self.value.split("_")[0]


class IncidentCategory(str, Enum):
    SECURITY_BREACH = "SECURITY_BREACH"
    DATA_LEAK = "DATA_LEAK"
    SYSTEM_OUTAGE = "SYSTEM_OUTAGE"
    MALWARE_INFECTION = "MALWARE_INFECTION"
    PHISHING_ATTACK = "PHISHING_ATTACK"
    COMPLIANCE_VIOLATION = "COMPLIANCE_VIOLATION"
    OTHER = "OTHER"


class IncidentStatus(str, Enum):
    NEW = "NEW"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    INVESTIGATING = "INVESTIGATING"
    RESPONDING = "RESPONDING"
    MONITORING = "MONITORING"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


OPEN_STATUSES = (
    IncidentStatus.NEW,
    IncidentStatus.ACKNOWLEDGED,
    IncidentStatus.INVESTIGATING,
    IncidentStatus.RESPONDING,
    IncidentStatus.MONITORING,
)


class ActionStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_ACTION_STATUSES = (
    ActionStatus.COMPLETED,
    ActionStatus.FAILED,
    ActionStatus.CANCELLED,
)


class CommunicationType(str, Enum):
    DECLARED = "DECLARED"
    STATUS_UPDATE = "STATUS_UPDATE"
    ESCALATION = "ESCALATION"
    RESOLUTION = "RESOLUTION"
    STAKEHOLDER_NOTIFICATION = "STAKEHOLDER_NOTIFICATION"


class CommunicationChannel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    SLACK = "slack"
    TEAMS = "teams"
    WEBHOOK = "webhook"


class CommunicationPriority(str, Enum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"


class CommunicationStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class EvidenceType(str, Enum):
    LOG_FILE = "LOG_FILE"
    SCREENSHOT = "SCREENSHOT"
    NETWORK_CAPTURE = "NETWORK_CAPTURE"
    MEMORY_DUMP = "MEMORY_DUMP"
    DOCUMENT = "DOCUMENT"
    OTHER = "OTHER"


# --------------------------------------------------------
# Embedded records
# --------------------------------------------------------
class IncidentTimelineEntry(BaseModel):
    id: str
    incident_id: str
    timestamp: datetime
    actor: str
    action: str
    description: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class IncidentAction(BaseModel):
    id: str
    incident_id: str
    action_type: str
    description: str
    status: ActionStatus = ActionStatus.PENDING
    assigned_to: Optional[str] = None
    automated: bool = False
    confirmation_required: bool = False
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    results: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class IncidentCommunication(BaseModel):
    id: str
    incident_id: str
    type: CommunicationType
    message: str
    recipients: List[str]
    channels: List[CommunicationChannel]
    priority: CommunicationPriority = CommunicationPriority.NORMAL
    sent_at: datetime
    sent_by: str = "SYSTEM"
    status: CommunicationStatus = CommunicationStatus.PENDING
    error: Optional[str] = None


class CustodyTransfer(BaseModel):
    transferred_to: str
    transferred_at: datetime
    purpose: str


class IncidentEvidence(BaseModel):
    id: str
    incident_id: str
    type: EvidenceType
    file_name: str
    file_path: str
    collected_by: str
    collected_at: datetime
    hash: str
    chain_of_custody: List[CustodyTransfer] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Incident(BaseModel):
    id: str
    title: str
    description: str
    severity: IncidentSeverity
    category: IncidentCategory
    status: IncidentStatus = IncidentStatus.NEW
    priority: int = Field(..., ge=1, le=5)
    source: str
    affected_systems: List[str] = Field(default_factory=list)
    reported_by: str
    assigned_to: Optional[str] = None
    incident_commander: Optional[str] = None
    site_id: Optional[str] = None
    playbook: Optional[str] = None

    created_at: datetime
    updated_at: datetime
    acknowledged_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    escalated_at: Optional[datetime] = None
    response_time: Optional[int] = None  # minutes
    resolution_time: Optional[int] = None  # minutes

    resolution: Optional[str] = None
    lessons_learned: Optional[str] = None
    stakeholders: List[str] = Field(default_factory=list)

    timeline: List[IncidentTimelineEntry] = Field(default_factory=list)
    communications: List[IncidentCommunication] = Field(default_factory=list)
    actions: List[IncidentAction] = Field(default_factory=list)
    evidence: List[IncidentEvidence] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES


# --------------------------------------------------------
# Requests
# --------------------------------------------------------
class IncidentCreate(BaseModel):
    title: str = Field(..., min_length=10, max_length=200)
    description: str = Field(..., min_length=20)
    severity: IncidentSeverity
    category: IncidentCategory
    source: str = "manual"
    affected_systems: List[str] = Field(default_factory=list)
    initial_evidence: List[str] = Field(default_factory=list)
    reported_by: str = Field(..., min_length=1)
    site_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class IncidentUpdate(BaseModel):
    status: Optional[IncidentStatus] = None
    assigned_to: Optional[str] = None
    priority: Optional[int] = Field(None, ge=1, le=5)
    progress: Optional[str] = None
    resolution: Optional[str] = None
    lessons_learned: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class IncidentCommunicationCreate(BaseModel):
    type: CommunicationType
    message: str = Field(..., min_length=1)
    recipients: List[str] = Field(..., min_length=1)
    priority: CommunicationPriority = CommunicationPriority.NORMAL
    channels: List[CommunicationChannel] = Field(
        default_factory=lambda: [CommunicationChannel.EMAIL], min_length=1
    )
    sent_by: str = "SYSTEM"


class IncidentActionRequest(BaseModel):
    """Either a new action by `action_type`, or a trigger of an existing one by `action_id`."""
    action_type: Optional[str] = None
    assigned_to: Optional[str] = None
    automated: bool = False
    action_id: Optional[str] = None

    @model_validator(mode="after")
    def _one_target(self) -> "IncidentActionRequest":
        if bool(self.action_type) == bool(self.action_id):
            raise ValueError("exactly one of action_type or action_id is required")
        return self


class IncidentEvidenceCreate(BaseModel):
    type: EvidenceType
    file_name: str = Field(..., min_length=1)
    file_path: str = Field(..., min_length=1)
    collected_by: str = Field(..., min_length=1)
    hash: str = Field(..., pattern=r"^[A-Fa-f0-9]{64}$", description="sha256 hex digest")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class IncidentFilters(BaseModel):
    status: Optional[IncidentStatus] = None
    severity: Optional[IncidentSeverity] = None
    category: Optional[IncidentCategory] = None
    assigned_to: Optional[str] = None
    site_id: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    limit: int = Field(50, ge=1, le=500)
