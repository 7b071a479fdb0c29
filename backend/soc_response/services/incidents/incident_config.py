# backend/soc_response/services/incidents/incident_config.py
"""
Static incident-response configuration: severity levels, categories,
the automated action registry, communication templates and playbooks.

Loaded once at startup and validated so that every category's auto action
and playbook resolves.
"""
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, model_validator

from soc_response.schemas.incidents import (
    CommunicationType,
    IncidentCategory,
    IncidentSeverity,
)

# least to most severe
SEVERITY_ORDER: Tuple[IncidentSeverity, ...] = (
    IncidentSeverity.P4_LOW,
    IncidentSeverity.P3_MEDIUM,
    IncidentSeverity.P2_HIGH,
    IncidentSeverity.P1_CRITICAL,
)

TOP_ESCALATION_STAKEHOLDER = "executives"


class SeverityLevelConfig(BaseModel):
    name: str
    description: str
    response_minutes: int = Field(..., gt=0)
    escalation_minutes: int = Field(..., gt=0)
    max_resolution_minutes: int = Field(..., gt=0)
    auto_escalate: bool
    stakeholders: List[str]


class CategoryConfig(BaseModel):
    keywords: List[str] = Field(default_factory=list)
    default_severity: IncidentSeverity
    playbook: Optional[str] = None
    auto_actions: List[str] = Field(default_factory=list)


class ActionDefinition(BaseModel):
    description: str
    script: Optional[str] = None  # None: manual step, completed by a human
    confirmation_required: bool = True


class CommunicationTemplate(BaseModel):
    subject: str
    body: str


class PlaybookStep(BaseModel):
    order: int
    title: str
    description: str
    estimated_minutes: int
    required: bool = True
    action: Optional[str] = None


class Playbook(BaseModel):
    id: str
    name: str
    category: IncidentCategory
    steps: List[PlaybookStep]
    escalation_criteria: List[str] = Field(default_factory=list)
    success_criteria: List[str] = Field(default_factory=list)


class _SafeFormat(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class IncidentConfig(BaseModel):
    severity_levels: Dict[IncidentSeverity, SeverityLevelConfig]
    categories: Dict[IncidentCategory, CategoryConfig]
    actions: Dict[str, ActionDefinition]
    templates: Dict[CommunicationType, CommunicationTemplate]
    playbooks: Dict[str, Playbook] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_references(self) -> "IncidentConfig":
        missing_levels = [s.value for s in IncidentSeverity if s not in self.severity_levels]
        if missing_levels:
            raise ValueError(f"severity levels not configured: {missing_levels}")

        for category, cfg in self.categories.items():
            unknown = [a for a in cfg.auto_actions if a not in self.actions]
            if unknown:
                raise ValueError(
                    f"category {category.value} references unknown actions: {unknown}"
                )
            if cfg.playbook and cfg.playbook not in self.playbooks:
                raise ValueError(
                    f"category {category.value} references unknown playbook {cfg.playbook!r}"
                )

        for playbook in self.playbooks.values():
            for step in playbook.steps:
                if step.action and step.action not in self.actions:
                    raise ValueError(
                        f"playbook {playbook.id} step {step.order} references unknown action {step.action!r}"
                    )
        return self

    # --------------------------------------------------------
    # Lookups
    # --------------------------------------------------------
    def level(self, severity: IncidentSeverity) -> SeverityLevelConfig:
        return self.severity_levels[severity]

    def category(self, category: IncidentCategory) -> Optional[CategoryConfig]:
        return self.categories.get(category)

    def escalated_stakeholders(self, severity: IncidentSeverity) -> List[str]:
        """
        Stakeholders of this level plus the next more severe one; the top
        level escalates to executives.
        """
        idx = SEVERITY_ORDER.index(severity)
        names = list(self.level(severity).stakeholders)
        if idx + 1 < len(SEVERITY_ORDER):
            names += self.level(SEVERITY_ORDER[idx + 1]).stakeholders
        else:
            names.append(TOP_ESCALATION_STAKEHOLDER)
        return list(dict.fromkeys(names))

    def render(self, kind: CommunicationType, values: Dict[str, object]) -> Tuple[str, str]:
        template = self.templates[kind]
        safe = _SafeFormat({k: "" if v is None else v for k, v in values.items()})
        return template.subject.format_map(safe), template.body.format_map(safe)

    def classify(
        self,
        text: str,
        default: IncidentCategory = IncidentCategory.OTHER,
    ) -> IncidentCategory:
        """Category whose keywords hit the text most often; ties go to config order."""
        haystack = text.lower()
        best, best_hits = default, 0
        for category, cfg in self.categories.items():
            hits = sum(1 for kw in cfg.keywords if kw in haystack)
            if hits > best_hits:
                best, best_hits = category, hits
        return best


def _manual(description: str) -> dict:
    return {"description": description, "script": None, "confirmation_required": True}


DEFAULT_INCIDENT_CONFIG = IncidentConfig.model_validate(
    {
        "severity_levels": {
            "P1_CRITICAL": {
                "name": "Critical",
                "description": "System down, major security breach, data loss",
                "response_minutes": 15,
                "escalation_minutes": 30,
                "max_resolution_minutes": 4 * 60,
                "auto_escalate": True,
                "stakeholders": ["ciso", "security-team", "executives", "legal"],
            },
            "P2_HIGH": {
                "name": "High",
                "description": "Major functionality impaired, security threat detected",
                "response_minutes": 30,
                "escalation_minutes": 60,
                "max_resolution_minutes": 8 * 60,
                "auto_escalate": True,
                "stakeholders": ["security-team", "operations", "management"],
            },
            "P3_MEDIUM": {
                "name": "Medium",
                "description": "Minor functionality impaired, potential security issue",
                "response_minutes": 2 * 60,
                "escalation_minutes": 4 * 60,
                "max_resolution_minutes": 24 * 60,
                "auto_escalate": False,
                "stakeholders": ["security-team", "operations"],
            },
            "P4_LOW": {
                "name": "Low",
                "description": "Minor issues, informational security events",
                "response_minutes": 8 * 60,
                "escalation_minutes": 24 * 60,
                "max_resolution_minutes": 72 * 60,
                "auto_escalate": False,
                "stakeholders": ["security-team"],
            },
        },
        "categories": {
            "SECURITY_BREACH": {
                "keywords": ["breach", "unauthorized", "intrusion", "malware", "ransomware", "brute force"],
                "default_severity": "P1_CRITICAL",
                "playbook": "security-breach-response",
                "auto_actions": ["isolate-systems", "notify-stakeholders", "collect-evidence"],
            },
            "DATA_LEAK": {
                "keywords": ["data leak", "data loss", "exfiltration", "unauthorized access"],
                "default_severity": "P1_CRITICAL",
                "playbook": "data-breach-response",
                "auto_actions": ["notify-legal", "assess-scope", "regulatory-notification"],
            },
            "SYSTEM_OUTAGE": {
                "keywords": ["outage", "down", "unavailable", "service failure"],
                "default_severity": "P2_HIGH",
                "playbook": "system-recovery",
                "auto_actions": ["status-page-update", "escalate-operations"],
            },
            "MALWARE_INFECTION": {
                "keywords": ["malware", "virus", "trojan", "infection", "suspicious file"],
                "default_severity": "P2_HIGH",
                "playbook": "malware-response",
                "auto_actions": ["quarantine-system", "scan-network", "update-signatures"],
            },
            "PHISHING_ATTACK": {
                "keywords": ["phishing", "social engineering", "suspicious email"],
                "default_severity": "P3_MEDIUM",
                "playbook": "phishing-response",
                "auto_actions": ["block-sender", "warn-users", "analyze-payload"],
            },
            "COMPLIANCE_VIOLATION": {
                "keywords": ["compliance", "violation", "audit finding", "regulatory"],
                "default_severity": "P3_MEDIUM",
                "playbook": "compliance-response",
                "auto_actions": ["notify-compliance", "document-violation"],
            },
        },
        "actions": {
            "isolate-systems": {
                "description": "Isolate affected systems from network",
                "script": "isolate_systems.sh",
                "confirmation_required": True,
            },
            "block-ip": {
                "description": "Block malicious IP addresses",
                "script": "block_ip.sh",
                "confirmation_required": False,
            },
            "quarantine-system": {
                "description": "Quarantine infected system",
                "script": "quarantine_system.sh",
                "confirmation_required": True,
            },
            "collect-evidence": {
                "description": "Collect forensic evidence",
                "script": "collect_evidence.sh",
                "confirmation_required": False,
            },
            "notify-stakeholders": {
                "description": "Send notifications to stakeholders",
                "script": "notify_stakeholders.sh",
                "confirmation_required": False,
            },
            "notify-legal": _manual("Notify legal counsel"),
            "assess-scope": _manual("Assess scope of exposed data"),
            "regulatory-notification": _manual("Prepare regulatory breach notification"),
            "status-page-update": _manual("Update public status page"),
            "escalate-operations": _manual("Escalate to operations on-call"),
            "scan-network": _manual("Scan network for further infections"),
            "update-signatures": _manual("Update detection signatures"),
            "block-sender": _manual("Block phishing sender at the mail gateway"),
            "warn-users": _manual("Warn users about the phishing campaign"),
            "analyze-payload": _manual("Analyze phishing payload"),
            "notify-compliance": _manual("Notify compliance officer"),
            "document-violation": _manual("Document the compliance violation"),
        },
        "templates": {
            "DECLARED": {
                "subject": "[INCIDENT] {severity} - {title}",
                "body": (
                    "Security incident declared:\n\nTitle: {title}\nSeverity: {severity}\n"
                    "Description: {description}\n\nIncident Commander: {commander}\n"
                    "Next Update: {next_update}"
                ),
            },
            "STATUS_UPDATE": {
                "subject": "[INCIDENT UPDATE] {severity} - {title}",
                "body": (
                    "Incident Status Update:\n\nTitle: {title}\nStatus: {status}\n"
                    "Progress: {progress}\n\nNext Update: {next_update}"
                ),
            },
            "ESCALATION": {
                "subject": "[INCIDENT ESCALATED] {severity} - {title}",
                "body": (
                    "Incident escalated:\n\nTitle: {title}\nSeverity: {severity}\n"
                    "Status: {status}\nReason: {reason}\n\nIncident Commander: {commander}"
                ),
            },
            "RESOLUTION": {
                "subject": "[INCIDENT RESOLVED] {title}",
                "body": (
                    "Incident has been resolved:\n\nTitle: {title}\nResolution: {resolution}\n"
                    "Duration: {duration}\n\nPost-incident review will be scheduled."
                ),
            },
            "STAKEHOLDER_NOTIFICATION": {
                "subject": "[INCIDENT NOTICE] {title}",
                "body": "{message}",
            },
        },
        "playbooks": {
            "security-breach-response": {
                "id": "security-breach-response",
                "name": "Security Breach Response",
                "category": "SECURITY_BREACH",
                "steps": [
                    {"order": 1, "title": "Immediate Assessment", "description": "Assess scope and impact", "estimated_minutes": 15},
                    {"order": 2, "title": "Containment", "description": "Isolate affected systems", "estimated_minutes": 30, "action": "isolate-systems"},
                    {"order": 3, "title": "Evidence Collection", "description": "Collect forensic evidence", "estimated_minutes": 60, "action": "collect-evidence"},
                    {"order": 4, "title": "Stakeholder Notification", "description": "Notify required stakeholders", "estimated_minutes": 15, "action": "notify-stakeholders"},
                    {"order": 5, "title": "Recovery Planning", "description": "Plan system recovery", "estimated_minutes": 90},
                ],
                "escalation_criteria": ["No progress after 1 hour", "Additional systems affected", "Data exfiltration confirmed"],
                "success_criteria": ["All systems secured", "No ongoing threat", "Recovery plan implemented"],
            },
            "data-breach-response": {
                "id": "data-breach-response",
                "name": "Data Breach Response",
                "category": "DATA_LEAK",
                "steps": [
                    {"order": 1, "title": "Scope Assessment", "description": "Identify exposed records and data classes", "estimated_minutes": 60, "action": "assess-scope"},
                    {"order": 2, "title": "Legal Review", "description": "Engage legal counsel", "estimated_minutes": 30, "action": "notify-legal"},
                    {"order": 3, "title": "Regulatory Notification", "description": "Notify regulators within statutory deadlines", "estimated_minutes": 120, "action": "regulatory-notification"},
                ],
                "success_criteria": ["Exposure contained", "Notifications filed"],
            },
            "system-recovery": {
                "id": "system-recovery",
                "name": "System Recovery",
                "category": "SYSTEM_OUTAGE",
                "steps": [
                    {"order": 1, "title": "Status Page", "description": "Publish outage notice", "estimated_minutes": 10, "action": "status-page-update"},
                    {"order": 2, "title": "Operations Escalation", "description": "Page operations on-call", "estimated_minutes": 10, "action": "escalate-operations"},
                    {"order": 3, "title": "Restore Service", "description": "Restore from last known good state", "estimated_minutes": 120},
                ],
            },
            "malware-response": {
                "id": "malware-response",
                "name": "Malware Response",
                "category": "MALWARE_INFECTION",
                "steps": [
                    {"order": 1, "title": "Quarantine", "description": "Quarantine infected hosts", "estimated_minutes": 15, "action": "quarantine-system"},
                    {"order": 2, "title": "Network Sweep", "description": "Scan network for lateral spread", "estimated_minutes": 60, "action": "scan-network"},
                    {"order": 3, "title": "Signature Update", "description": "Push updated detection signatures", "estimated_minutes": 30, "action": "update-signatures"},
                ],
            },
            "phishing-response": {
                "id": "phishing-response",
                "name": "Phishing Response",
                "category": "PHISHING_ATTACK",
                "steps": [
                    {"order": 1, "title": "Block Sender", "description": "Block sender and lookalike domains", "estimated_minutes": 10, "action": "block-sender"},
                    {"order": 2, "title": "User Warning", "description": "Warn targeted users", "estimated_minutes": 15, "action": "warn-users"},
                    {"order": 3, "title": "Payload Analysis", "description": "Analyze links and attachments", "estimated_minutes": 60, "action": "analyze-payload"},
                ],
            },
            "compliance-response": {
                "id": "compliance-response",
                "name": "Compliance Response",
                "category": "COMPLIANCE_VIOLATION",
                "steps": [
                    {"order": 1, "title": "Notify Compliance", "description": "Inform the compliance officer", "estimated_minutes": 15, "action": "notify-compliance"},
                    {"order": 2, "title": "Document", "description": "Record the violation and evidence", "estimated_minutes": 45, "action": "document-violation"},
                ],
            },
        },
    }
)
