# backend/soc_response/services/incidents/incident_service.py
import asyncio
import logging
import math
import random
import string
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type, TypeVar, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from soc_response.core.errors import (
    ConflictError,
    NotFoundError,
    ValidationError,
    validation_error_from_pydantic,
)
from soc_response.schemas.incidents import (
    ActionStatus,
    CommunicationChannel,
    CommunicationPriority,
    CommunicationStatus,
    CommunicationType,
    CustodyTransfer,
    Incident,
    IncidentAction,
    IncidentActionRequest,
    IncidentCategory,
    IncidentCommunication,
    IncidentCommunicationCreate,
    IncidentCreate,
    IncidentEvidence,
    IncidentEvidenceCreate,
    IncidentFilters,
    IncidentSeverity,
    IncidentStatus,
    IncidentTimelineEntry,
    IncidentUpdate,
    TERMINAL_ACTION_STATUSES,
)
from soc_response.services.alerting.alert_dispatcher import AlertDispatcher
from soc_response.services.core_service.retry import call_with_timeout
from soc_response.services.incidents.collaborators import (
    CommanderAssignment,
    PostIncidentScheduler,
    ScriptActionRunner,
)
from soc_response.services.incidents.escalation import EscalationHandle, EscalationScheduler
from soc_response.services.incidents.incident_config import (
    DEFAULT_INCIDENT_CONFIG,
    IncidentConfig,
    Playbook,
)
from soc_response.services.incidents.incident_repository import IncidentRepository

logger = logging.getLogger(__name__)

SELF_LOG_SOURCE = "IncidentResponse"
SYSTEM_ACTOR = "SYSTEM"

PRIORITY_BY_SEVERITY = {
    IncidentSeverity.P1_CRITICAL: 1,
    IncidentSeverity.P2_HIGH: 2,
    IncidentSeverity.P3_MEDIUM: 3,
    IncidentSeverity.P4_LOW: 4,
}

IngestCallback = Callable[[Dict[str, Any]], Awaitable[Any]]
M = TypeVar("M", bound=BaseModel)

_B36 = string.digits + string.ascii_lowercase


def _base36(n: int) -> str:
    out = ""
    while n:
        n, r = divmod(n, 36)
        out = _B36[r] + out
    return out or "0"


def generate_incident_id(severity: IncidentSeverity, now: datetime) -> str:
    """INC-<P1..P4>-<base36 millis>-<4 random chars>, upper-cased."""
    millis = int(now.replace(tzinfo=timezone.utc).timestamp() * 1000)
    suffix = "".join(random.choices(_B36, k=4))
    return f"INC-{severity.prefix}-{_base36(millis)}-{suffix}".upper()


def minutes_between(start: datetime, end: datetime) -> int:
    """Elapsed whole minutes, rounded up, never less than 1."""
    return max(1, math.ceil((end - start).total_seconds() / 60))


class IncidentLifecycleManager:
    """
    Owns the incident state machine.

    NEW -> ACKNOWLEDGED -> INVESTIGATING -> RESPONDING -> MONITORING -> RESOLVED -> CLOSED

    The middle states may be revisited in any order before RESOLVED; CLOSED is
    terminal and needs RESOLVED first. acknowledged_at, resolved_at and
    closed_at are each written once.

    Every incident is mutated under its own asyncio.Lock. Collaborator calls
    (notifier, action runner, commander policy, review scheduler, SIEM
    self-log) happen outside the lock; results are applied by re-acquiring it.
    Downstream failures land on the timeline as *_FAILED entries and never
    fail the operation that caused them.
    """

    def __init__(
        self,
        repository: IncidentRepository,
        notifier: AlertDispatcher,
        action_runner: ScriptActionRunner,
        commanders: CommanderAssignment,
        reviews: PostIncidentScheduler,
        config: IncidentConfig = DEFAULT_INCIDENT_CONFIG,
        clock: Callable[[], datetime] = datetime.utcnow,
        escalation_minute_seconds: float = 60.0,
        action_timeout: float = 30.0,
        collaborator_timeout: float = 5.0,
        ingest: Optional[IngestCallback] = None,
    ) -> None:
        self.repository = repository
        self.notifier = notifier
        self.runner = action_runner
        self.commanders = commanders
        self.reviews = reviews
        self.config = config
        self.clock = clock
        self.escalation_minute_seconds = escalation_minute_seconds
        self.action_timeout = action_timeout
        self.collaborator_timeout = collaborator_timeout
        self.ingest = ingest

        self.scheduler = EscalationScheduler(self._on_escalation_due)
        # replaced wholesale on every change
        self._open: Dict[str, Incident] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    # -------------------------------------------------------------------------
    # Plumbing
    # -------------------------------------------------------------------------
    @property
    def open_incidents(self) -> Tuple[Incident, ...]:
        return tuple(self._open.values())

    def _lock(self, incident_id: str) -> asyncio.Lock:
        return self._locks.setdefault(incident_id, asyncio.Lock())

    @staticmethod
    def _validate(model: Type[M], data: Union[M, Dict[str, Any]], what: str) -> M:
        if isinstance(data, model):
            return data
        try:
            return model.model_validate(data)
        except PydanticValidationError as exc:
            raise validation_error_from_pydantic(exc, what)

    def _load(self, incident_id: str) -> Incident:
        incident = self._open.get(incident_id) or self.repository.get(incident_id)
        if incident is None:
            raise NotFoundError(f"Incident {incident_id} not found")
        return incident

    def _working_copy(self, incident_id: str) -> Incident:
        return self._load(incident_id).model_copy(deep=True)

    def _commit(self, incident: Incident, now: datetime) -> None:
        incident.updated_at = now
        self.repository.save(incident)
        current = dict(self._open)
        if incident.is_open:
            current[incident.id] = incident
        else:
            current.pop(incident.id, None)
        self._open = current
        if incident.status == IncidentStatus.CLOSED:
            self._locks.pop(incident.id, None)

    @staticmethod
    def _entry(
        incident: Incident,
        actor: str,
        action: str,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> IncidentTimelineEntry:
        entry = IncidentTimelineEntry(
            id=str(uuid.uuid4()),
            incident_id=incident.id,
            timestamp=now or datetime.utcnow(),
            actor=actor,
            action=action,
            description=description,
            metadata=metadata or {},
        )
        incident.timeline.append(entry)
        return entry

    @staticmethod
    def _find_action(incident: Incident, action_id: str) -> IncidentAction:
        for action in incident.actions:
            if action.id == action_id:
                return action
        raise NotFoundError(f"Action {action_id} not found on incident {incident.id}")

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------
    async def create_incident(self, data: Union[IncidentCreate, Dict[str, Any]]) -> Incident:
        data = self._validate(IncidentCreate, data, "incident")
        now = self.clock()

        commander: Optional[str] = None
        commander_error: Optional[str] = None
        try:
            commander = await call_with_timeout(
                lambda: self.commanders.assign(data.severity),
                self.collaborator_timeout,
                "commander assignment",
            )
        except Exception as exc:
            logger.warning("Commander assignment failed: %s", exc)
            commander_error = f"{type(exc).__name__}: {exc}"

        category_cfg = self.config.category(data.category)
        level = self.config.level(data.severity)

        incident = Incident(
            id=generate_incident_id(data.severity, now),
            title=data.title,
            description=data.description,
            severity=data.severity,
            category=data.category,
            status=IncidentStatus.NEW,
            priority=PRIORITY_BY_SEVERITY[data.severity],
            source=data.source,
            affected_systems=data.affected_systems,
            reported_by=data.reported_by,
            incident_commander=commander,
            site_id=data.site_id,
            playbook=category_cfg.playbook if category_cfg else None,
            created_at=now,
            updated_at=now,
            stakeholders=list(level.stakeholders),
            metadata={
                **data.metadata,
                "initial_evidence": data.initial_evidence,
                "auto_detected": bool(data.metadata.get("auto_detected", False)),
            },
        )
        self._entry(
            incident,
            data.reported_by,
            "INCIDENT_CREATED",
            f"Incident created: {data.title}",
            {"severity": data.severity.value, "category": data.category.value},
            now,
        )
        if commander_error:
            self._entry(incident, SYSTEM_ACTOR, "COMMANDER_ASSIGNMENT_FAILED", commander_error, now=now)

        async with self._lock(incident.id):
            self._commit(incident, now)
        logger.info(
            "Created incident %s (%s, %s) commander=%s.",
            incident.id, data.severity.value, data.category.value, commander,
        )

        for action_type in (category_cfg.auto_actions if category_cfg else []):
            try:
                await self._create_action(incident.id, action_type, None, True, SYSTEM_ACTOR)
            except Exception as exc:
                logger.exception("Automated action %s for %s failed.", action_type, incident.id)
                await self.add_timeline_entry(
                    incident.id, SYSTEM_ACTOR, "ACTION_FAILED",
                    f"Automated action {action_type} failed: {exc}",
                    {"action_type": action_type},
                )

        await self._notify(incident.id, CommunicationType.DECLARED)
        self._arm_escalation(incident, now)
        await self._self_log(incident.id, "Security Incident Created")

        return self._load(incident.id)

    # -------------------------------------------------------------------------
    # Update
    # -------------------------------------------------------------------------
    async def update_incident(
        self,
        incident_id: str,
        data: Union[IncidentUpdate, Dict[str, Any]],
        updated_by: str = SYSTEM_ACTOR,
    ) -> Incident:
        data = self._validate(IncidentUpdate, data, "incident update")

        status_changed = False
        first_resolution = False
        async with self._lock(incident_id):
            inc = self._working_copy(incident_id)
            now = self.clock()

            if data.status is not None and data.status != inc.status:
                old_status = inc.status
                if old_status == IncidentStatus.CLOSED:
                    raise ConflictError(f"Incident {incident_id} is closed")
                if data.status == IncidentStatus.CLOSED and inc.resolved_at is None:
                    raise ConflictError(f"Incident {incident_id} must be resolved before closing")

                inc.status = data.status
                status_changed = True
                self._entry(
                    inc, updated_by, "STATUS_CHANGED",
                    f"Status changed from {old_status.value} to {data.status.value}",
                    {"old_status": old_status.value, "new_status": data.status.value},
                    now,
                )

                if data.status == IncidentStatus.ACKNOWLEDGED and inc.acknowledged_at is None:
                    inc.acknowledged_at = now
                    inc.response_time = minutes_between(inc.created_at, now)

                if data.status == IncidentStatus.RESOLVED and inc.resolved_at is None:
                    inc.resolved_at = now
                    inc.resolution_time = minutes_between(inc.created_at, now)
                    first_resolution = True
                    self.scheduler.cancel(inc.id)

                if data.status == IncidentStatus.CLOSED and inc.closed_at is None:
                    inc.closed_at = now

            if data.assigned_to is not None and data.assigned_to != inc.assigned_to:
                inc.assigned_to = data.assigned_to
                self._entry(
                    inc, updated_by, "ASSIGNED",
                    f"Incident assigned to {data.assigned_to}",
                    {"assigned_to": data.assigned_to}, now,
                )

            if data.priority is not None and data.priority != inc.priority:
                inc.priority = data.priority
                self._entry(
                    inc, updated_by, "PRIORITY_CHANGED",
                    f"Priority changed to {data.priority}",
                    {"new_priority": data.priority}, now,
                )

            if data.progress:
                self._entry(inc, updated_by, "PROGRESS_UPDATE", data.progress, now=now)

            if data.resolution and data.resolution != inc.resolution:
                inc.resolution = data.resolution
                self._entry(
                    inc, updated_by, "RESOLUTION_ADDED",
                    f"Resolution documented: {data.resolution}", now=now,
                )

            if data.lessons_learned and data.lessons_learned != inc.lessons_learned:
                inc.lessons_learned = data.lessons_learned
                self._entry(inc, updated_by, "LESSONS_LEARNED_ADDED", "Lessons learned documented", now=now)

            if data.metadata:
                merged = {**inc.metadata, **data.metadata}
                if merged != inc.metadata:
                    inc.metadata = merged
                    self._entry(
                        inc, updated_by, "METADATA_UPDATED",
                        f"Metadata updated: {', '.join(sorted(data.metadata))}",
                        {"keys": sorted(data.metadata)}, now,
                    )

            self._commit(inc, now)

        if status_changed:
            await self._notify(incident_id, CommunicationType.STATUS_UPDATE, progress=data.progress)
        if first_resolution:
            await self._notify(incident_id, CommunicationType.RESOLUTION)
            await self._schedule_review(incident_id)

        return self._load(incident_id)

    async def add_timeline_entry(
        self,
        incident_id: str,
        actor: str,
        action: str,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> IncidentTimelineEntry:
        async with self._lock(incident_id):
            inc = self._working_copy(incident_id)
            now = self.clock()
            entry = self._entry(inc, actor, action, description, metadata, now)
            self._commit(inc, now)
            return entry

    # -------------------------------------------------------------------------
    # Actions
    # -------------------------------------------------------------------------
    async def execute_incident_action(
        self,
        incident_id: str,
        request: Union[IncidentActionRequest, Dict[str, Any]],
        actor: str = SYSTEM_ACTOR,
    ) -> IncidentAction:
        """
        With `action_id`: a human triggers an existing action. COMPLETED,
        IN_PROGRESS and CANCELLED actions come back unchanged; a FAILED one is
        retried as a new action record.

        Without: request an action by type. An already COMPLETED action of
        that type is returned as-is; otherwise a new one is created and runs
        immediately when automated and not confirmation-gated.
        """
        req = self._validate(IncidentActionRequest, request, "incident action")
        incident = self._load(incident_id)
        actor = req.assigned_to or actor

        if req.action_id:
            existing = self._find_action(incident, req.action_id)
            if existing.status == ActionStatus.FAILED:
                retry = await self._create_action(
                    incident_id, existing.action_type, req.assigned_to, False, actor,
                    {"retry_of": existing.id},
                )
                return await self._run_action(incident_id, retry.id, actor)
            if existing.status in TERMINAL_ACTION_STATUSES or existing.status == ActionStatus.IN_PROGRESS:
                return existing
            return await self._run_action(incident_id, existing.id, actor)

        for action in incident.actions:
            if action.action_type == req.action_type and action.status == ActionStatus.COMPLETED:
                return action

        return await self._create_action(
            incident_id, req.action_type, req.assigned_to, req.automated, actor
        )

    async def _create_action(
        self,
        incident_id: str,
        action_type: str,
        assigned_to: Optional[str],
        automated: bool,
        actor: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> IncidentAction:
        definition = self.config.actions.get(action_type)
        if definition is None:
            raise ValidationError(
                f"Unknown action type: {action_type}",
                {"action_type": action_type, "known": sorted(self.config.actions)},
            )

        async with self._lock(incident_id):
            inc = self._working_copy(incident_id)
            if inc.status == IncidentStatus.CLOSED:
                raise ConflictError(f"Incident {incident_id} is closed")
            now = self.clock()
            action = IncidentAction(
                id=str(uuid.uuid4()),
                incident_id=incident_id,
                action_type=action_type,
                description=definition.description,
                status=ActionStatus.PENDING,
                assigned_to=assigned_to,
                automated=automated,
                confirmation_required=definition.confirmation_required,
                created_at=now,
                metadata={"script": definition.script, **(metadata or {})},
            )
            inc.actions.append(action)
            self._entry(
                inc, assigned_to or actor, "ACTION_CREATED",
                f"{'Automated' if automated else 'Manual'} action created: {definition.description}",
                {"action_id": action.id, "action_type": action_type},
                now,
            )
            self._commit(inc, now)

        if automated and not definition.confirmation_required:
            return await self._run_action(incident_id, action.id, actor)
        return action

    async def _run_action(self, incident_id: str, action_id: str, actor: str) -> IncidentAction:
        async with self._lock(incident_id):
            inc = self._working_copy(incident_id)
            action = self._find_action(inc, action_id)
            if action.status != ActionStatus.PENDING:
                return action

            definition = self.config.actions[action.action_type]
            now = self.clock()
            action.status = ActionStatus.IN_PROGRESS
            action.started_at = now
            self._entry(
                inc, actor, "ACTION_STARTED", f"Action started: {definition.description}",
                {"action_id": action.id, "action_type": action.action_type}, now,
            )
            self._commit(inc, now)
            context = {
                "incident_id": inc.id,
                "severity": inc.severity.value,
                "category": inc.category.value,
                "affected_systems": list(inc.affected_systems),
                "actor": actor,
            }

        result: Optional[str] = None
        error: Optional[str] = None
        try:
            result = await call_with_timeout(
                lambda: self.runner.execute(action.action_type, definition, context),
                self.action_timeout,
                f"action {action.action_type}",
            )
        except Exception as exc:
            logger.warning("Action %s on %s failed: %s", action.action_type, incident_id, exc)
            error = f"{type(exc).__name__}: {exc}"

        async with self._lock(incident_id):
            inc = self._working_copy(incident_id)
            action = self._find_action(inc, action_id)
            now = self.clock()
            action.completed_at = now
            meta = {"action_id": action.id, "action_type": action.action_type}
            if error is None:
                action.status = ActionStatus.COMPLETED
                action.results = result
                self._entry(inc, actor, "ACTION_COMPLETED", f"Action completed: {definition.description}", meta, now)
            else:
                action.status = ActionStatus.FAILED
                action.results = error
                self._entry(inc, actor, "ACTION_FAILED", f"Action failed: {definition.description}: {error}", meta, now)
            self._commit(inc, now)
            return action

    # -------------------------------------------------------------------------
    # Communications
    # -------------------------------------------------------------------------
    async def send_incident_communication(
        self,
        incident_id: str,
        data: Union[IncidentCommunicationCreate, Dict[str, Any]],
    ) -> IncidentCommunication:
        data = self._validate(IncidentCommunicationCreate, data, "incident communication")

        async with self._lock(incident_id):
            inc = self._working_copy(incident_id)
            now = self.clock()
            comm = IncidentCommunication(
                id=str(uuid.uuid4()),
                incident_id=incident_id,
                type=data.type,
                message=data.message,
                recipients=data.recipients,
                channels=data.channels,
                priority=data.priority,
                sent_at=now,
                sent_by=data.sent_by,
                status=CommunicationStatus.PENDING,
            )
            inc.communications.append(comm)
            self._commit(inc, now)
            title = f"Incident Communication: {inc.title}"
            severity = "CRITICAL" if inc.severity == IncidentSeverity.P1_CRITICAL else "HIGH"

        errors: List[str] = []
        undelivered: List[str] = []
        delivered = 0
        for channel in data.channels:
            try:
                result = await self.notifier.send(channel.value, data.recipients, title, data.message, severity)
            except Exception as exc:
                logger.warning("Communication %s via %s failed: %s", comm.id, channel.value, exc)
                errors.append(f"{channel.value}: {exc}")
                continue
            if result.delivered:
                delivered += 1
            else:
                undelivered.append(f"{channel.value}: {result.detail or 'not delivered'}")

        async with self._lock(incident_id):
            inc = self._working_copy(incident_id)
            comm = next(c for c in inc.communications if c.id == comm.id)
            now = self.clock()
            meta = {"communication_id": comm.id, "type": comm.type.value}
            if errors:
                comm.status = CommunicationStatus.FAILED
                comm.error = "; ".join(errors)
                self._entry(
                    inc, data.sent_by, "COMMUNICATION_FAILED",
                    f"{comm.type.value} communication failed: {comm.error}", meta, now,
                )
            elif not delivered:
                # no channel delivered; status stays PENDING
                comm.error = "; ".join(undelivered)
                self._entry(
                    inc, data.sent_by, "COMMUNICATION_NOT_DELIVERED",
                    f"{comm.type.value} communication not delivered: {comm.error}", meta, now,
                )
            else:
                comm.status = CommunicationStatus.SENT
                self._entry(
                    inc, data.sent_by, "COMMUNICATION_SENT",
                    f"{comm.type.value} communication sent to {len(comm.recipients)} recipients",
                    meta, now,
                )
            self._commit(inc, now)
            return comm

    async def _notify(self, incident_id: str, kind: CommunicationType, **extra: Any) -> None:
        """Templated message to the incident's current stakeholders."""
        inc = self._load(incident_id)
        now = self.clock()
        values: Dict[str, Any] = {
            "title": inc.title,
            "severity": inc.severity.value,
            "description": inc.description,
            "status": inc.status.value,
            "commander": inc.incident_commander or "TBD",
            "next_update": (now + timedelta(hours=2)).isoformat(),
            "resolution": inc.resolution,
            "duration": f"{inc.resolution_time} minutes" if inc.resolution_time is not None else "",
            **extra,
        }
        subject, body = self.config.render(kind, values)

        try:
            await self.send_incident_communication(
                incident_id,
                IncidentCommunicationCreate(
                    type=kind,
                    message=f"{subject}\n\n{body}",
                    recipients=inc.stakeholders or ["security-team"],
                    priority=(
                        CommunicationPriority.URGENT
                        if inc.severity == IncidentSeverity.P1_CRITICAL
                        else CommunicationPriority.HIGH
                    ),
                    channels=[CommunicationChannel.EMAIL, CommunicationChannel.SLACK],
                    sent_by=SYSTEM_ACTOR,
                ),
            )
        except Exception:
            logger.exception("%s communication for %s could not be recorded.", kind.value, incident_id)

    # -------------------------------------------------------------------------
    # Escalation
    # -------------------------------------------------------------------------
    def _arm_escalation(self, incident: Incident, now: datetime) -> Optional[EscalationHandle]:
        level = self.config.level(incident.severity)
        if not level.auto_escalate or not incident.is_open or incident.escalated_at is not None:
            return None

        due_at = incident.created_at + timedelta(minutes=level.escalation_minutes)
        remaining_minutes = max(0.0, (due_at - now).total_seconds() / 60.0)
        return self.scheduler.schedule(
            incident.id, remaining_minutes * self.escalation_minute_seconds, due_at
        )

    async def _on_escalation_due(self, incident_id: str, generation: int) -> None:
        async with self._lock(incident_id):
            if not self.scheduler.claim(incident_id, generation):
                return
            inc = self._working_copy(incident_id)
            if not inc.is_open or inc.escalated_at is not None:
                return
            now = self.clock()
            level = self.config.level(inc.severity)
            reason = f"No resolution within {level.escalation_minutes} minutes"
            self._apply_escalation(inc, reason, SYSTEM_ACTOR, now)
            self._commit(inc, now)

        logger.warning("Incident %s auto-escalated: %s", incident_id, reason)
        await self._after_escalation(incident_id, reason)

    async def escalate_incident(
        self,
        incident_id: str,
        reason: Optional[str] = None,
        actor: str = SYSTEM_ACTOR,
    ) -> Incident:
        reason = reason or "No reason provided"
        async with self._lock(incident_id):
            inc = self._working_copy(incident_id)
            if not inc.is_open:
                raise ConflictError(f"Incident {incident_id} is {inc.status.value}")
            self.scheduler.cancel(incident_id)
            now = self.clock()
            self._apply_escalation(inc, f"Incident manually escalated. Reason: {reason}", actor, now)
            self._commit(inc, now)

        await self._after_escalation(incident_id, reason)
        return self._load(incident_id)

    def _apply_escalation(self, inc: Incident, description: str, actor: str, now: datetime) -> None:
        inc.escalated_at = inc.escalated_at or now
        inc.stakeholders = list(
            dict.fromkeys(inc.stakeholders + self.config.escalated_stakeholders(inc.severity))
        )
        self._entry(inc, actor, "INCIDENT_ESCALATED", description, {"stakeholders": inc.stakeholders}, now)

    async def _after_escalation(self, incident_id: str, reason: str) -> None:
        await self._notify(incident_id, CommunicationType.ESCALATION, reason=reason)
        await self._self_log(incident_id, "Security Incident Escalated")

    # -------------------------------------------------------------------------
    # Evidence / review
    # -------------------------------------------------------------------------
    async def add_evidence(
        self,
        incident_id: str,
        data: Union[IncidentEvidenceCreate, Dict[str, Any]],
    ) -> IncidentEvidence:
        data = self._validate(IncidentEvidenceCreate, data, "incident evidence")
        async with self._lock(incident_id):
            inc = self._working_copy(incident_id)
            if inc.status == IncidentStatus.CLOSED:
                raise ConflictError(f"Incident {incident_id} is closed")
            now = self.clock()
            evidence = IncidentEvidence(
                id=str(uuid.uuid4()),
                incident_id=incident_id,
                type=data.type,
                file_name=data.file_name,
                file_path=data.file_path,
                collected_by=data.collected_by,
                collected_at=now,
                hash=data.hash.lower(),
                chain_of_custody=[
                    CustodyTransfer(
                        transferred_to=data.collected_by,
                        transferred_at=now,
                        purpose="Initial collection",
                    )
                ],
                metadata=data.metadata,
            )
            inc.evidence.append(evidence)
            self._entry(
                inc, data.collected_by, "EVIDENCE_ADDED",
                f"Evidence added: {data.file_name} ({data.type.value})",
                {"evidence_id": evidence.id, "hash": evidence.hash}, now,
            )
            self._commit(inc, now)
            return evidence

    async def _schedule_review(self, incident_id: str) -> None:
        incident = self._load(incident_id)
        try:
            due = await call_with_timeout(
                lambda: self.reviews.schedule_review(incident),
                self.collaborator_timeout,
                "post-incident review",
            )
        except Exception as exc:
            logger.warning("Post-incident review for %s not scheduled: %s", incident_id, exc)
            await self.add_timeline_entry(
                incident_id, SYSTEM_ACTOR, "REVIEW_SCHEDULING_FAILED",
                f"Post-incident review could not be scheduled: {exc}",
            )
            return

        async with self._lock(incident_id):
            inc = self._working_copy(incident_id)
            now = self.clock()
            inc.metadata["post_incident_review_due"] = due.isoformat()
            self._entry(
                inc, SYSTEM_ACTOR, "POST_INCIDENT_REVIEW_SCHEDULED",
                f"Post-incident review due {due.date().isoformat()}",
                {"due": due.isoformat()}, now,
            )
            self._commit(inc, now)

    # -------------------------------------------------------------------------
    # SIEM self-log
    # -------------------------------------------------------------------------
    async def _self_log(self, incident_id: str, title: str) -> None:
        if self.ingest is None:
            return
        inc = self._load(incident_id)
        payload = {
            "event_type": "SECURITY_ALERT",
            "severity": "CRITICAL" if inc.severity == IncidentSeverity.P1_CRITICAL else "HIGH",
            "source": SELF_LOG_SOURCE,
            "title": f"{title}: {inc.title}",
            "description": f"{inc.severity.value} incident: {inc.description}",
            "user_id": inc.reported_by,
            "site_id": inc.site_id,
            "timestamp": self.clock(),
            "metadata": {
                "incident_id": inc.id,
                "category": inc.category.value,
                "incident_commander": inc.incident_commander,
                "affected_systems": inc.affected_systems,
            },
        }
        try:
            await self.ingest(payload)
        except Exception as exc:
            logger.exception("SIEM self-log for %s failed.", incident_id)
            await self.add_timeline_entry(
                incident_id, SYSTEM_ACTOR, "SIEM_LOG_FAILED", f"Security event log failed: {exc}"
            )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------
    def get_incident(self, incident_id: str) -> Incident:
        return self._load(incident_id)

    def list_incidents(
        self,
        filters: Union[IncidentFilters, Dict[str, Any], None] = None,
    ) -> List[Incident]:
        filters = self._validate(IncidentFilters, filters or {}, "incident filters")
        return self.repository.list(filters)

    def get_playbook(self, category: IncidentCategory) -> Playbook:
        cfg = self.config.category(category)
        if cfg is None or cfg.playbook is None:
            raise NotFoundError(f"No playbook for category {category.value}")
        return self.config.playbooks[cfg.playbook]

    # -------------------------------------------------------------------------
    # Startup / shutdown
    # -------------------------------------------------------------------------
    def reload_open_incidents(self) -> int:
        """
        Rebuild the open-incident map from storage and re-arm escalation
        timers; an overdue, not yet escalated incident fires right away.
        """
        now = self.clock()
        incidents = self.repository.list_open()
        self._open = {i.id: i for i in incidents}

        armed = sum(1 for i in incidents if self._arm_escalation(i, now) is not None)
        logger.info("Reloaded %d open incidents (%d escalation timers armed).", len(incidents), armed)
        return len(incidents)

    async def shutdown(self) -> None:
        await self.scheduler.shutdown()
