# backend/soc_response/services/correlation/correlation_engine.py
import asyncio
import bisect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from soc_response.schemas.correlation import PatternMatch
from soc_response.schemas.events import EventType, SecurityEvent

logger = logging.getLogger(__name__)

Detector = Callable[["CorrelationGroup"], Optional[PatternMatch]]


@dataclass
class CorrelationGroup:
    """Events sharing one correlation key, ordered by timestamp."""
    key: str
    events: List[SecurityEvent] = field(default_factory=list)

    def add(self, event: SecurityEvent) -> None:
        stamps = [e.timestamp for e in self.events]
        self.events.insert(bisect.bisect_right(stamps, event.timestamp), event)

    def prune(self, cutoff: datetime) -> int:
        before = len(self.events)
        self.events = [e for e in self.events if e.timestamp >= cutoff]
        return before - len(self.events)

    @property
    def newest(self) -> Optional[datetime]:
        return self.events[-1].timestamp if self.events else None


def correlation_key(event: SecurityEvent) -> str:
    """user > ip > resource > session, joined; falls back to the event type."""
    parts = []
    if event.user_id:
        parts.append(f"user:{event.user_id}")
    if event.ip_address:
        parts.append(f"ip:{event.ip_address}")
    if event.resource_id:
        parts.append(f"resource:{event.resource_id}")
    if event.session_id:
        parts.append(f"session:{event.session_id}")
    return "|".join(parts) or f"type:{event.event_type.value}"


def is_auth_success(event: SecurityEvent) -> bool:
    return bool(event.metadata.get("success"))


class CorrelationEngine:
    """
    Sliding-window pattern correlation.

    Every observed event lands in the group for its correlation key; the
    group is pruned to the window and all detectors run over what is left.

    Implemented detectors:
      1. Velocity: 5 events inside 60 seconds.
      2. Brute force then success: 3 failed authentications, then a success.
      3. Privilege escalation: 2+ administrative operations.
      4. Data exfiltration: 10+ data access / file operations.
    """

    # Time windows (in seconds)
    DEFAULT_WINDOW_SECONDS = 300
    VELOCITY_WINDOW_SECONDS = 60

    # Thresholds
    VELOCITY_THRESHOLD = 5
    BRUTEFORCE_FAILURES = 3
    PRIVILEGE_ESCALATION_THRESHOLD = 2
    EXFILTRATION_THRESHOLD = 10

    def __init__(self, window_seconds: int = DEFAULT_WINDOW_SECONDS) -> None:
        self.window = timedelta(seconds=window_seconds)
        self._groups: Dict[str, CorrelationGroup] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        # coroutines currently inside or queued for a key; prune() leaves those alone
        self._pending: Dict[str, int] = {}

        self.detectors: List[Detector] = [
            self._detect_velocity,
            self._detect_bruteforce_success,
            self._detect_privilege_escalation,
            self._detect_exfiltration,
        ]

    def register_detector(self, detector: Detector) -> None:
        self.detectors.append(detector)

    @property
    def group_count(self) -> int:
        return len(self._groups)

    def get_group(self, key: str) -> Optional[CorrelationGroup]:
        return self._groups.get(key)

    # -------------------------------------------------------------------------
    # Public entry point
    # -------------------------------------------------------------------------
    async def observe(self, event: SecurityEvent) -> List[PatternMatch]:
        key = correlation_key(event)
        self._pending[key] = self._pending.get(key, 0) + 1
        lock = self._locks.setdefault(key, asyncio.Lock())
        try:
            async with lock:
                group = self._groups.get(key)
                if group is None:
                    group = self._groups[key] = CorrelationGroup(key=key)

                group.add(event)
                group.prune(group.newest - self.window)

                return self._run_detectors(group)
        finally:
            self._pending[key] -= 1
            if self._pending[key] == 0:
                del self._pending[key]

    def prune(self, now: datetime) -> int:
        """
        Background hygiene: drop stale events and delete empty groups.
        Returns the number of groups removed.
        """
        cutoff = now - self.window
        removed = 0
        for key in list(self._groups):
            if self._pending.get(key):
                continue
            group = self._groups[key]
            group.prune(cutoff)
            if not group.events:
                del self._groups[key]
                self._locks.pop(key, None)
                removed += 1
        if removed:
            logger.debug("Correlation prune removed %d empty groups.", removed)
        return removed

    def _run_detectors(self, group: CorrelationGroup) -> List[PatternMatch]:
        matches: List[PatternMatch] = []
        if len(group.events) < 2:
            return matches

        for detector in self.detectors:
            try:
                match = detector(group)
            except Exception:
                logger.exception(
                    "Detector %s failed for group %s.",
                    getattr(detector, "__name__", detector), group.key,
                )
                continue
            if match is not None:
                matches.append(match)
        return matches

    @staticmethod
    def _match(
        kind: str,
        group: CorrelationGroup,
        events: List[SecurityEvent],
        severity: str,
        description: str,
        **metadata,
    ) -> PatternMatch:
        return PatternMatch(
            type=kind,
            correlation_key=group.key,
            severity=severity,
            description=description,
            event_ids=[e.id for e in events],
            detected_at=group.newest,
            metadata={"event_count": len(events), **metadata},
        )

    # -------------------------------------------------------------------------
    # Detector 1: Velocity
    # -------------------------------------------------------------------------
    def _detect_velocity(self, group: CorrelationGroup) -> Optional[PatternMatch]:
        if len(group.events) < self.VELOCITY_THRESHOLD:
            return None

        recent = group.events[-self.VELOCITY_THRESHOLD:]
        span = (recent[-1].timestamp - recent[0].timestamp).total_seconds()
        if span >= self.VELOCITY_WINDOW_SECONDS:
            return None

        return self._match(
            "VELOCITY_ATTACK",
            group,
            recent,
            "HIGH",
            f"Rapid succession of {len(recent)} events within {span:.0f}s "
            f"for {group.key}",
            span_seconds=span,
        )

    # -------------------------------------------------------------------------
    # Detector 2: Failed authentications followed by a success
    # -------------------------------------------------------------------------
    def _detect_bruteforce_success(self, group: CorrelationGroup) -> Optional[PatternMatch]:
        failures: List[SecurityEvent] = []
        for event in group.events:
            if event.event_type != EventType.AUTHENTICATION:
                continue
            if not is_auth_success(event):
                failures.append(event)
                continue
            if len(failures) >= self.BRUTEFORCE_FAILURES and event.timestamp > failures[-1].timestamp:
                payload = failures[-self.BRUTEFORCE_FAILURES:] + [event]
                return self._match(
                    "BRUTE_FORCE_SUCCESS",
                    group,
                    payload,
                    "CRITICAL",
                    "Potential brute force attack followed by successful "
                    f"authentication ({len(failures)} failures)",
                    failure_count=len(failures),
                )
        return None

    # -------------------------------------------------------------------------
    # Detector 3: Privilege escalation sequence
    # -------------------------------------------------------------------------
    def _detect_privilege_escalation(self, group: CorrelationGroup) -> Optional[PatternMatch]:
        admin = [e for e in group.events if e.event_type == EventType.ADMIN_OPERATION]
        if len(admin) < self.PRIVILEGE_ESCALATION_THRESHOLD:
            return None
        return self._match(
            "PRIVILEGE_ESCALATION",
            group,
            admin,
            "HIGH",
            f"Multiple administrative operations detected ({len(admin)})",
        )

    # -------------------------------------------------------------------------
    # Detector 4: Data exfiltration indicators
    # -------------------------------------------------------------------------
    def _detect_exfiltration(self, group: CorrelationGroup) -> Optional[PatternMatch]:
        data_events = [
            e for e in group.events
            if e.event_type in (EventType.DATA_ACCESS, EventType.FILE_OPERATION)
        ]
        if len(data_events) < self.EXFILTRATION_THRESHOLD:
            return None
        return self._match(
            "DATA_EXFILTRATION",
            group,
            data_events[-self.EXFILTRATION_THRESHOLD:],
            "CRITICAL",
            f"Potential data exfiltration: {len(data_events)} data access events",
            total_data_events=len(data_events),
        )
