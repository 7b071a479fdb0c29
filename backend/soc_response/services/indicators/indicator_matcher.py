# backend/soc_response/services/indicators/indicator_matcher.py
from typing import Callable, Dict, Iterable, List, Optional, Tuple
from datetime import datetime
import logging

from soc_response.schemas.correlation import IndicatorMatch
from soc_response.schemas.events import SecurityEvent
from soc_response.schemas.indicators import IndicatorType, ThreatIndicator

logger = logging.getLogger(__name__)

# (matched_field, candidate value) or None
Comparator = Callable[[ThreatIndicator, SecurityEvent], Optional[Tuple[str, str]]]


def _exact_ip(ind: ThreatIndicator, event: SecurityEvent) -> Optional[Tuple[str, str]]:
    if event.ip_address and event.ip_address == ind.value:
        return "ip_address", event.ip_address
    return None


def _user_agent_fragment(ind: ThreatIndicator, event: SecurityEvent) -> Optional[Tuple[str, str]]:
    if event.user_agent and ind.value in event.user_agent:
        return "user_agent", event.user_agent
    return None


def _domain_fragment(ind: ThreatIndicator, event: SecurityEvent) -> Optional[Tuple[str, str]]:
    for key in ("referrer", "domain"):
        candidate = event.metadata.get(key)
        if isinstance(candidate, str) and ind.value in candidate:
            return f"metadata.{key}", candidate
    return None


def _file_hash(ind: ThreatIndicator, event: SecurityEvent) -> Optional[Tuple[str, str]]:
    candidate = event.metadata.get("file_hash")
    if isinstance(candidate, str) and candidate.lower() == ind.value.lower():
        return "metadata.file_hash", candidate
    return None


COMPARATORS: Dict[IndicatorType, Comparator] = {
    IndicatorType.MALICIOUS_IP: _exact_ip,
    IndicatorType.SUSPICIOUS_USER_AGENT: _user_agent_fragment,
    IndicatorType.SUSPICIOUS_DOMAIN: _domain_fragment,
    IndicatorType.KNOWN_MALWARE: _file_hash,
}


class IndicatorMatcher:
    """
    Checks events against the live IOC set.

    The set is an immutable tuple replaced wholesale on every change, so a
    concurrent `match` always iterates one consistent snapshot.
    """

    def __init__(self, indicators: Iterable[ThreatIndicator] = ()) -> None:
        self._indicators: Tuple[ThreatIndicator, ...] = tuple(indicators)

    @property
    def indicators(self) -> Tuple[ThreatIndicator, ...]:
        return self._indicators

    def replace(self, indicators: Iterable[ThreatIndicator]) -> None:
        self._indicators = tuple(i for i in indicators if i.active)

    def add(self, indicator: ThreatIndicator) -> None:
        self._indicators = self._indicators + (indicator,)

    def sweep(self, now: datetime) -> List[str]:
        """Drop expired indicators from the snapshot; returns their ids."""
        current = self._indicators
        expired = [i.id for i in current if i.is_expired(now)]
        if expired:
            self._indicators = tuple(i for i in current if not i.is_expired(now))
            logger.info("Deactivated %d expired indicators.", len(expired))
        return expired

    def match(self, event: SecurityEvent, now: datetime) -> List[IndicatorMatch]:
        matches: List[IndicatorMatch] = []
        for indicator in self._indicators:
            if not indicator.active or indicator.is_expired(now):
                continue

            comparator = COMPARATORS.get(indicator.type)
            if comparator is None:
                continue

            hit = comparator(indicator, event)
            if hit is None:
                continue

            matched_field, matched_value = hit
            matches.append(
                IndicatorMatch(
                    indicator_id=indicator.id,
                    indicator_type=indicator.type.value,
                    severity=indicator.severity.value,
                    confidence=indicator.confidence,
                    matched_field=matched_field,
                    matched_value=matched_value,
                    event_id=event.id,
                )
            )
        return matches
