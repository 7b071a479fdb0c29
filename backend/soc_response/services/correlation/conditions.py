# backend/soc_response/services/correlation/conditions.py
"""
Interpreter for alert-rule conditions.

A condition is a closed (field, operator, literal) triple; nothing a rule
author writes is ever executed as code. Field paths are dotted lookups into
the event document, e.g. ``metadata.success`` or ``event_type``.
"""
import re
from typing import Any, Iterable, Optional

from soc_response.schemas.events import SecurityEvent
from soc_response.schemas.rules import ConditionOperator, RuleCondition

# camelCase spellings accepted for top-level event fields
FIELD_ALIASES = {
    "eventType": "event_type",
    "userId": "user_id",
    "siteId": "site_id",
    "ipAddress": "ip_address",
    "userAgent": "user_agent",
    "sessionId": "session_id",
    "resourceId": "resource_id",
    "resourceType": "resource_type",
    "threatScore": "threat_score",
}

_MISSING = object()


def event_document(event: SecurityEvent) -> dict:
    """JSON-shaped view of an event that condition paths resolve against."""
    return event.model_dump(mode="json")


def resolve_field(doc: Any, path: str) -> Any:
    """Dotted lookup; returns None when any hop is missing or not a mapping."""
    parts = path.split(".")
    parts[0] = FIELD_ALIASES.get(parts[0], parts[0])

    value = doc
    for part in parts:
        if isinstance(value, dict):
            value = value.get(part, _MISSING)
            if value is _MISSING:
                return None
        else:
            return None
    return value


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def evaluate_condition(field_value: Any, operator: ConditionOperator, expected: Any) -> bool:
    if operator == ConditionOperator.EQUALS:
        # strict: True must not equal 1
        if isinstance(field_value, bool) or isinstance(expected, bool):
            return type(field_value) is type(expected) and field_value == expected
        return field_value == expected
    if operator == ConditionOperator.CONTAINS:
        return isinstance(field_value, str) and str(expected) in field_value
    if operator == ConditionOperator.GREATER_THAN:
        return _is_number(field_value) and field_value > expected
    if operator == ConditionOperator.LESS_THAN:
        return _is_number(field_value) and field_value < expected
    if operator == ConditionOperator.REGEX:
        # re.error propagates; the rule engine isolates it per rule
        return isinstance(field_value, str) and re.search(expected, field_value) is not None
    return False


def matches_all(conditions: Iterable[RuleCondition], doc: dict) -> bool:
    """AND semantics, short-circuiting on the first failing condition."""
    for condition in conditions:
        value = resolve_field(doc, condition.field)
        if not evaluate_condition(value, condition.operator, condition.value):
            return False
    return True


def column_equality_filters(conditions: Iterable[RuleCondition]) -> dict[str, Any]:
    """
    Equality conditions on plain top-level fields; the event store pushes
    these down into SQL before running the full interpreter.
    """
    out: dict[str, Any] = {}
    for condition in conditions:
        if condition.operator != ConditionOperator.EQUALS or "." in condition.field:
            continue
        name: Optional[str] = FIELD_ALIASES.get(condition.field, condition.field)
        if isinstance(condition.value, (str, int)) and not isinstance(condition.value, bool):
            out[name] = condition.value
    return out
