# backend/soc_response/schemas/rules.py
import re
from typing import Any, List, Optional
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    REGEX = "regex"


class RuleSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class RuleActionType(str, Enum):
    EMAIL = "EMAIL"
    WEBHOOK = "WEBHOOK"
    SLACK = "SLACK"
    SMS = "SMS"
    CREATE_INCIDENT = "CREATE_INCIDENT"


_FIELD_PATH = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z0-9_]+)*$")


class RuleCondition(BaseModel):
    """One (field, operator, literal) node; a rule ANDs its conditions."""
    field: str
    operator: ConditionOperator
    value: Any = None

    @field_validator("field")
    @classmethod
    def _check_field(cls, v: str) -> str:
        if not _FIELD_PATH.match(v):
            raise ValueError(f"invalid field path: {v!r}")
        return v

    @model_validator(mode="after")
    def _check_literal(self) -> "RuleCondition":
        if self.operator in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN):
            if isinstance(self.value, bool) or not isinstance(self.value, (int, float)):
                raise ValueError(f"{self.operator.value} needs a numeric value")
        elif self.operator in (ConditionOperator.CONTAINS, ConditionOperator.REGEX):
            if not isinstance(self.value, str):
                raise ValueError(f"{self.operator.value} needs a string value")
            if self.operator == ConditionOperator.REGEX:
                try:
                    re.compile(self.value)
                except re.error as exc:
                    raise ValueError(f"malformed regex {self.value!r}: {exc}")
        return self


class RuleAction(BaseModel):
    type: RuleActionType
    target: str
    template: Optional[str] = None


class AlertRuleCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    enabled: bool = True
    severity: RuleSeverity
    conditions: List[RuleCondition] = Field(..., min_length=1)
    time_window: int = Field(..., ge=60, le=86400, description="Seconds, 1 minute to 24 hours")
    threshold: int = Field(..., ge=1)
    actions: List[RuleAction] = Field(default_factory=list)
    suppression_time: Optional[int] = Field(
        None, ge=300, le=86400, description="Seconds, 5 minutes to 24 hours"
    )


class AlertRule(AlertRuleCreate):
    id: str
    trigger_count: int = 0
    last_triggered: Optional[datetime] = None
    created_at: Optional[datetime] = None
