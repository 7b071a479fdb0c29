# backend/soc_response/api/v1/routes_rules.py

from typing import List

from fastapi import APIRouter, Depends, status

from soc_response.api.deps import get_engine
from soc_response.schemas.rules import AlertRule, AlertRuleCreate
from soc_response.services.engine import SecurityEngine

router = APIRouter(prefix="/rules", tags=["alert-rules"])


@router.post("", response_model=AlertRule, status_code=status.HTTP_201_CREATED)
def create_alert_rule(
    payload: AlertRuleCreate,
    engine: SecurityEngine = Depends(get_engine),
) -> AlertRule:
    return engine.create_alert_rule(payload)


@router.get("", response_model=List[AlertRule])
def list_rules(engine: SecurityEngine = Depends(get_engine)) -> List[AlertRule]:
    return engine.list_rules()
