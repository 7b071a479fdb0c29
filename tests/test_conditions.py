from soc_response.schemas.rules import ConditionOperator, RuleCondition
from soc_response.services.correlation.conditions import (
    column_equality_filters,
    evaluate_condition,
    resolve_field,
)


def test_equals_is_strict_about_booleans():
    assert evaluate_condition(False, ConditionOperator.EQUALS, False)
    assert not evaluate_condition(0, ConditionOperator.EQUALS, False)
    assert not evaluate_condition(True, ConditionOperator.EQUALS, 1)


def test_field_paths_and_aliases():
    doc = {"event_type": "AUTHENTICATION", "metadata": {"success": False, "geo": {"country": "DE"}}}
    assert resolve_field(doc, "eventType") == "AUTHENTICATION"
    assert resolve_field(doc, "metadata.geo.country") == "DE"
    assert resolve_field(doc, "metadata.missing.deeper") is None


def test_comparisons_need_numbers():
    assert evaluate_condition(85, ConditionOperator.GREATER_THAN, 80)
    assert not evaluate_condition("85", ConditionOperator.GREATER_THAN, 80)
    assert evaluate_condition("admin login", ConditionOperator.CONTAINS, "admin")


def test_only_plain_equalities_are_pushed_down():
    conditions = [
        RuleCondition(field="eventType", operator="equals", value="AUTHENTICATION"),
        RuleCondition(field="metadata.success", operator="equals", value=False),
        RuleCondition(field="threat_score", operator="greater_than", value=50),
    ]
    assert column_equality_filters(conditions) == {"event_type": "AUTHENTICATION"}
