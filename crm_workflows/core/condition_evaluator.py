"""Condition evaluation for workflow gating and branch nodes.

Condition groups combine with OR; conditions inside a group combine with AND.
An empty group list always passes.

Supported operators:
- equals / not_equals: case-insensitive string equality
- gt / gte / lt / lte: decimal comparison, false when either side is not a number
- contains: case-insensitive substring
- changed_to: field is in the change-set with the given new value
- changed_from_to: changed_to plus, when a from value is given, the old value
- is_null / is_not_null: missing value or empty string
"""

import json
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from ..models.core import WorkflowCondition, WorkflowConditionGroup
from .logging import get_logger

logger = get_logger(__name__)


def get_field_value(field: str, entity_data: Dict[str, Any]) -> Any:
    """Resolve ``field`` against an entity snapshot.

    A direct key wins; otherwise one level of dot notation is followed into a
    nested mapping (or a JSON object string). Unresolvable paths give None.

    Examples:
        >>> get_field_value("company.name", {"company": {"name": "Acme"}})
        'Acme'
    """
    if not field or not entity_data:
        return None

    if field in entity_data:
        return entity_data[field]

    parent_key, sep, child_key = field.partition(".")
    if not sep:
        return None

    parent = entity_data.get(parent_key)
    if isinstance(parent, str):
        try:
            parent = json.loads(parent)
        except ValueError:
            return None
    if isinstance(parent, dict):
        return parent.get(child_key)
    return None


def to_comparable_string(value: Any) -> Optional[str]:
    """Canonical string form used by every string-based operator."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def _equals(left: Optional[str], right: Optional[str]) -> bool:
    if left is None or right is None:
        return left is None and right is None
    return left.casefold() == right.casefold()


def _parse_decimal(value: Optional[str]) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        parsed = Decimal(value.strip())
    except (InvalidOperation, ValueError):
        return None
    return parsed if parsed.is_finite() else None


def _compare_numeric(left: Optional[str], right: Optional[str], operator: str) -> bool:
    left_value = _parse_decimal(left)
    right_value = _parse_decimal(right)
    if left_value is None or right_value is None:
        return False
    if operator == "gt":
        return left_value > right_value
    if operator == "gte":
        return left_value >= right_value
    if operator == "lt":
        return left_value < right_value
    return left_value <= right_value


def _changed_to(field: str, expected: Optional[str], changed_properties: Optional[Dict[str, Any]]) -> bool:
    if not changed_properties or field not in changed_properties:
        return False
    return _equals(to_comparable_string(changed_properties[field]), expected)


def _changed_from_to(
    field: str,
    from_value: Optional[str],
    to_value: Optional[str],
    changed_properties: Optional[Dict[str, Any]],
    old_property_values: Optional[Dict[str, Any]],
) -> bool:
    if not _changed_to(field, to_value, changed_properties):
        return False
    if from_value is None:
        return True
    if not old_property_values or field not in old_property_values:
        return False
    return _equals(to_comparable_string(old_property_values[field]), from_value)


class ConditionEvaluator:
    """Evaluates condition groups against an entity snapshot and its change-set."""

    def evaluate(
        self,
        condition_groups: Optional[List[WorkflowConditionGroup]],
        entity_data: Dict[str, Any],
        changed_properties: Optional[Dict[str, Any]] = None,
        old_property_values: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Evaluate condition groups.

        Args:
            condition_groups: Groups to evaluate; empty or None always passes
            entity_data: Current entity field values
            changed_properties: New values of changed fields, update events only
            old_property_values: Previous values of changed fields, update events only

        Returns:
            True if any group has all of its conditions true
        """
        if not condition_groups:
            return True

        return any(
            self._evaluate_group(group, entity_data, changed_properties, old_property_values)
            for group in condition_groups
        )

    def _evaluate_group(self, group, entity_data, changed_properties, old_property_values) -> bool:
        return all(
            self.evaluate_condition(condition, entity_data, changed_properties, old_property_values)
            for condition in group.conditions
        )

    def evaluate_condition(
        self,
        condition: WorkflowCondition,
        entity_data: Dict[str, Any],
        changed_properties: Optional[Dict[str, Any]] = None,
        old_property_values: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Evaluate one condition; any error makes it false."""
        try:
            field_value = get_field_value(condition.field, entity_data or {})
            field_str = to_comparable_string(field_value)
            target = condition.value
            operator = (condition.operator or "").strip().lower()

            if operator == "equals":
                return _equals(field_str, target)
            if operator == "not_equals":
                return not _equals(field_str, target)
            if operator in ("gt", "gte", "lt", "lte"):
                return _compare_numeric(field_str, target, operator)
            if operator == "contains":
                if field_str is None:
                    return False
                return (target or "").casefold() in field_str.casefold()
            if operator == "changed_to":
                return _changed_to(condition.field, target, changed_properties)
            if operator == "changed_from_to":
                return _changed_from_to(
                    condition.field, condition.from_value, target,
                    changed_properties, old_property_values,
                )
            if operator == "is_null":
                return field_str is None or field_str == ""
            if operator == "is_not_null":
                return field_str is not None and field_str != ""

            logger.debug(f"Unknown condition operator '{condition.operator}' on field '{condition.field}'")
            return False
        except Exception as e:
            logger.warning(
                f"Condition evaluation failed for field {condition.field} "
                f"operator {condition.operator}: {str(e)}"
            )
            return False
