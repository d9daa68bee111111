"""Base class and shared helpers for workflow actions."""

import abc
import re
from typing import Any, Dict, Optional

from ..core.condition_evaluator import get_field_value, to_comparable_string
from ..models.core import WorkflowTriggerContext

_MERGE_FIELD = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")


def lookup_merge_field(key: str, entity_data: Dict[str, Any]) -> Any:
    """Resolve a merge field, falling back to a case-insensitive key match."""
    value = get_field_value(key, entity_data)
    if value is not None:
        return value
    lowered = key.lower()
    for data_key, data_value in entity_data.items():
        if data_key.lower() == lowered:
            return data_value
    return None


def render_template(template: Optional[str], entity_data: Dict[str, Any]) -> str:
    """Replace ``{{field}}`` placeholders with snapshot values; unknown fields become empty."""
    if not template:
        return ""

    def replace(match: "re.Match[str]") -> str:
        value = to_comparable_string(lookup_merge_field(match.group(1), entity_data))
        return value if value is not None else ""

    return _MERGE_FIELD.sub(replace, template)


def entity_display_name(entity_type: str, entity_data: Dict[str, Any]) -> str:
    """Human readable name of a record for activity links and messages."""
    if entity_type in ("Contact", "Lead"):
        full_name = " ".join(
            str(part) for part in (entity_data.get("first_name"), entity_data.get("last_name")) if part
        )
        if full_name:
            return full_name
        fallback = entity_data.get("company_name") if entity_type == "Lead" else entity_data.get("email")
        if fallback:
            return str(fallback)
    elif entity_type == "Deal":
        name = entity_data.get("title") or entity_data.get("name")
        if name:
            return str(name)
    elif entity_type == "Activity":
        if entity_data.get("subject"):
            return str(entity_data["subject"])
    elif entity_data.get("name"):
        return str(entity_data["name"])
    return str(entity_data.get("id", ""))


class WorkflowAction(metaclass=abc.ABCMeta):
    """A side-effecting operation attached to an action node.

    Implementations raise on failure; the action executor turns exceptions
    into failed results.
    """

    @abc.abstractmethod
    def execute(self, config: Any, entity_data: Dict[str, Any], context: WorkflowTriggerContext) -> None:
        raise NotImplementedError
