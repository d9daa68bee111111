"""Actions that write CRM records through the entity store."""

from datetime import timedelta
from typing import Any, Dict

from ..core.condition_evaluator import get_field_value
from ..core.exceptions import ActionExecutionError
from ..core.logging import get_logger
from ..models.core import CreateActivityConfig, UpdateFieldConfig, WorkflowTriggerContext, utc_now
from ..storage.entity_store import EntityStore
from .base import WorkflowAction, entity_display_name, render_template
from .recipients import resolve_user

logger = get_logger(__name__)


class UpdateFieldAction(WorkflowAction):
    """Sets a field of the triggering record to a static or copied value."""

    def __init__(self, entity_store: EntityStore):
        self.entity_store = entity_store

    def execute(self, config: UpdateFieldConfig, entity_data: Dict[str, Any], context: WorkflowTriggerContext) -> None:
        if config.is_dynamic:
            if not config.dynamic_source_field:
                raise ActionExecutionError("Dynamic field update requires a source field", action_type="updateField")
            value = get_field_value(config.dynamic_source_field, entity_data)
        else:
            value = config.value

        changed = self.entity_store.update_fields(context.entity_type, context.entity_id, {config.field_name: value})
        if changed:
            logger.info(f"Updated {context.entity_type}/{context.entity_id} field '{config.field_name}'")
        else:
            logger.debug(f"Field '{config.field_name}' of {context.entity_type}/{context.entity_id} already up to date")


class CreateActivityAction(WorkflowAction):
    """Creates a task-like activity linked to the triggering record."""

    def __init__(self, entity_store: EntityStore):
        self.entity_store = entity_store

    def execute(self, config: CreateActivityConfig, entity_data: Dict[str, Any], context: WorkflowTriggerContext) -> None:
        assignee = resolve_user(
            config.assignee_type or "record_owner",
            config.assignee_id,
            entity_data,
            context,
            self.entity_store,
        )
        due_date = (utc_now() + timedelta(days=config.due_date_offset_days)).date()

        activity_id = self.entity_store.create_record(context.tenant_id, "Activity", {
            "subject": render_template(config.subject, entity_data),
            "type": config.type,
            "priority": config.priority,
            "status": "Assigned",
            "due_date": due_date.isoformat(),
            "owner_id": assignee,
            "assigned_to_id": assignee,
            "linked_entity_type": context.entity_type,
            "linked_entity_id": context.entity_id,
            "linked_entity_name": entity_display_name(context.entity_type, entity_data),
            "created_by_workflow_id": context.workflow_id,
        })
        logger.info(f"Created activity {activity_id} for {context.entity_type}/{context.entity_id}")
