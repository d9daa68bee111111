"""Workflow action implementations."""

from typing import Dict, Optional

from sqlalchemy.orm import sessionmaker

from ..models.core import ActionType
from ..storage.entity_store import EntityStore
from .base import WorkflowAction, entity_display_name, lookup_merge_field, render_template
from .messaging import FireWebhookAction, SendEmailAction, SendNotificationAction
from .records import CreateActivityAction, UpdateFieldAction
from .recipients import resolve_user
from .sequences import EnrollInSequenceAction


def build_default_actions(
    entity_store: EntityStore,
    session_factory: Optional[sessionmaker] = None,
    webhook_timeout_seconds: float = 10.0,
) -> Dict[str, WorkflowAction]:
    """Action implementations for every built-in action type."""
    return {
        ActionType.UPDATE_FIELD.value: UpdateFieldAction(entity_store),
        ActionType.SEND_NOTIFICATION.value: SendNotificationAction(entity_store, session_factory),
        ActionType.CREATE_ACTIVITY.value: CreateActivityAction(entity_store),
        ActionType.SEND_EMAIL.value: SendEmailAction(session_factory),
        ActionType.FIRE_WEBHOOK.value: FireWebhookAction(default_timeout=webhook_timeout_seconds),
        ActionType.ENROLL_IN_SEQUENCE.value: EnrollInSequenceAction(session_factory),
    }


__all__ = [
    "WorkflowAction",
    "UpdateFieldAction",
    "SendNotificationAction",
    "CreateActivityAction",
    "SendEmailAction",
    "FireWebhookAction",
    "EnrollInSequenceAction",
    "build_default_actions",
    "entity_display_name",
    "lookup_merge_field",
    "render_template",
    "resolve_user",
]
