"""Actions that notify people or call external systems."""

import json
import uuid
from typing import Any, Dict, Optional

import requests
from sqlalchemy.orm import sessionmaker

from ..core.exceptions import ActionExecutionError
from ..core.logging import get_logger
from ..models.core import (
    FireWebhookConfig,
    SendEmailConfig,
    SendNotificationConfig,
    WorkflowTriggerContext,
)
from ..storage.database import session_scope
from ..storage.entity_store import EntityStore
from ..storage.models import EmailTemplateModel, NotificationModel, OutboundEmailModel
from .base import WorkflowAction, lookup_merge_field, render_template
from .recipients import resolve_user

logger = get_logger(__name__)


class SendNotificationAction(WorkflowAction):
    """Creates an in-app notification for the record owner, deal owner or a user."""

    def __init__(self, entity_store: Optional[EntityStore] = None, session_factory: Optional[sessionmaker] = None):
        self.entity_store = entity_store
        self.session_factory = session_factory

    def execute(self, config: SendNotificationConfig, entity_data: Dict[str, Any], context: WorkflowTriggerContext) -> None:
        user_id = resolve_user(config.recipient_type, config.recipient_id, entity_data, context, self.entity_store)
        if not user_id:
            logger.warning(
                f"No {config.recipient_type} recipient for {context.entity_type}/{context.entity_id}; "
                "notification not sent"
            )
            return

        with session_scope(self.session_factory) as db:
            db.add(NotificationModel(
                id=str(uuid.uuid4()),
                tenant_id=context.tenant_id,
                user_id=str(user_id),
                title=render_template(config.title, entity_data),
                message=render_template(config.message, entity_data) or None,
                entity_type=context.entity_type,
                entity_id=context.entity_id,
            ))
        logger.info(f"Notification queued for user {user_id}")


class SendEmailAction(WorkflowAction):
    """Renders a stored email template for the record and hands it to delivery."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory

    def execute(self, config: SendEmailConfig, entity_data: Dict[str, Any], context: WorkflowTriggerContext) -> None:
        with session_scope(self.session_factory) as db:
            template = (
                db.query(EmailTemplateModel)
                .filter(
                    EmailTemplateModel.id == config.email_template_id,
                    EmailTemplateModel.tenant_id == context.tenant_id,
                )
                .first()
            )
            if template is None:
                logger.warning(f"Email template {config.email_template_id} not found; email not sent")
                return

            recipient = lookup_merge_field(config.recipient_field, entity_data)
            if not recipient:
                logger.warning(
                    f"{context.entity_type}/{context.entity_id} has no value in '{config.recipient_field}'; "
                    "email not sent"
                )
                return

            db.add(OutboundEmailModel(
                id=str(uuid.uuid4()),
                tenant_id=context.tenant_id,
                template_id=template.id,
                recipient=str(recipient),
                subject=render_template(template.subject, entity_data),
                body=render_template(template.body, entity_data),
                entity_type=context.entity_type,
                entity_id=context.entity_id,
                workflow_id=context.workflow_id,
            ))
        logger.info(f"Email from template {config.email_template_id} queued for {recipient}")


class FireWebhookAction(WorkflowAction):
    """Posts the record (or a rendered payload template) to an HTTP endpoint."""

    def __init__(self, http: Optional[requests.Session] = None, default_timeout: float = 10.0):
        self.http = http or requests.Session()
        self.default_timeout = default_timeout

    def build_payload(self, config: FireWebhookConfig, entity_data: Dict[str, Any], context: WorkflowTriggerContext) -> str:
        if config.payload_template:
            return render_template(config.payload_template, entity_data)
        return json.dumps({
            "workflow_id": context.workflow_id,
            "tenant_id": context.tenant_id,
            "entity_type": context.entity_type,
            "entity_id": context.entity_id,
            "trigger_type": context.trigger_type,
            "event_type": context.event_type,
            "data": entity_data,
        }, default=str)

    def execute(self, config: FireWebhookConfig, entity_data: Dict[str, Any], context: WorkflowTriggerContext) -> None:
        headers = {"Content-Type": "application/json", **config.headers}
        payload = self.build_payload(config, entity_data, context)

        try:
            response = self.http.request(
                config.method,
                config.url,
                data=payload.encode("utf-8"),
                headers=headers,
                timeout=config.timeout_seconds or self.default_timeout,
            )
        except requests.RequestException as e:
            raise ActionExecutionError(f"Webhook request to {config.url} failed: {str(e)}", action_type="fireWebhook")

        if response.status_code >= 400:
            raise ActionExecutionError(
                f"Webhook {config.url} returned HTTP {response.status_code}",
                action_type="fireWebhook",
            )
        logger.info(f"Webhook {config.url} responded with HTTP {response.status_code}")
