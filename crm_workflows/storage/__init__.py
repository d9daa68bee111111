"""Database models and storage layer."""

from .database import Base, create_tables, drop_tables, session_scope
from .models import (
    WorkflowModel,
    WorkflowTemplateModel,
    ExecutionLogModel,
    ActionLogModel,
    EntityRecordModel,
    EmailTemplateModel,
    OutboundEmailModel,
    NotificationModel,
    SequenceEnrollmentModel,
)

__all__ = [
    "Base",
    "create_tables",
    "drop_tables",
    "session_scope",
    "WorkflowModel",
    "WorkflowTemplateModel",
    "ExecutionLogModel",
    "ActionLogModel",
    "EntityRecordModel",
    "EmailTemplateModel",
    "OutboundEmailModel",
    "NotificationModel",
    "SequenceEnrollmentModel",
]
