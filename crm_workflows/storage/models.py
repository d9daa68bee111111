"""SQLAlchemy database models for the CRM workflow engine."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text
from sqlalchemy.orm import relationship

from ..models.core import utc_now
from .database import Base


class WorkflowModel(Base):
    """Database model for workflows."""
    __tablename__ = "workflows"

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text)
    entity_type = Column(String, nullable=False)
    definition = Column(JSON, nullable=False)  # Complete workflow definition
    trigger_summary = Column(JSON, nullable=False, default=list)  # e.g. ["RecordCreated", "DateBased:close_date"]
    status = Column(String, nullable=False, default="draft")  # draft, active, paused
    is_active = Column(Boolean, nullable=False, default=False)
    execution_count = Column(Integer, nullable=False, default=0)
    last_executed_at = Column(DateTime)
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    executions = relationship("ExecutionLogModel", back_populates="workflow", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_workflows_tenant_entity_active", "tenant_id", "entity_type", "status", "is_active"),
    )


class WorkflowTemplateModel(Base):
    """Reusable workflow definition; tenant_id is NULL for system templates."""
    __tablename__ = "workflow_templates"

    id = Column(String, primary_key=True)
    tenant_id = Column(String)
    name = Column(String, nullable=False)
    description = Column(Text)
    category = Column(String, nullable=False, default="custom")  # sales, engagement, operational, custom
    entity_type = Column(String, nullable=False)
    definition = Column(JSON, nullable=False)
    is_system = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utc_now)

    __table_args__ = (
        Index("idx_workflow_templates_tenant_category", "tenant_id", "category"),
    )


class ExecutionLogModel(Base):
    """Database model for workflow execution logs."""
    __tablename__ = "workflow_execution_logs"

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False)
    entity_id = Column(String, nullable=False)
    entity_type = Column(String, nullable=False)
    trigger_type = Column(String, nullable=False)
    trigger_event = Column(String, nullable=False)
    conditions_evaluated = Column(Boolean, nullable=False, default=False)
    conditions_passed = Column(Boolean, nullable=False, default=False)
    status = Column(String, nullable=False)  # succeeded, partiallyFailed, failed, skipped, waiting
    error_message = Column(Text)
    started_at = Column(DateTime, nullable=False, default=utc_now)
    completed_at = Column(DateTime)
    duration_ms = Column(Integer, nullable=False, default=0)

    workflow = relationship("WorkflowModel", back_populates="executions")
    action_logs = relationship(
        "ActionLogModel",
        back_populates="execution_log",
        cascade="all, delete-orphan",
        order_by="ActionLogModel.started_at",
    )

    __table_args__ = (
        Index("idx_execution_logs_workflow_started", "workflow_id", "started_at"),
        Index("idx_execution_logs_workflow_entity", "workflow_id", "entity_id", "trigger_type"),
    )


class ActionLogModel(Base):
    """Database model for executed actions of a workflow run."""
    __tablename__ = "workflow_action_logs"

    id = Column(String, primary_key=True)
    execution_log_id = Column(String, ForeignKey("workflow_execution_logs.id"), nullable=False)
    action_type = Column(String, nullable=False)
    action_node_id = Column(String, nullable=False)
    order = Column("action_order", Integer, nullable=False, default=0)
    status = Column(String, nullable=False)  # succeeded, failed
    error_message = Column(Text)
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=False)
    duration_ms = Column(Integer, nullable=False, default=0)

    execution_log = relationship("ExecutionLogModel", back_populates="action_logs")


class EntityRecordModel(Base):
    """Generic CRM record (contact, company, deal, lead, activity) with a JSON payload."""
    __tablename__ = "crm_records"

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False)
    entity_type = Column(String, nullable=False)
    data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index("idx_crm_records_tenant_type", "tenant_id", "entity_type"),
    )


class EmailTemplateModel(Base):
    """Email template with merge-field placeholders."""
    __tablename__ = "email_templates"

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    subject = Column(String, nullable=False)
    body = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utc_now)


class OutboundEmailModel(Base):
    """Email rendered by a workflow, handed to delivery."""
    __tablename__ = "outbound_emails"

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False)
    template_id = Column(String, nullable=False)
    recipient = Column(String, nullable=False)
    subject = Column(String, nullable=False)
    body = Column(Text, nullable=False)
    entity_type = Column(String)
    entity_id = Column(String)
    workflow_id = Column(String)
    created_at = Column(DateTime, default=utc_now)


class NotificationModel(Base):
    """In-app notification created by a workflow."""
    __tablename__ = "notifications"

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False)
    user_id = Column(String, nullable=False)
    title = Column(String, nullable=False)
    message = Column(Text)
    entity_type = Column(String)
    entity_id = Column(String)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utc_now)


class SequenceEnrollmentModel(Base):
    """Enrollment of a contact in an outreach sequence."""
    __tablename__ = "sequence_enrollments"

    id = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=False)
    sequence_id = Column(String, nullable=False)
    contact_id = Column(String, nullable=False)
    status = Column(String, nullable=False, default="active")
    current_step = Column(Integer, nullable=False, default=0)
    enrolled_by_workflow_id = Column(String)
    created_at = Column(DateTime, default=utc_now)

    __table_args__ = (
        Index("idx_sequence_enrollments_contact", "tenant_id", "sequence_id", "contact_id"),
    )
