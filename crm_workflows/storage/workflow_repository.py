"""Workflow store: workflow definitions, templates, run counters and execution history."""

from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from ..core.exceptions import StorageError
from ..core.logging import get_logger
from ..models.core import (
    ActionLog,
    ActionStatus,
    ExecutionLog,
    ExecutionStatus,
    Workflow,
    WorkflowDefinition,
    WorkflowStatus,
    WorkflowTemplate,
    utc_now,
)
from .database import get_session_factory
from .models import ActionLogModel, ExecutionLogModel, WorkflowModel, WorkflowTemplateModel

logger = get_logger(__name__)


class WorkflowRepository:
    """SQLAlchemy-backed persistence for workflows and their execution logs."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        """Initialize the repository with an optional session factory."""
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        factory = self._session_factory or get_session_factory()
        db = factory()
        try:
            yield db
        finally:
            db.close()

    # Conversion

    @staticmethod
    def _to_workflow(model: WorkflowModel) -> Workflow:
        return Workflow(
            id=model.id,
            tenant_id=model.tenant_id,
            name=model.name,
            description=model.description,
            entity_type=model.entity_type,
            definition=WorkflowDefinition.model_validate(model.definition or {}),
            trigger_summary=list(model.trigger_summary or []),
            status=WorkflowStatus(model.status),
            is_active=bool(model.is_active),
            execution_count=model.execution_count or 0,
            last_executed_at=model.last_executed_at,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    @staticmethod
    def _apply_workflow(model: WorkflowModel, workflow: Workflow) -> None:
        model.tenant_id = workflow.tenant_id
        model.name = workflow.name
        model.description = workflow.description
        model.entity_type = workflow.entity_type
        model.definition = workflow.definition.model_dump(mode="json")
        model.trigger_summary = list(workflow.trigger_summary)
        model.status = workflow.status.value
        model.is_active = workflow.is_active
        model.execution_count = workflow.execution_count
        model.last_executed_at = workflow.last_executed_at
        model.updated_at = workflow.updated_at

    @staticmethod
    def _to_execution_log(model: ExecutionLogModel) -> ExecutionLog:
        return ExecutionLog(
            id=model.id,
            tenant_id=model.tenant_id,
            workflow_id=model.workflow_id,
            entity_id=model.entity_id,
            entity_type=model.entity_type,
            trigger_type=model.trigger_type,
            trigger_event=model.trigger_event,
            conditions_evaluated=model.conditions_evaluated,
            conditions_passed=model.conditions_passed,
            status=ExecutionStatus(model.status),
            error_message=model.error_message,
            started_at=model.started_at,
            completed_at=model.completed_at,
            duration_ms=model.duration_ms or 0,
            action_logs=[
                ActionLog(
                    id=action.id,
                    action_type=action.action_type,
                    action_node_id=action.action_node_id,
                    order=action.order,
                    status=ActionStatus(action.status),
                    error_message=action.error_message,
                    started_at=action.started_at,
                    completed_at=action.completed_at,
                    duration_ms=action.duration_ms or 0,
                )
                for action in model.action_logs
            ],
        )

    # Workflows

    def get_active_workflows(self, tenant_id: str, entity_type: str) -> List[Workflow]:
        """Runnable workflows of a tenant listening to ``entity_type``."""
        try:
            with self._session() as db:
                models = (
                    db.query(WorkflowModel)
                    .filter(
                        WorkflowModel.tenant_id == tenant_id,
                        WorkflowModel.entity_type == entity_type,
                        WorkflowModel.status == WorkflowStatus.ACTIVE.value,
                        WorkflowModel.is_active.is_(True),
                    )
                    .order_by(WorkflowModel.created_at)
                    .all()
                )
                return [self._to_workflow(model) for model in models]
        except SQLAlchemyError as e:
            logger.error(f"Database error while loading active workflows: {str(e)}")
            raise StorageError(f"Failed to load active workflows: {str(e)}", operation="get_active_workflows")

    def get_active_workflows_with_date_triggers(self) -> List[Workflow]:
        """Runnable workflows of every tenant that carry at least one date trigger."""
        try:
            with self._session() as db:
                models = (
                    db.query(WorkflowModel)
                    .filter(
                        WorkflowModel.status == WorkflowStatus.ACTIVE.value,
                        WorkflowModel.is_active.is_(True),
                    )
                    .all()
                )
                return [
                    self._to_workflow(model)
                    for model in models
                    if any(label.startswith("DateBased:") for label in (model.trigger_summary or []))
                ]
        except SQLAlchemyError as e:
            logger.error(f"Database error while loading date-triggered workflows: {str(e)}")
            raise StorageError(
                f"Failed to load date-triggered workflows: {str(e)}",
                operation="get_active_workflows_with_date_triggers",
            )

    def get_by_id(self, workflow_id: str, tenant_id: Optional[str] = None) -> Optional[Workflow]:
        """Return the workflow, or None when it does not exist for the tenant."""
        try:
            with self._session() as db:
                query = db.query(WorkflowModel).filter(WorkflowModel.id == workflow_id)
                if tenant_id is not None:
                    query = query.filter(WorkflowModel.tenant_id == tenant_id)
                model = query.first()
                return self._to_workflow(model) if model else None
        except SQLAlchemyError as e:
            logger.error(f"Database error while retrieving workflow: {str(e)}")
            raise StorageError(f"Failed to retrieve workflow: {str(e)}", operation="get_by_id")

    def list_workflows(
        self,
        tenant_id: str,
        entity_type: Optional[str] = None,
        status: Optional[WorkflowStatus] = None,
    ) -> List[Workflow]:
        try:
            with self._session() as db:
                query = db.query(WorkflowModel).filter(WorkflowModel.tenant_id == tenant_id)
                if entity_type:
                    query = query.filter(WorkflowModel.entity_type == entity_type)
                if status:
                    query = query.filter(WorkflowModel.status == status.value)
                models = query.order_by(WorkflowModel.created_at.desc()).all()
                return [self._to_workflow(model) for model in models]
        except SQLAlchemyError as e:
            logger.error(f"Database error while listing workflows: {str(e)}")
            raise StorageError(f"Failed to list workflows: {str(e)}", operation="list_workflows")

    def create(self, workflow: Workflow) -> Workflow:
        try:
            with self._session() as db:
                model = WorkflowModel(id=workflow.id, created_at=workflow.created_at)
                self._apply_workflow(model, workflow)
                db.add(model)
                db.commit()
                return workflow
        except SQLAlchemyError as e:
            logger.error(f"Database error while creating workflow: {str(e)}")
            raise StorageError(f"Failed to store workflow: {str(e)}", operation="create", table="workflows")

    def update(self, workflow: Workflow) -> Workflow:
        try:
            with self._session() as db:
                model = db.query(WorkflowModel).filter(WorkflowModel.id == workflow.id).first()
                if model is None:
                    raise StorageError(f"Workflow with ID '{workflow.id}' not found", operation="update")
                self._apply_workflow(model, workflow)
                db.commit()
                return workflow
        except SQLAlchemyError as e:
            logger.error(f"Database error while updating workflow: {str(e)}")
            raise StorageError(f"Failed to update workflow: {str(e)}", operation="update", table="workflows")

    def delete(self, workflow_id: str, tenant_id: str) -> bool:
        """Delete a workflow and its execution history; False if it was not found."""
        try:
            with self._session() as db:
                model = (
                    db.query(WorkflowModel)
                    .filter(WorkflowModel.id == workflow_id, WorkflowModel.tenant_id == tenant_id)
                    .first()
                )
                if model is None:
                    return False
                db.delete(model)
                db.commit()
                return True
        except SQLAlchemyError as e:
            logger.error(f"Database error while deleting workflow: {str(e)}")
            raise StorageError(f"Failed to delete workflow: {str(e)}", operation="delete", table="workflows")

    def record_execution(self, workflow_id: str, executed_at: Optional[datetime] = None) -> None:
        """Bump the run counter and last execution time of a workflow."""
        try:
            with self._session() as db:
                db.execute(
                    update(WorkflowModel)
                    .where(WorkflowModel.id == workflow_id)
                    .values(
                        execution_count=WorkflowModel.execution_count + 1,
                        last_executed_at=executed_at or utc_now(),
                    )
                )
                db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Database error while recording execution: {str(e)}")
            raise StorageError(f"Failed to record execution: {str(e)}", operation="record_execution")

    # Templates

    @staticmethod
    def _to_template(model: WorkflowTemplateModel) -> WorkflowTemplate:
        return WorkflowTemplate(
            id=model.id,
            tenant_id=model.tenant_id,
            name=model.name,
            description=model.description,
            category=model.category,
            entity_type=model.entity_type,
            definition=WorkflowDefinition.model_validate(model.definition or {}),
            is_system=bool(model.is_system),
            created_at=model.created_at,
        )

    @staticmethod
    def _visible_to(tenant_id: str):
        return or_(WorkflowTemplateModel.is_system.is_(True), WorkflowTemplateModel.tenant_id == tenant_id)

    def list_templates(
        self,
        tenant_id: str,
        category: Optional[str] = None,
        entity_type: Optional[str] = None,
    ) -> List[WorkflowTemplate]:
        """System templates plus the tenant's own, system ones first, then by name."""
        try:
            with self._session() as db:
                query = db.query(WorkflowTemplateModel).filter(self._visible_to(tenant_id))
                if category:
                    query = query.filter(WorkflowTemplateModel.category == category)
                if entity_type:
                    query = query.filter(WorkflowTemplateModel.entity_type == entity_type)
                models = query.order_by(WorkflowTemplateModel.is_system.desc(), WorkflowTemplateModel.name).all()
                return [self._to_template(model) for model in models]
        except SQLAlchemyError as e:
            logger.error(f"Database error while listing workflow templates: {str(e)}")
            raise StorageError(f"Failed to list workflow templates: {str(e)}", operation="list_templates")

    def get_template(self, template_id: str, tenant_id: str) -> Optional[WorkflowTemplate]:
        try:
            with self._session() as db:
                model = (
                    db.query(WorkflowTemplateModel)
                    .filter(WorkflowTemplateModel.id == template_id, self._visible_to(tenant_id))
                    .first()
                )
                return self._to_template(model) if model else None
        except SQLAlchemyError as e:
            logger.error(f"Database error while retrieving workflow template: {str(e)}")
            raise StorageError(f"Failed to retrieve workflow template: {str(e)}", operation="get_template")

    def create_template(self, template: WorkflowTemplate) -> WorkflowTemplate:
        try:
            with self._session() as db:
                db.add(WorkflowTemplateModel(
                    id=template.id,
                    tenant_id=template.tenant_id,
                    name=template.name,
                    description=template.description,
                    category=template.category,
                    entity_type=template.entity_type,
                    definition=template.definition.model_dump(mode="json"),
                    is_system=template.is_system,
                    created_at=template.created_at,
                ))
                db.commit()
                return template
        except SQLAlchemyError as e:
            logger.error(f"Database error while creating workflow template: {str(e)}")
            raise StorageError(
                f"Failed to store workflow template: {str(e)}",
                operation="create_template",
                table="workflow_templates",
            )

    def delete_template(self, template_id: str, tenant_id: str) -> bool:
        """Delete one of the tenant's own templates; False if it was not found."""
        try:
            with self._session() as db:
                model = (
                    db.query(WorkflowTemplateModel)
                    .filter(
                        WorkflowTemplateModel.id == template_id,
                        WorkflowTemplateModel.tenant_id == tenant_id,
                        WorkflowTemplateModel.is_system.is_(False),
                    )
                    .first()
                )
                if model is None:
                    return False
                db.delete(model)
                db.commit()
                return True
        except SQLAlchemyError as e:
            logger.error(f"Database error while deleting workflow template: {str(e)}")
            raise StorageError(
                f"Failed to delete workflow template: {str(e)}",
                operation="delete_template",
                table="workflow_templates",
            )

    # Execution logs

    def save_execution_log(self, log: ExecutionLog) -> None:
        """Insert or update an execution log together with its action logs."""
        try:
            with self._session() as db:
                db.merge(ExecutionLogModel(
                    id=log.id,
                    tenant_id=log.tenant_id,
                    workflow_id=log.workflow_id,
                    entity_id=log.entity_id,
                    entity_type=log.entity_type,
                    trigger_type=log.trigger_type,
                    trigger_event=log.trigger_event,
                    conditions_evaluated=log.conditions_evaluated,
                    conditions_passed=log.conditions_passed,
                    status=(log.status or ExecutionStatus.FAILED).value,
                    error_message=log.error_message,
                    started_at=log.started_at,
                    completed_at=log.completed_at,
                    duration_ms=log.duration_ms,
                ))
                for action in log.action_logs:
                    db.merge(ActionLogModel(
                        id=action.id,
                        execution_log_id=log.id,
                        action_type=action.action_type,
                        action_node_id=action.action_node_id,
                        order=action.order,
                        status=action.status.value,
                        error_message=action.error_message,
                        started_at=action.started_at,
                        completed_at=action.completed_at,
                        duration_ms=action.duration_ms,
                    ))
                db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Database error while saving execution log: {str(e)}")
            raise StorageError(
                f"Failed to save execution log: {str(e)}",
                operation="save_execution_log",
                table="workflow_execution_logs",
            )

    def get_execution_log(self, execution_log_id: str, tenant_id: Optional[str] = None) -> Optional[ExecutionLog]:
        try:
            with self._session() as db:
                query = (
                    db.query(ExecutionLogModel)
                    .options(selectinload(ExecutionLogModel.action_logs))
                    .filter(ExecutionLogModel.id == execution_log_id)
                )
                if tenant_id is not None:
                    query = query.filter(ExecutionLogModel.tenant_id == tenant_id)
                model = query.first()
                return self._to_execution_log(model) if model else None
        except SQLAlchemyError as e:
            logger.error(f"Database error while retrieving execution log: {str(e)}")
            raise StorageError(f"Failed to retrieve execution log: {str(e)}", operation="get_execution_log")

    def list_execution_logs(
        self,
        tenant_id: str,
        workflow_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[ExecutionLog]:
        """Execution history of a tenant, newest first."""
        try:
            with self._session() as db:
                query = (
                    db.query(ExecutionLogModel)
                    .options(selectinload(ExecutionLogModel.action_logs))
                    .filter(ExecutionLogModel.tenant_id == tenant_id)
                )
                if workflow_id:
                    query = query.filter(ExecutionLogModel.workflow_id == workflow_id)
                if entity_id:
                    query = query.filter(ExecutionLogModel.entity_id == entity_id)
                if status:
                    query = query.filter(ExecutionLogModel.status == status.value)
                models = (
                    query.order_by(ExecutionLogModel.started_at.desc())
                    .offset(offset)
                    .limit(limit)
                    .all()
                )
                return [self._to_execution_log(model) for model in models]
        except SQLAlchemyError as e:
            logger.error(f"Database error while listing execution logs: {str(e)}")
            raise StorageError(f"Failed to list execution logs: {str(e)}", operation="list_execution_logs")

    def has_recent_execution(self, workflow_id: str, entity_id: str, trigger_type: str, since: datetime) -> bool:
        """True if the workflow already ran for the entity with this trigger type since ``since``."""
        try:
            with self._session() as db:
                return db.query(
                    db.query(ExecutionLogModel)
                    .filter(
                        ExecutionLogModel.workflow_id == workflow_id,
                        ExecutionLogModel.entity_id == entity_id,
                        ExecutionLogModel.trigger_type == trigger_type,
                        ExecutionLogModel.started_at >= since,
                    )
                    .exists()
                ).scalar()
        except SQLAlchemyError as e:
            logger.error(f"Database error while checking recent executions: {str(e)}")
            raise StorageError(f"Failed to check recent executions: {str(e)}", operation="has_recent_execution")
