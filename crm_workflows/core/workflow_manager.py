"""Workflow manager: authoring and lifecycle of workflow definitions and templates."""

from typing import Iterable, List, Optional

from ..models.core import (
    DEFAULT_TEMPLATE_CATEGORY,
    EntityField,
    NodeType,
    SaveAsTemplateRequest,
    ValidationResult,
    Workflow,
    WorkflowCreate,
    WorkflowDefinition,
    WorkflowStatus,
    WorkflowTemplate,
    WorkflowUpdate,
    utc_now,
)
from ..storage.workflow_repository import WorkflowRepository
from .entity_fields import standard_fields
from .exceptions import ProtectedResourceError, WorkflowNotFoundError, WorkflowValidationError
from .logging import get_logger
from .trigger_matcher import DEFAULT_ELIGIBLE_ENTITY_TYPES
from .workflow_cache import ActiveWorkflowCache

logger = get_logger(__name__)


class WorkflowManager:
    """Manages workflow definitions, validation, storage and activation.

    Every change invalidates the active workflow cache of the affected tenant
    so that the trigger matcher sees it on the next event.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        cache: Optional[ActiveWorkflowCache] = None,
        eligible_entity_types: Optional[Iterable[str]] = None,
    ):
        """Initialize WorkflowManager with its repository and the shared cache."""
        self.repository = repository
        self.cache = cache
        self.eligible_entity_types = frozenset(eligible_entity_types or DEFAULT_ELIGIBLE_ENTITY_TYPES)

    def create_workflow(self, tenant_id: str, request: WorkflowCreate) -> Workflow:
        """
        Create a new workflow in draft status.

        Args:
            tenant_id: Owning tenant
            request: Name, entity type and definition of the workflow

        Returns:
            Workflow: The stored workflow (active when ``request.activate`` is set)

        Raises:
            WorkflowValidationError: If the definition or entity type is invalid
            StorageError: If storage operation fails
        """
        logger.info(f"Creating workflow '{request.name}' for tenant {tenant_id}")
        self._check_entity_type(request.entity_type)
        self._check_definition(request.definition)

        workflow = Workflow(
            tenant_id=tenant_id,
            name=request.name,
            description=request.description,
            entity_type=request.entity_type,
            definition=request.definition,
            trigger_summary=request.definition.trigger_summary(),
            status=WorkflowStatus.DRAFT,
            is_active=False,
        )
        created = self.repository.create(workflow)
        self._invalidate(tenant_id, created.entity_type)
        logger.info(f"Created workflow '{created.name}' with ID: {created.id}")

        if request.activate:
            return self.activate_workflow(tenant_id, created.id)
        return created

    def get_workflow(self, tenant_id: str, workflow_id: str) -> Workflow:
        """
        Retrieve a workflow of a tenant.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist for the tenant
        """
        workflow = self.repository.get_by_id(workflow_id, tenant_id)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow with ID '{workflow_id}' not found", workflow_id=workflow_id)
        return workflow

    def list_workflows(
        self,
        tenant_id: str,
        entity_type: Optional[str] = None,
        status: Optional[WorkflowStatus] = None,
    ) -> List[Workflow]:
        return self.repository.list_workflows(tenant_id, entity_type, status)

    def update_workflow(self, tenant_id: str, workflow_id: str, request: WorkflowUpdate) -> Workflow:
        """
        Update name, description, entity type or definition of a workflow.

        The trigger summary is recomputed; an entity type change invalidates the
        cache of both the old and the new entity type.
        """
        workflow = self.get_workflow(tenant_id, workflow_id)
        previous_entity_type = workflow.entity_type

        changes = {}
        if request.name is not None:
            changes["name"] = request.name.strip()
        if request.description is not None:
            changes["description"] = request.description
        if request.entity_type is not None:
            self._check_entity_type(request.entity_type)
            changes["entity_type"] = request.entity_type
        if request.definition is not None:
            self._check_definition(request.definition)
            changes["definition"] = request.definition
            changes["trigger_summary"] = request.definition.trigger_summary()
        changes["updated_at"] = utc_now()

        updated = self.repository.update(workflow.model_copy(update=changes))
        self._invalidate(tenant_id, previous_entity_type)
        if updated.entity_type != previous_entity_type:
            self._invalidate(tenant_id, updated.entity_type)
        logger.info(f"Updated workflow {workflow_id}")
        return updated

    def delete_workflow(self, tenant_id: str, workflow_id: str) -> None:
        """
        Delete a workflow and its execution history.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist for the tenant
        """
        workflow = self.get_workflow(tenant_id, workflow_id)
        if not self.repository.delete(workflow_id, tenant_id):
            raise WorkflowNotFoundError(f"Workflow with ID '{workflow_id}' not found", workflow_id=workflow_id)
        self._invalidate(tenant_id, workflow.entity_type)
        logger.info(f"Deleted workflow {workflow_id}")

    def activate_workflow(self, tenant_id: str, workflow_id: str) -> Workflow:
        """
        Activate a workflow; it must have at least one trigger and one action.

        Raises:
            WorkflowValidationError: If the workflow cannot run
        """
        workflow = self.get_workflow(tenant_id, workflow_id)
        if not workflow.definition.triggers:
            raise WorkflowValidationError(
                "Workflow must have at least one trigger to activate.", workflow_id=workflow_id
            )
        if not workflow.definition.actions:
            raise WorkflowValidationError(
                "Workflow must have at least one action to activate.", workflow_id=workflow_id
            )
        updated = self._set_state(workflow, WorkflowStatus.ACTIVE, True)
        logger.info(f"Workflow activated: {workflow_id}")
        return updated

    def deactivate_workflow(self, tenant_id: str, workflow_id: str) -> Workflow:
        workflow = self.get_workflow(tenant_id, workflow_id)
        updated = self._set_state(workflow, WorkflowStatus.PAUSED, False)
        logger.info(f"Workflow deactivated: {workflow_id}")
        return updated

    def set_status(self, tenant_id: str, workflow_id: str, is_active: bool) -> Workflow:
        """Enable (active) or disable (paused) a workflow without activation checks."""
        workflow = self.get_workflow(tenant_id, workflow_id)
        status = WorkflowStatus.ACTIVE if is_active else WorkflowStatus.PAUSED
        updated = self._set_state(workflow, status, is_active)
        logger.info(f"Workflow status updated: {workflow_id} is_active={is_active}")
        return updated

    def duplicate_workflow(self, tenant_id: str, workflow_id: str) -> Workflow:
        """Copy a workflow as a new draft with reset run counters."""
        original = self.get_workflow(tenant_id, workflow_id)
        clone = Workflow(
            tenant_id=tenant_id,
            name=f"{original.name} (Copy)",
            description=original.description,
            entity_type=original.entity_type,
            definition=original.definition.model_copy(deep=True),
            trigger_summary=list(original.trigger_summary),
            status=WorkflowStatus.DRAFT,
            is_active=False,
        )
        created = self.repository.create(clone)
        self._invalidate(tenant_id, created.entity_type)
        logger.info(f"Workflow duplicated: {workflow_id} -> {created.id}")
        return created

    def validate_definition(self, definition: WorkflowDefinition) -> ValidationResult:
        """
        Validate an already parsed definition for problems that do not block saving.

        Args:
            definition: The definition to validate

        Returns:
            ValidationResult: Validation results with errors and warnings
        """
        result = definition.validate_structure()
        warnings = list(result.warnings)
        self._validate_unreachable_nodes(definition, warnings)
        return ValidationResult(is_valid=result.is_valid, errors=result.errors, warnings=warnings)

    # Templates

    def list_templates(
        self,
        tenant_id: str,
        category: Optional[str] = None,
        entity_type: Optional[str] = None,
    ) -> List[WorkflowTemplate]:
        return self.repository.list_templates(tenant_id, category, entity_type)

    def get_template(self, tenant_id: str, template_id: str) -> WorkflowTemplate:
        """
        Retrieve a system template or one of the tenant's own templates.

        Raises:
            WorkflowNotFoundError: If the template is not visible to the tenant
        """
        template = self.repository.get_template(template_id, tenant_id)
        if template is None:
            raise WorkflowNotFoundError(f"Workflow template with ID '{template_id}' not found")
        return template

    def save_as_template(
        self, tenant_id: str, workflow_id: str, request: SaveAsTemplateRequest
    ) -> WorkflowTemplate:
        """Store a copy of a workflow's definition as a custom template of the tenant."""
        workflow = self.get_workflow(tenant_id, workflow_id)
        template = WorkflowTemplate(
            tenant_id=tenant_id,
            name=request.name,
            description=request.description,
            category=request.category or DEFAULT_TEMPLATE_CATEGORY,
            entity_type=workflow.entity_type,
            definition=workflow.definition.model_copy(deep=True),
            is_system=False,
        )
        created = self.repository.create_template(template)
        logger.info(f"Saved workflow {workflow_id} as template {created.id} ({created.category})")
        return created

    def apply_template(self, tenant_id: str, template_id: str) -> Workflow:
        """Create an inactive draft workflow from a template."""
        template = self.get_template(tenant_id, template_id)
        workflow = self.create_workflow(
            tenant_id,
            WorkflowCreate(
                name=template.name,
                description=template.description,
                entity_type=template.entity_type,
                definition=template.definition.model_copy(deep=True),
            ),
        )
        logger.info(f"Applied template {template_id} as workflow {workflow.id}")
        return workflow

    def delete_template(self, tenant_id: str, template_id: str) -> None:
        """
        Delete one of the tenant's custom templates.

        Raises:
            WorkflowNotFoundError: If the template is not visible to the tenant
            ProtectedResourceError: If the template is a system template
        """
        template = self.get_template(tenant_id, template_id)
        if template.is_system:
            raise ProtectedResourceError("System templates cannot be deleted")
        if not self.repository.delete_template(template_id, tenant_id):
            raise WorkflowNotFoundError(f"Workflow template with ID '{template_id}' not found")
        logger.info(f"Deleted workflow template {template_id}")

    def get_entity_fields(self, entity_type: str) -> List[EntityField]:
        """Fields of an eligible entity type, for trigger and condition editors."""
        self._check_entity_type(entity_type)
        return standard_fields(entity_type)

    # Helpers

    def _set_state(self, workflow: Workflow, status: WorkflowStatus, is_active: bool) -> Workflow:
        updated = self.repository.update(
            workflow.model_copy(update={"status": status, "is_active": is_active, "updated_at": utc_now()})
        )
        self._invalidate(workflow.tenant_id, workflow.entity_type)
        return updated

    def _invalidate(self, tenant_id: str, entity_type: Optional[str] = None) -> None:
        if self.cache is not None:
            self.cache.invalidate(tenant_id, entity_type)

    def _check_entity_type(self, entity_type: str) -> None:
        if entity_type not in self.eligible_entity_types:
            raise WorkflowValidationError(
                f"Invalid entity type: {entity_type}. Must be one of: {', '.join(sorted(self.eligible_entity_types))}"
            )

    def _check_definition(self, definition: WorkflowDefinition) -> None:
        result = self.validate_definition(definition)
        if not result.is_valid:
            error_msg = f"Workflow validation failed: {'; '.join(result.errors)}"
            logger.error(error_msg)
            raise WorkflowValidationError(error_msg, validation_errors=result.errors)
        if result.warnings:
            logger.warning(f"Workflow validation warnings: {'; '.join(result.warnings)}")

    @staticmethod
    def _validate_unreachable_nodes(definition: WorkflowDefinition, warnings: List[str]) -> None:
        trigger_ids = [node.id for node in definition.trigger_nodes()]
        if not trigger_ids:
            return

        reachable = set()
        stack = list(trigger_ids)
        while stack:
            node_id = stack.pop()
            if node_id in reachable:
                continue
            reachable.add(node_id)
            stack.extend(definition.successors(node_id))

        unreachable = sorted(
            node.id for node in definition.nodes
            if node.id not in reachable and node.type != NodeType.TRIGGER.value
        )
        if unreachable:
            warnings.append(f"Nodes not reachable from any trigger: {', '.join(unreachable)}")
