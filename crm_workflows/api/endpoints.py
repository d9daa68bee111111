"""FastAPI REST endpoints for the CRM workflow engine."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from pydantic import BaseModel, Field

from ..core.date_trigger_scanner import DateTriggerScanner
from ..core.exceptions import (
    APIError,
    JobQueueError,
    ProtectedResourceError,
    WorkflowEngineError,
    WorkflowNotFoundError,
    WorkflowValidationError,
    create_error_response,
)
from ..core.logging import get_logger
from ..core.tenant import tenant_scope
from ..core.trigger_matcher import TriggerMatcher
from ..core.workflow_manager import WorkflowManager
from ..models.core import (
    EntityEvent,
    EntityField,
    EventType,
    ExecutionLog,
    ExecutionStatus,
    SaveAsTemplateRequest,
    ValidationResult,
    Workflow,
    WorkflowCreate,
    WorkflowDefinition,
    WorkflowStatus,
    WorkflowTemplate,
    WorkflowTemplateSummary,
    WorkflowUpdate,
)
from ..storage.entity_store import EntityStore
from ..storage.workflow_repository import WorkflowRepository

logger = get_logger(__name__)

# Create router
router = APIRouter(prefix="/api/v1", tags=["workflows"])

# Global instances (initialized by the application factory)
_workflow_manager: Optional[WorkflowManager] = None
_repository: Optional[WorkflowRepository] = None
_trigger_matcher: Optional[TriggerMatcher] = None
_date_scanner: Optional[DateTriggerScanner] = None
_entity_store: Optional[EntityStore] = None


def init_dependencies(
    workflow_manager: WorkflowManager,
    repository: WorkflowRepository,
    trigger_matcher: TriggerMatcher,
    date_scanner: DateTriggerScanner,
    entity_store: EntityStore,
):
    """Initialize the global dependencies."""
    global _workflow_manager, _repository, _trigger_matcher, _date_scanner, _entity_store
    _workflow_manager = workflow_manager
    _repository = repository
    _trigger_matcher = trigger_matcher
    _date_scanner = date_scanner
    _entity_store = entity_store


def _require(component, name: str):
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"{name} not initialized"
        )
    return component


def get_workflow_manager() -> WorkflowManager:
    """Dependency to get the workflow manager."""
    return _require(_workflow_manager, "Workflow manager")


def get_repository() -> WorkflowRepository:
    """Dependency to get the workflow repository."""
    return _require(_repository, "Workflow repository")


def get_trigger_matcher() -> TriggerMatcher:
    """Dependency to get the trigger matcher."""
    return _require(_trigger_matcher, "Trigger matcher")


def get_date_scanner() -> DateTriggerScanner:
    """Dependency to get the date trigger scanner."""
    return _require(_date_scanner, "Date trigger scanner")


def get_entity_store() -> EntityStore:
    """Dependency to get the entity store."""
    return _require(_entity_store, "Entity store")


def get_tenant_id(
    x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-ID"),
    tenant_id: Optional[str] = Query(None, description="Tenant identifier"),
) -> str:
    """Dependency resolving the calling tenant from the header or the query string."""
    resolved = (x_tenant_id or tenant_id or "").strip()
    if not resolved:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=create_error_response(APIError("Tenant is required", status_code=400))
        )
    return resolved


def _http_error(error: WorkflowEngineError) -> HTTPException:
    """Map an engine error to an HTTP error carrying the standard error body."""
    if isinstance(error, WorkflowValidationError):
        status_code = status.HTTP_400_BAD_REQUEST
    elif isinstance(error, WorkflowNotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, ProtectedResourceError):
        status_code = status.HTTP_403_FORBIDDEN
    elif isinstance(error, APIError):
        status_code = error.status_code
    elif isinstance(error, JobQueueError):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=status_code, detail=create_error_response(error))


def _internal_error(action: str, error: Exception) -> HTTPException:
    logger.error(f"Unexpected error while {action}: {str(error)}", exc_info=True)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "error": "InternalError",
            "message": f"An unexpected error occurred while {action}",
            "details": {"original_error": str(error)},
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
    )


# Request/Response models

class CreateWorkflowResponse(BaseModel):
    """Response model for workflow creation."""
    workflow: Workflow = Field(..., description="The created workflow")
    message: str = Field(..., description="Success message")
    validation_warnings: List[str] = Field(default_factory=list, description="Validation warnings")


class UpdateStatusRequest(BaseModel):
    """Request model for enabling or disabling a workflow."""
    is_active: bool = Field(..., description="Enable (active) or disable (paused) the workflow")


class ExecutionLogPage(BaseModel):
    """Page of execution logs, newest first."""
    items: List[ExecutionLog] = Field(default_factory=list)
    limit: int
    offset: int


class EntityEventRequest(BaseModel):
    """Lifecycle event of a record changed outside this service."""
    entity_type: str = Field(..., min_length=1)
    event_type: EventType
    entity_id: str = Field(..., min_length=1)
    changed_properties: Optional[Dict[str, Any]] = None
    old_property_values: Optional[Dict[str, Any]] = None


class EnqueueResponse(BaseModel):
    """Number of workflow executions enqueued by a request."""
    enqueued: int
    message: str


class RecordRequest(BaseModel):
    """Field values of a record to create or update."""
    data: Dict[str, Any] = Field(default_factory=dict)


class RecordResponse(BaseModel):
    """Snapshot of a record."""
    entity_type: str
    entity_id: str
    data: Dict[str, Any]


# Workflow endpoints

@router.post(
    "/workflows",
    response_model=CreateWorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a workflow",
    description="Create a workflow in draft status, optionally activating it right away"
)
async def create_workflow(
    request: WorkflowCreate,
    tenant_id: str = Depends(get_tenant_id),
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> CreateWorkflowResponse:
    """
    Create a new workflow.

    Args:
        request: Workflow name, entity type and definition
        tenant_id: Calling tenant
        workflow_manager: Workflow manager dependency

    Returns:
        Response containing the created workflow and any validation warnings

    Raises:
        HTTPException: If validation fails or creation encounters an error
    """
    try:
        validation_result = workflow_manager.validate_definition(request.definition)
        workflow = workflow_manager.create_workflow(tenant_id, request)
        return CreateWorkflowResponse(
            workflow=workflow,
            message=f"Workflow '{workflow.name}' created successfully",
            validation_warnings=validation_result.warnings
        )
    except WorkflowEngineError as e:
        logger.warning(f"Workflow engine error during workflow creation: {str(e)}")
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("creating the workflow", e)


@router.get(
    "/workflows",
    response_model=List[Workflow],
    summary="List workflows",
    description="List workflows of the tenant, optionally filtered by entity type and status"
)
async def list_workflows(
    entity_type: Optional[str] = Query(None),
    workflow_status: Optional[WorkflowStatus] = Query(None, alias="status"),
    tenant_id: str = Depends(get_tenant_id),
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> List[Workflow]:
    try:
        return workflow_manager.list_workflows(tenant_id, entity_type, workflow_status)
    except WorkflowEngineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("listing workflows", e)


@router.post(
    "/workflows/validate",
    response_model=ValidationResult,
    summary="Validate a workflow definition",
    description="Check a definition for problems without storing it"
)
async def validate_workflow(
    definition: WorkflowDefinition,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> ValidationResult:
    return workflow_manager.validate_definition(definition)


@router.get(
    "/workflows/entity-fields/{entity_type}",
    response_model=List[EntityField],
    summary="List the fields of an entity type",
    description="Fields available to triggers and conditions of workflows on the entity type"
)
async def get_entity_fields(
    entity_type: str,
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> List[EntityField]:
    try:
        return workflow_manager.get_entity_fields(entity_type)
    except WorkflowEngineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("listing entity fields", e)


@router.get(
    "/workflows/{workflow_id}",
    response_model=Workflow,
    summary="Get a workflow"
)
async def get_workflow(
    workflow_id: str,
    tenant_id: str = Depends(get_tenant_id),
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> Workflow:
    try:
        return workflow_manager.get_workflow(tenant_id, workflow_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("retrieving the workflow", e)


@router.put(
    "/workflows/{workflow_id}",
    response_model=Workflow,
    summary="Update a workflow",
    description="Update name, description, entity type or definition; omitted fields are unchanged"
)
async def update_workflow(
    workflow_id: str,
    request: WorkflowUpdate,
    tenant_id: str = Depends(get_tenant_id),
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> Workflow:
    try:
        return workflow_manager.update_workflow(tenant_id, workflow_id, request)
    except WorkflowEngineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("updating the workflow", e)


@router.delete(
    "/workflows/{workflow_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a workflow"
)
async def delete_workflow(
    workflow_id: str,
    tenant_id: str = Depends(get_tenant_id),
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
):
    try:
        workflow_manager.delete_workflow(tenant_id, workflow_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("deleting the workflow", e)


@router.post(
    "/workflows/{workflow_id}/activate",
    response_model=Workflow,
    summary="Activate a workflow",
    description="Activate a workflow that has at least one trigger and one action"
)
async def activate_workflow(
    workflow_id: str,
    tenant_id: str = Depends(get_tenant_id),
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> Workflow:
    try:
        return workflow_manager.activate_workflow(tenant_id, workflow_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("activating the workflow", e)


@router.post(
    "/workflows/{workflow_id}/deactivate",
    response_model=Workflow,
    summary="Deactivate a workflow"
)
async def deactivate_workflow(
    workflow_id: str,
    tenant_id: str = Depends(get_tenant_id),
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> Workflow:
    try:
        return workflow_manager.deactivate_workflow(tenant_id, workflow_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("deactivating the workflow", e)


@router.patch(
    "/workflows/{workflow_id}/status",
    response_model=Workflow,
    summary="Enable or disable a workflow"
)
async def update_workflow_status(
    workflow_id: str,
    request: UpdateStatusRequest,
    tenant_id: str = Depends(get_tenant_id),
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> Workflow:
    try:
        return workflow_manager.set_status(tenant_id, workflow_id, request.is_active)
    except WorkflowEngineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("updating the workflow status", e)


@router.post(
    "/workflows/{workflow_id}/duplicate",
    response_model=Workflow,
    status_code=status.HTTP_201_CREATED,
    summary="Duplicate a workflow",
    description="Copy a workflow as a new draft with reset run counters"
)
async def duplicate_workflow(
    workflow_id: str,
    tenant_id: str = Depends(get_tenant_id),
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> Workflow:
    try:
        return workflow_manager.duplicate_workflow(tenant_id, workflow_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("duplicating the workflow", e)


# Workflow templates

@router.get(
    "/workflow-templates",
    response_model=List[WorkflowTemplateSummary],
    summary="List workflow templates",
    description="System templates and the tenant's own templates, system templates first"
)
async def list_templates(
    category: Optional[str] = Query(None),
    entity_type: Optional[str] = Query(None),
    tenant_id: str = Depends(get_tenant_id),
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> List[WorkflowTemplateSummary]:
    try:
        templates = workflow_manager.list_templates(tenant_id, category, entity_type)
        return [WorkflowTemplateSummary.from_template(template) for template in templates]
    except WorkflowEngineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("listing workflow templates", e)


@router.get(
    "/workflow-templates/{template_id}",
    response_model=WorkflowTemplate,
    summary="Get a workflow template with its definition"
)
async def get_template(
    template_id: str,
    tenant_id: str = Depends(get_tenant_id),
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> WorkflowTemplate:
    try:
        return workflow_manager.get_template(tenant_id, template_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("retrieving the workflow template", e)


@router.post(
    "/workflow-templates/from-workflow/{workflow_id}",
    response_model=WorkflowTemplate,
    status_code=status.HTTP_201_CREATED,
    summary="Save a workflow as a template"
)
async def save_as_template(
    workflow_id: str,
    request: SaveAsTemplateRequest,
    tenant_id: str = Depends(get_tenant_id),
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> WorkflowTemplate:
    try:
        return workflow_manager.save_as_template(tenant_id, workflow_id, request)
    except WorkflowEngineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("saving the workflow as a template", e)


@router.post(
    "/workflow-templates/{template_id}/apply",
    response_model=Workflow,
    status_code=status.HTTP_201_CREATED,
    summary="Create a draft workflow from a template"
)
async def apply_template(
    template_id: str,
    tenant_id: str = Depends(get_tenant_id),
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
) -> Workflow:
    try:
        return workflow_manager.apply_template(tenant_id, template_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("applying the workflow template", e)


@router.delete(
    "/workflow-templates/{template_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a custom workflow template"
)
async def delete_template(
    template_id: str,
    tenant_id: str = Depends(get_tenant_id),
    workflow_manager: WorkflowManager = Depends(get_workflow_manager)
):
    try:
        workflow_manager.delete_template(tenant_id, template_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("deleting the workflow template", e)


# Execution history

@router.get(
    "/workflows/{workflow_id}/logs",
    response_model=ExecutionLogPage,
    summary="List execution logs of a workflow"
)
async def list_execution_logs(
    workflow_id: str,
    entity_id: Optional[str] = Query(None),
    log_status: Optional[ExecutionStatus] = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    tenant_id: str = Depends(get_tenant_id),
    workflow_manager: WorkflowManager = Depends(get_workflow_manager),
    repository: WorkflowRepository = Depends(get_repository)
) -> ExecutionLogPage:
    try:
        workflow_manager.get_workflow(tenant_id, workflow_id)
        logs = repository.list_execution_logs(
            tenant_id,
            workflow_id=workflow_id,
            entity_id=entity_id,
            status=log_status,
            limit=limit,
            offset=offset,
        )
        return ExecutionLogPage(items=logs, limit=limit, offset=offset)
    except WorkflowEngineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("listing execution logs", e)


@router.get(
    "/workflows/{workflow_id}/logs/{log_id}",
    response_model=ExecutionLog,
    summary="Get an execution log with its action logs"
)
async def get_execution_log(
    workflow_id: str,
    log_id: str,
    tenant_id: str = Depends(get_tenant_id),
    repository: WorkflowRepository = Depends(get_repository)
) -> ExecutionLog:
    try:
        log = repository.get_execution_log(log_id, tenant_id)
        if log is None or log.workflow_id != workflow_id:
            raise WorkflowNotFoundError(f"Execution log '{log_id}' not found", workflow_id=workflow_id)
        return log
    except WorkflowEngineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("retrieving the execution log", e)


# Event ingestion and scans

@router.post(
    "/events",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Ingest an entity lifecycle event",
    description="Match the event against active workflows and enqueue their executions"
)
async def ingest_event(
    request: EntityEventRequest,
    tenant_id: str = Depends(get_tenant_id),
    trigger_matcher: TriggerMatcher = Depends(get_trigger_matcher)
) -> EnqueueResponse:
    event = EntityEvent(
        entity_type=request.entity_type,
        event_type=request.event_type,
        entity_id=request.entity_id,
        tenant_id=tenant_id,
        changed_properties=request.changed_properties,
        old_property_values=request.old_property_values,
    )
    with tenant_scope(tenant_id):
        enqueued = trigger_matcher.on_entity_event(event)
    return EnqueueResponse(enqueued=enqueued, message=f"{enqueued} workflow execution(s) enqueued")


@router.post(
    "/date-scan/run",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Run the date trigger scan now"
)
async def run_date_scan(
    date_scanner: DateTriggerScanner = Depends(get_date_scanner)
) -> EnqueueResponse:
    try:
        enqueued = date_scanner.scan()
        return EnqueueResponse(enqueued=enqueued, message=f"{enqueued} workflow execution(s) enqueued")
    except WorkflowEngineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("running the date trigger scan", e)


# Records

@router.post(
    "/records/{entity_type}",
    response_model=RecordResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a record",
    description="Create a CRM record; matching workflows are triggered"
)
async def create_record(
    entity_type: str,
    request: RecordRequest,
    tenant_id: str = Depends(get_tenant_id),
    entity_store: EntityStore = Depends(get_entity_store)
) -> RecordResponse:
    try:
        with tenant_scope(tenant_id):
            entity_id = entity_store.create_record(tenant_id, entity_type, request.data)
        return RecordResponse(
            entity_type=entity_type,
            entity_id=entity_id,
            data=entity_store.load_entity_data(entity_type, entity_id) or {},
        )
    except WorkflowEngineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("creating the record", e)


@router.get(
    "/records/{entity_type}/{entity_id}",
    response_model=RecordResponse,
    summary="Get a record"
)
async def get_record(
    entity_type: str,
    entity_id: str,
    tenant_id: str = Depends(get_tenant_id),
    entity_store: EntityStore = Depends(get_entity_store)
) -> RecordResponse:
    data = entity_store.load_entity_data(entity_type, entity_id)
    if data is None or data.get("tenant_id") != tenant_id:
        raise _http_error(APIError(f"Record {entity_type}/{entity_id} not found", status_code=404))
    return RecordResponse(entity_type=entity_type, entity_id=entity_id, data=data)


@router.patch(
    "/records/{entity_type}/{entity_id}",
    response_model=RecordResponse,
    summary="Update record fields",
    description="Update fields of a CRM record; matching workflows are triggered"
)
async def update_record(
    entity_type: str,
    entity_id: str,
    request: RecordRequest,
    tenant_id: str = Depends(get_tenant_id),
    entity_store: EntityStore = Depends(get_entity_store)
) -> RecordResponse:
    if entity_store.get_tenant_id(entity_type, entity_id) != tenant_id:
        raise _http_error(APIError(f"Record {entity_type}/{entity_id} not found", status_code=404))
    try:
        with tenant_scope(tenant_id):
            entity_store.update_fields(entity_type, entity_id, request.data)
        return RecordResponse(
            entity_type=entity_type,
            entity_id=entity_id,
            data=entity_store.load_entity_data(entity_type, entity_id) or {},
        )
    except WorkflowEngineError as e:
        raise _http_error(e)
    except Exception as e:
        raise _internal_error("updating the record", e)


@router.delete(
    "/records/{entity_type}/{entity_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a record"
)
async def delete_record(
    entity_type: str,
    entity_id: str,
    tenant_id: str = Depends(get_tenant_id),
    entity_store: EntityStore = Depends(get_entity_store)
):
    if entity_store.get_tenant_id(entity_type, entity_id) != tenant_id:
        raise _http_error(APIError(f"Record {entity_type}/{entity_id} not found", status_code=404))
    with tenant_scope(tenant_id):
        entity_store.delete_record(entity_type, entity_id)
