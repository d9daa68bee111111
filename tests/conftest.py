"""Pytest configuration and fixtures."""

from typing import Any, Dict, List, Optional, Union

import pytest
from sqlalchemy.orm import sessionmaker

from crm_workflows.actions import CreateActivityAction, UpdateFieldAction
from crm_workflows.core.action_executor import ActionExecutor
from crm_workflows.core.error_recovery import RetryConfig
from crm_workflows.core.exceptions import ActionExecutionError
from crm_workflows.core.execution_engine import ExecutionEngine
from crm_workflows.core.job_queue import InMemoryJobQueue, JobDispatcher
from crm_workflows.core.loop_guard import LoopGuard
from crm_workflows.core.trigger_matcher import TriggerMatcher
from crm_workflows.core.workflow_cache import ActiveWorkflowCache
from crm_workflows.models.core import (
    Workflow,
    WorkflowDefinition,
    WorkflowStatus,
    WorkflowTriggerContext,
)
from crm_workflows.storage.database import (
    build_engine,
    create_tables,
    drop_tables,
    reset_database_engine,
)
from crm_workflows.storage.entity_store import InMemoryEntityStore
from crm_workflows.storage.workflow_repository import WorkflowRepository

TENANT = "tenant-1"
OTHER_TENANT = "tenant-2"


class RecordingAction:
    """Test action that remembers every call."""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []

    def execute(self, config, entity_data, context):
        self.calls.append({"config": config, "entity_data": entity_data, "context": context})

    @property
    def titles(self) -> List[str]:
        return [call["config"].title for call in self.calls]


class FailingAction:
    """Test action that always fails."""

    def __init__(self, message: str = "Action failed"):
        self.message = message
        self.calls = 0

    def execute(self, config, entity_data, context):
        self.calls += 1
        raise ActionExecutionError(self.message)


@pytest.fixture
def session_factory():
    """Create an isolated in-memory database with all tables."""
    engine = build_engine("sqlite:///:memory:")
    create_tables(engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    drop_tables(engine)
    engine.dispose()


@pytest.fixture
def repository(session_factory):
    return WorkflowRepository(session_factory)


@pytest.fixture
def entity_store():
    return InMemoryEntityStore()


@pytest.fixture
def job_queue():
    return InMemoryJobQueue()


@pytest.fixture
def loop_guard():
    return LoopGuard(max_depth=5)


@pytest.fixture
def cache():
    return ActiveWorkflowCache(ttl_seconds=60)


@pytest.fixture
def recorder():
    """Recording stand-in for the sendNotification action."""
    return RecordingAction()


@pytest.fixture
def failing_action():
    return FailingAction()


@pytest.fixture
def action_executor(entity_store, recorder):
    """Executor with the record-writing actions and a recording notification action."""
    return ActionExecutor({
        "updateField": UpdateFieldAction(entity_store),
        "createActivity": CreateActivityAction(entity_store),
        "sendNotification": recorder,
    })


@pytest.fixture
def engine(repository, entity_store, action_executor, job_queue, loop_guard):
    """Execution engine wired to the in-memory job queue."""
    execution_engine = ExecutionEngine(
        repository=repository,
        entity_store=entity_store,
        action_executor=action_executor,
        job_queue=job_queue,
        loop_guard=loop_guard,
    )
    job_queue.set_handler(JobDispatcher(execution_engine, RetryConfig.for_jobs(0, 0.0)))
    return execution_engine


@pytest.fixture
def matcher(repository, cache, job_queue, loop_guard, entity_store):
    """Trigger matcher subscribed to the entity store."""
    trigger_matcher = TriggerMatcher(repository, cache, job_queue, loop_guard)
    entity_store.subscribe(trigger_matcher)
    return trigger_matcher


@pytest.fixture
def create_workflow(repository):
    """Factory storing a workflow built from a definition mapping."""

    def _create(
        definition: Union[Dict[str, Any], WorkflowDefinition],
        tenant_id: str = TENANT,
        entity_type: str = "Contact",
        active: bool = True,
        name: str = "Test workflow",
    ) -> Workflow:
        if not isinstance(definition, WorkflowDefinition):
            definition = WorkflowDefinition.model_validate(definition)
        workflow = Workflow(
            tenant_id=tenant_id,
            name=name,
            entity_type=entity_type,
            definition=definition,
            trigger_summary=definition.trigger_summary(),
            status=WorkflowStatus.ACTIVE if active else WorkflowStatus.DRAFT,
            is_active=active,
        )
        return repository.create(workflow)

    return _create


def make_context(
    workflow: Workflow,
    entity_id: str,
    trigger_type: str = "RecordCreated",
    event_type: str = "Created",
    changed_properties: Optional[str] = None,
    old_property_values: Optional[str] = None,
    depth: int = 0,
) -> WorkflowTriggerContext:
    return WorkflowTriggerContext(
        workflow_id=workflow.id,
        entity_id=entity_id,
        entity_type=workflow.entity_type,
        tenant_id=workflow.tenant_id,
        trigger_type=trigger_type,
        event_type=event_type,
        changed_properties_json=changed_properties,
        old_property_values_json=old_property_values,
        current_depth=depth,
    )


@pytest.fixture
def context_for():
    """Build a trigger context for a stored workflow."""
    return make_context


@pytest.fixture
def client():
    """Create a test client running the full application lifespan."""
    from fastapi.testclient import TestClient

    from crm_workflows.config import get_testing_config
    from crm_workflows.factory import create_app

    app = create_app(get_testing_config())
    with TestClient(app) as test_client:
        yield test_client
    reset_database_engine()
