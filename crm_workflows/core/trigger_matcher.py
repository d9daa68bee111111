"""Matches entity lifecycle events to active workflows and enqueues their runs."""

from typing import Iterable, Optional

from ..models.core import EntityEvent, Workflow, WorkflowTriggerContext, encode_properties
from ..storage.workflow_repository import WorkflowRepository
from .job_queue import JobDescriptor, JobQueue
from .logging import get_logger
from .loop_guard import LoopGuard
from .tenant import get_current_tenant
from .workflow_cache import ActiveWorkflowCache

logger = get_logger(__name__)

DEFAULT_ELIGIBLE_ENTITY_TYPES = ("Contact", "Company", "Deal", "Lead", "Activity")


def match_trigger_label(workflow: Workflow, event: EntityEvent) -> Optional[str]:
    """Label of the first trigger of ``workflow`` matching ``event``, or None."""
    for trigger in workflow.definition.triggers:
        if trigger.matches(event):
            return trigger.summary_label()
    return None


class TriggerMatcher:
    """Runs inline with entity writes, so it must be fast and must never raise."""

    def __init__(
        self,
        repository: WorkflowRepository,
        cache: ActiveWorkflowCache,
        job_queue: JobQueue,
        loop_guard: Optional[LoopGuard] = None,
        eligible_entity_types: Optional[Iterable[str]] = None,
    ):
        self.repository = repository
        self.cache = cache
        self.job_queue = job_queue
        self.loop_guard = loop_guard or LoopGuard()
        self.eligible_entity_types = frozenset(eligible_entity_types or DEFAULT_ELIGIBLE_ENTITY_TYPES)

    def __call__(self, event: EntityEvent) -> int:
        return self.on_entity_event(event)

    def on_entity_event(self, event: EntityEvent) -> int:
        """
        Enqueue an execution job for every active workflow whose triggers match.

        Args:
            event: Lifecycle event of a persisted entity change

        Returns:
            Number of jobs enqueued
        """
        if event.entity_type not in self.eligible_entity_types:
            return 0

        tenant_id = event.tenant_id or get_current_tenant()
        if not tenant_id:
            logger.debug(f"No tenant for {event.entity_type}/{event.entity_id} event; workflows not matched")
            return 0

        if not self.loop_guard.can_execute():
            logger.warning(
                f"Workflow loop guard blocked execution for tenant {tenant_id}, entity {event.entity_type}: "
                f"depth {self.loop_guard.current_depth} >= {self.loop_guard.max_depth}"
            )
            return 0

        try:
            workflows = self.cache.get_or_load(tenant_id, event.entity_type, self.repository.get_active_workflows)
        except Exception as e:
            logger.error(f"Failed to load active workflows for tenant {tenant_id}, {event.entity_type}: {str(e)}")
            return 0

        enqueued = 0
        for workflow in workflows:
            try:
                trigger_label = match_trigger_label(workflow, event)
                if trigger_label is None:
                    continue

                context = WorkflowTriggerContext(
                    workflow_id=workflow.id,
                    entity_id=event.entity_id,
                    entity_type=event.entity_type,
                    tenant_id=tenant_id,
                    trigger_type=trigger_label,
                    event_type=event.event_type.value,
                    changed_properties_json=encode_properties(event.changed_properties),
                    old_property_values_json=encode_properties(event.old_property_values),
                    current_depth=self.loop_guard.current_depth,
                )
                self.job_queue.enqueue(JobDescriptor.execute(context))
                enqueued += 1
                logger.debug(
                    f"Workflow job enqueued: workflow {workflow.id} ({workflow.name}), "
                    f"entity {event.entity_type}.{event.event_type.value}"
                )
            except Exception as e:
                logger.error(
                    f"Failed to enqueue workflow {workflow.id} for event "
                    f"{event.entity_type}.{event.event_type.value}: {str(e)}"
                )
        return enqueued

    def invalidate_cache(self, tenant_id: str, entity_type: Optional[str] = None) -> None:
        """Forget cached active workflows of a tenant."""
        self.cache.invalidate(tenant_id, entity_type)
