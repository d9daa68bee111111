"""Periodic scan that fires date-based workflow triggers."""

from datetime import datetime, time, timedelta
from typing import Callable, Optional

from ..models.core import DateBasedTrigger, Workflow, WorkflowTriggerContext, utc_now
from ..storage.entity_store import EntityStore
from ..storage.workflow_repository import WorkflowRepository
from .job_queue import JobDescriptor, JobQueue
from .logging import get_logger
from .tenant import tenant_scope

logger = get_logger(__name__)

SCAN_JOB_ID = "workflow-date-trigger-scan"
DATE_TRIGGER_TYPE = "DateBased"
DUPLICATE_WINDOW = timedelta(hours=1)
MINUTES_PER_DAY = 24 * 60


def within_preferred_window(now: datetime, preferred_time: Optional[time], window_minutes: int = 30) -> bool:
    """True if ``now`` is within ``window_minutes`` of ``preferred_time``, wrapping midnight."""
    if preferred_time is None:
        return True
    now_minutes = now.hour * 60 + now.minute + now.second / 60
    preferred_minutes = preferred_time.hour * 60 + preferred_time.minute + preferred_time.second / 60
    diff = abs(now_minutes - preferred_minutes)
    return min(diff, MINUTES_PER_DAY - diff) <= window_minutes


class DateTriggerScanner:
    """Enqueues runs for records whose date field is due according to a date trigger."""

    def __init__(
        self,
        repository: WorkflowRepository,
        entity_store: EntityStore,
        job_queue: JobQueue,
        clock: Optional[Callable[[], datetime]] = None,
        window_minutes: int = 30,
    ):
        self.repository = repository
        self.entity_store = entity_store
        self.job_queue = job_queue
        self._clock = clock or utc_now
        self.window_minutes = window_minutes

    def scan(self) -> int:
        """
        Scan every runnable workflow with a date trigger.

        Returns:
            Number of executions enqueued
        """
        logger.info("Starting date trigger scan")
        workflows = self.repository.get_active_workflows_with_date_triggers()
        if not workflows:
            logger.debug("No active workflows with date-based triggers found")
            return 0

        now = self._clock()
        enqueued = 0
        for workflow in workflows:
            with tenant_scope(workflow.tenant_id):
                for trigger in workflow.definition.date_triggers():
                    try:
                        enqueued += self._scan_trigger(workflow, trigger, now)
                    except Exception as e:
                        logger.error(
                            f"Error processing date trigger on {trigger.field_name} for workflow "
                            f"{workflow.id} ({workflow.name}): {str(e)}",
                            exc_info=True,
                        )

        logger.info(
            f"Date trigger scan completed. Processed {len(workflows)} workflows, enqueued {enqueued} executions"
        )
        return enqueued

    def _scan_trigger(self, workflow: Workflow, trigger: DateBasedTrigger, now: datetime) -> int:
        if not trigger.field_name or not trigger.field_name.strip():
            return 0
        if not within_preferred_window(now, trigger.preferred_time, self.window_minutes):
            logger.debug(f"Outside preferred time of workflow {workflow.id} trigger on {trigger.field_name}")
            return 0

        # A positive offset fires that many days before the date
        target_date = (now + timedelta(days=trigger.date_offset_days)).date()
        entity_ids = self.entity_store.find_entities_by_date(
            workflow.tenant_id, workflow.entity_type, trigger.field_name, target_date
        )

        since = now - DUPLICATE_WINDOW
        enqueued = 0
        for entity_id in entity_ids:
            if self.repository.has_recent_execution(workflow.id, entity_id, DATE_TRIGGER_TYPE, since):
                continue

            context = WorkflowTriggerContext(
                workflow_id=workflow.id,
                entity_id=entity_id,
                entity_type=workflow.entity_type,
                tenant_id=workflow.tenant_id,
                trigger_type=DATE_TRIGGER_TYPE,
                event_type=f"{DATE_TRIGGER_TYPE}:{trigger.field_name}",
                current_depth=0,
            )
            self.job_queue.enqueue(JobDescriptor.execute(context))
            enqueued += 1
            logger.debug(
                f"Date trigger fired: workflow {workflow.id}, entity {workflow.entity_type}/{entity_id}, "
                f"field {trigger.field_name}"
            )
        return enqueued
