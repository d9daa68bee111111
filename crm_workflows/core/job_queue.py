"""Job queue abstractions for background workflow execution.

Jobs are serialized to JSON before they enter any queue so that nothing but
plain data crosses the boundary between the producer and the worker.
"""

import abc
import threading
import uuid
from collections import deque
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Deque, List, Optional, Tuple

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.jobstores.base import JobLookupError
from pydantic import BaseModel, Field, ValidationError

from ..models.core import WorkflowTriggerContext
from .error_recovery import RetryConfig, execute_with_retry
from .exceptions import JobQueueError
from .logging import get_logger

logger = get_logger(__name__)


class JobType(str, Enum):
    EXECUTE = "execute"
    CONTINUE = "continue"


class JobDescriptor(BaseModel):
    """A unit of background work for the execution engine."""
    job_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    job_type: JobType
    context: WorkflowTriggerContext
    execution_log_id: Optional[str] = None
    node_id: Optional[str] = None

    @classmethod
    def execute(cls, context: WorkflowTriggerContext) -> "JobDescriptor":
        return cls(job_type=JobType.EXECUTE, context=context)

    @classmethod
    def continue_from(cls, context: WorkflowTriggerContext, execution_log_id: str, node_id: str) -> "JobDescriptor":
        return cls(
            job_type=JobType.CONTINUE,
            context=context,
            execution_log_id=execution_log_id,
            node_id=node_id,
        )

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, payload: str) -> "JobDescriptor":
        try:
            return cls.model_validate_json(payload)
        except ValidationError as e:
            raise JobQueueError(f"Invalid job payload: {str(e)}")


JobHandler = Callable[[JobDescriptor], None]


class JobQueue(metaclass=abc.ABCMeta):
    """Enqueue-now and enqueue-after-delay primitives with at-least-once delivery."""

    def __init__(self) -> None:
        self._handler: Optional[JobHandler] = None

    def set_handler(self, handler: JobHandler) -> None:
        """Register the callable that processes dequeued jobs."""
        self._handler = handler

    def _handle(self, payload: str) -> None:
        if self._handler is None:
            raise JobQueueError("No job handler registered")
        self._handler(JobDescriptor.from_json(payload))

    @abc.abstractmethod
    def enqueue(self, job: JobDescriptor) -> None:
        """Queue a job for immediate processing."""
        raise NotImplementedError

    @abc.abstractmethod
    def schedule(self, job: JobDescriptor, delay: timedelta) -> None:
        """Queue a job for processing after ``delay``."""
        raise NotImplementedError

    def start(self) -> None:
        """Start processing (no-op by default)."""
        pass

    def shutdown(self) -> None:
        """Stop processing (no-op by default)."""
        pass


class InMemoryJobQueue(JobQueue):
    """In-process queue that only runs jobs when asked to; used by tests and scripts."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        super().__init__()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._pending: Deque[str] = deque()
        self._scheduled: List[Tuple[datetime, str]] = []
        self.failed: List[Tuple[str, Exception]] = []
        self._lock = threading.Lock()

    def enqueue(self, job: JobDescriptor) -> None:
        with self._lock:
            self._pending.append(job.to_json())

    def schedule(self, job: JobDescriptor, delay: timedelta) -> None:
        with self._lock:
            self._scheduled.append((self._clock() + delay, job.to_json()))

    @property
    def pending_jobs(self) -> List[JobDescriptor]:
        with self._lock:
            return [JobDescriptor.from_json(payload) for payload in self._pending]

    @property
    def scheduled_jobs(self) -> List[Tuple[datetime, JobDescriptor]]:
        with self._lock:
            return [(due, JobDescriptor.from_json(payload)) for due, payload in self._scheduled]

    def release_scheduled(self, until: Optional[datetime] = None) -> int:
        """Move scheduled jobs due by ``until`` (all when None) to the pending queue."""
        with self._lock:
            due = [item for item in self._scheduled if until is None or item[0] <= until]
            self._scheduled = [item for item in self._scheduled if item not in due]
            for _, payload in sorted(due, key=lambda item: item[0]):
                self._pending.append(payload)
        return len(due)

    def run_pending(self, max_jobs: int = 1000) -> int:
        """Process pending jobs, including ones enqueued while running; returns the count."""
        processed = 0
        while processed < max_jobs:
            with self._lock:
                if not self._pending:
                    break
                payload = self._pending.popleft()
            processed += 1
            try:
                self._handle(payload)
            except Exception as e:
                logger.error(f"Job failed permanently: {str(e)}")
                self.failed.append((payload, e))
        return processed


class SchedulerJobQueue(JobQueue):
    """Job queue backed by an APScheduler background scheduler."""

    def __init__(self, scheduler: Optional[BackgroundScheduler] = None, max_workers: int = 10) -> None:
        super().__init__()
        self.scheduler = scheduler or BackgroundScheduler(
            timezone="UTC",
            executors={"default": {"type": "threadpool", "max_workers": max_workers}},
            job_defaults={"coalesce": False, "misfire_grace_time": None},
        )

    def _run(self, payload: str) -> None:
        try:
            self._handle(payload)
        except Exception as e:
            logger.error(f"Background job failed: {str(e)}", exc_info=True)

    def enqueue(self, job: JobDescriptor) -> None:
        self._add(job, DateTrigger(run_date=datetime.now(timezone.utc)))

    def schedule(self, job: JobDescriptor, delay: timedelta) -> None:
        self._add(job, DateTrigger(run_date=datetime.now(timezone.utc) + delay))
        logger.info(f"Scheduled {job.job_type.value} job {job.job_id} in {delay}")

    def _add(self, job: JobDescriptor, trigger: DateTrigger) -> None:
        try:
            self.scheduler.add_job(self._run, trigger=trigger, args=[job.to_json()], id=job.job_id)
        except Exception as e:
            raise JobQueueError(f"Failed to queue job {job.job_id}: {str(e)}", job_type=job.job_type.value)

    def register_interval_job(self, job_id: str, func: Callable[[], object], minutes: int) -> str:
        """Register a recurring job, replacing any job with the same id."""
        self.scheduler.add_job(
            func,
            trigger=IntervalTrigger(minutes=minutes),
            id=job_id,
            replace_existing=True,
            max_instances=1,
        )
        logger.info(f"Registered interval job {job_id} every {minutes} minutes")
        return job_id

    def remove_job(self, job_id: str) -> bool:
        try:
            self.scheduler.remove_job(job_id)
            return True
        except JobLookupError:
            logger.warning(f"Job not found: {job_id}")
            return False

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Background scheduler started")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Background scheduler shut down")


class JobDispatcher:
    """Routes dequeued jobs to the execution engine, retrying infrastructure failures."""

    def __init__(self, engine, retry_config: Optional[RetryConfig] = None):
        self.engine = engine
        self.retry_config = retry_config or RetryConfig.for_jobs(2)

    def __call__(self, job: JobDescriptor) -> None:
        execute_with_retry(
            self.dispatch,
            self.retry_config,
            job,
            name=f"{job.job_type.value}:{job.context.workflow_id}:{job.context.entity_id}",
        )

    def dispatch(self, job: JobDescriptor) -> None:
        if job.job_type == JobType.EXECUTE:
            self.engine.execute(job.context)
        elif job.job_type == JobType.CONTINUE:
            if not job.execution_log_id or not job.node_id:
                raise JobQueueError("Continue job requires an execution log id and a node id", job_type=job.job_type.value)
            self.engine.continue_from_node(job.context, job.execution_log_id, job.node_id)
        else:
            raise JobQueueError(f"Unknown job type: {job.job_type}")
