"""Core workflow engine components."""

from .exceptions import (
    WorkflowEngineError,
    WorkflowValidationError,
    WorkflowNotFoundError,
    ProtectedResourceError,
    ActionExecutionError,
    UnsupportedActionError,
    StorageError,
    TransientError,
    JobQueueError,
    ConfigurationError,
    APIError,
)
from .logging import setup_logging, get_logger
from .condition_evaluator import ConditionEvaluator, get_field_value
from .loop_guard import LoopGuard
from .workflow_cache import ActiveWorkflowCache
from .job_queue import JobDescriptor, JobQueue, InMemoryJobQueue, SchedulerJobQueue, JobDispatcher
from .action_executor import ActionExecutor, ActionResult

__all__ = [
    "WorkflowEngineError",
    "WorkflowValidationError",
    "WorkflowNotFoundError",
    "ProtectedResourceError",
    "ActionExecutionError",
    "UnsupportedActionError",
    "StorageError",
    "TransientError",
    "JobQueueError",
    "ConfigurationError",
    "APIError",
    "setup_logging",
    "get_logger",
    "ConditionEvaluator",
    "get_field_value",
    "LoopGuard",
    "ActiveWorkflowCache",
    "JobDescriptor",
    "JobQueue",
    "InMemoryJobQueue",
    "SchedulerJobQueue",
    "JobDispatcher",
    "ActionExecutor",
    "ActionResult",
]
