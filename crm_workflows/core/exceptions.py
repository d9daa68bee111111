"""Exception hierarchy of the CRM workflow engine.

Every error carries a severity, a category and a ``recoverable`` flag. Job
handlers retry only recoverable errors; the API turns any of them into the
body built by :func:`create_error_response`.
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorSeverity(Enum):
    """How urgently an error needs attention."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Subsystem an error originates from."""
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    ACTION = "action"
    STORAGE = "storage"
    QUEUE = "queue"
    CONFIGURATION = "configuration"
    API = "api"


class WorkflowEngineError(Exception):
    """Base exception for all workflow engine errors.

    Subclasses set the class-level defaults; keyword arguments other than the
    named ones are stored as context (tenant, workflow, node, ...), skipping
    ``None`` values.
    """

    severity = ErrorSeverity.MEDIUM
    category = ErrorCategory.ACTION
    recoverable = False
    retry_after: Optional[int] = None

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        recoverable: Optional[bool] = None,
        **context
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = dict(details or {})
        if recoverable is not None:
            self.recoverable = recoverable
        self.context = {key: value for key, value in context.items() if value is not None}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Flat representation for structured logs."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "retry_after": self.retry_after,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }

    def add_context(self, **kwargs):
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        self.details.update(kwargs)
        return self


class WorkflowValidationError(WorkflowEngineError):
    """Raised when a workflow definition or lifecycle transition is invalid."""

    category = ErrorCategory.VALIDATION

    def __init__(self, message: str, validation_errors: Optional[List[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.validation_errors = validation_errors or []
        if self.validation_errors:
            self.add_details(validation_errors=self.validation_errors)


class WorkflowNotFoundError(WorkflowEngineError):
    """Raised when a workflow, template or execution log cannot be found for a tenant."""

    severity = ErrorSeverity.LOW
    category = ErrorCategory.NOT_FOUND


class ProtectedResourceError(WorkflowEngineError):
    """Raised when a tenant tries to change a resource it does not own, such as a system template."""

    severity = ErrorSeverity.LOW
    category = ErrorCategory.VALIDATION


class ActionExecutionError(WorkflowEngineError):
    """Raised by an action implementation when its side effect cannot be performed."""

    severity = ErrorSeverity.HIGH
    category = ErrorCategory.ACTION


class UnsupportedActionError(ActionExecutionError):
    """Raised when an action type cannot be registered or dispatched."""


class StorageError(WorkflowEngineError):
    """Raised when the database or entity store fails; retried by job handlers."""

    severity = ErrorSeverity.HIGH
    category = ErrorCategory.STORAGE
    recoverable = True
    retry_after = 3


class TransientError(WorkflowEngineError):
    """Raised for temporary failures of a collaborator that are worth retrying."""

    recoverable = True
    retry_after = 5


class JobQueueError(WorkflowEngineError):
    """Raised when a job cannot be enqueued, scheduled or decoded."""

    severity = ErrorSeverity.HIGH
    category = ErrorCategory.QUEUE


class ConfigurationError(WorkflowEngineError):
    """Raised when configuration is invalid or missing."""

    severity = ErrorSeverity.CRITICAL
    category = ErrorCategory.CONFIGURATION


class APIError(WorkflowEngineError):
    """Raised by the HTTP layer for request-level problems."""

    category = ErrorCategory.API

    def __init__(self, message: str, status_code: int = 500, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code
        self.add_details(status_code=status_code)


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Create the standard API error body for an engine error."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "retry_after": error.retry_after,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }
