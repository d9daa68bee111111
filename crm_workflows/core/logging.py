"""Logging configuration for the CRM workflow engine."""

import logging
import sys
import json
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Iterator
from pathlib import Path


# Run fields (tenant, workflow, entity, log id) of the execution being processed
_run_context: ContextVar[Dict[str, Any]] = ContextVar("crm_workflows_run_context", default={})

DEFAULT_TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s%(run_context)s"

# Libraries that are too chatty below WARNING for an engine log
NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "sqlalchemy.pool", "apscheduler", "urllib3")


class StructuredFormatter(logging.Formatter):
    """Formats records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(getattr(record, "run_fields", {}))
        entry.update(getattr(record, "extra_fields", {}))

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(entry, default=str)


class RunContextFilter(logging.Filter):
    """Attaches the current run context to every record.

    ``run_fields`` carries the raw mapping for the JSON formatter and
    ``run_context`` a ``[key=value ...]`` suffix for text formats.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        fields = _run_context.get()
        record.run_fields = dict(fields)
        if fields:
            record.run_context = " [" + " ".join(f"{key}={value}" for key, value in fields.items()) + "]"
        else:
            record.run_context = ""
        return True


_run_context_filter = RunContextFilter()


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure root logging for the engine process.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path; rotated when it reaches ``max_size``
        log_format: Text format; ``%(run_context)s`` expands to the run fields
        structured: Emit JSON lines instead of text
        max_size: Maximum log file size in bytes before rotation
        backup_count: Number of rotated files to keep

    Returns:
        Root logger instance
    """
    if structured:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(fmt=log_format or DEFAULT_TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        from logging.handlers import RotatingFileHandler

        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(log_file, maxBytes=max_size, backupCount=backup_count))

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(_run_context_filter)
        root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for the given name."""
    return logging.getLogger(name)


@contextmanager
def logging_context(**fields) -> Iterator[Dict[str, Any]]:
    """Add run fields to every record logged inside the block.

    Nested blocks extend the outer fields and restore them on exit, so an
    execution running inline inside another keeps the outer context intact.
    """
    token = _run_context.set({**_run_context.get(), **fields})
    try:
        yield _run_context.get()
    finally:
        _run_context.reset(token)


def log_with_context(logger: logging.Logger, level: int, message: str, **fields):
    """Log a message with additional structured fields."""
    logger.log(level, message, extra={"extra_fields": fields})


class JobRetryLogger:
    """Logs the retry history of one background job."""

    def __init__(self, job_name: str):
        self.logger = get_logger("crm_workflows.jobs.retry")
        self.job_name = job_name

    def retrying(self, error: Exception, attempt: int, max_attempts: int, delay: float):
        log_with_context(
            self.logger, logging.WARNING,
            f"Job {self.job_name} failed on attempt {attempt}/{max_attempts}, retrying in {delay:.1f}s: {error}",
            job=self.job_name,
            error_type=type(error).__name__,
            attempt=attempt,
        )

    def recovered(self, attempts_used: int):
        log_with_context(
            self.logger, logging.INFO,
            f"Job {self.job_name} succeeded after {attempts_used} attempts",
            job=self.job_name,
            attempt=attempts_used,
        )

    def gave_up(self, error: Exception, attempts_used: int):
        log_with_context(
            self.logger, logging.ERROR,
            f"Job {self.job_name} gave up after {attempts_used} attempts: {error}",
            job=self.job_name,
            error_type=type(error).__name__,
            attempt=attempts_used,
        )
