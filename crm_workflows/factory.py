"""Application factory for creating FastAPI instances."""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from .actions import build_default_actions
from .api.endpoints import init_dependencies, router
from .config import AppConfig, get_config, validate_config
from .core.action_executor import ActionExecutor
from .core.condition_evaluator import ConditionEvaluator
from .core.date_trigger_scanner import SCAN_JOB_ID, DateTriggerScanner
from .core.error_recovery import RetryConfig
from .core.execution_engine import ExecutionEngine
from .core.job_queue import InMemoryJobQueue, JobDispatcher, JobQueue, SchedulerJobQueue
from .core.logging import get_logger, setup_logging
from .core.loop_guard import LoopGuard
from .core.trigger_matcher import TriggerMatcher
from .core.workflow_cache import ActiveWorkflowCache
from .core.workflow_manager import WorkflowManager
from .storage.database import get_session_factory, init_database
from .storage.entity_store import EntityStore, SqlEntityStore
from .storage.migrations import run_migrations
from .storage.workflow_repository import WorkflowRepository


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.session_factory: Optional[sessionmaker] = None
        self.repository: Optional[WorkflowRepository] = None
        self.entity_store: Optional[EntityStore] = None
        self.cache: Optional[ActiveWorkflowCache] = None
        self.loop_guard: Optional[LoopGuard] = None
        self.job_queue: Optional[JobQueue] = None
        self.action_executor: Optional[ActionExecutor] = None
        self.execution_engine: Optional[ExecutionEngine] = None
        self.trigger_matcher: Optional[TriggerMatcher] = None
        self.date_scanner: Optional[DateTriggerScanner] = None
        self.workflow_manager: Optional[WorkflowManager] = None


# Global application state
app_state = ApplicationState()


def initialize_database(config: AppConfig, logger) -> sessionmaker:
    """Initialize the database engine and run migrations."""
    try:
        engine = init_database(config.database_url, echo=config.database_echo)
        run_migrations(engine)
        return get_session_factory()
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise


def build_components(
    config: AppConfig,
    session_factory: Optional[sessionmaker] = None,
    job_queue: Optional[JobQueue] = None,
    entity_store: Optional[EntityStore] = None,
    state: Optional[ApplicationState] = None,
) -> ApplicationState:
    """
    Build and wire every engine component.

    The entity store publishes its events to the trigger matcher, and the job
    queue hands dequeued jobs to the execution engine through a retrying
    dispatcher.

    Args:
        config: Application configuration
        session_factory: Session factory for SQL storage; the global one when omitted
        job_queue: Queue to use; built from the configuration when omitted
        entity_store: Entity store to use; a SQL store when omitted
        state: Container to populate; a new one when omitted

    Returns:
        ApplicationState: The populated container
    """
    state = state or ApplicationState()
    state.config = config
    state.session_factory = session_factory

    if job_queue is None:
        if config.enable_scheduler:
            job_queue = SchedulerJobQueue(max_workers=config.scheduler_max_workers)
        else:
            job_queue = InMemoryJobQueue()

    state.repository = WorkflowRepository(session_factory)
    state.entity_store = entity_store or SqlEntityStore(session_factory)
    state.cache = ActiveWorkflowCache(ttl_seconds=config.workflow_cache_ttl_seconds)
    state.loop_guard = LoopGuard(max_depth=config.max_cascade_depth)
    state.job_queue = job_queue
    state.action_executor = ActionExecutor(build_default_actions(
        state.entity_store,
        session_factory,
        webhook_timeout_seconds=config.webhook_timeout_seconds,
    ))
    state.execution_engine = ExecutionEngine(
        repository=state.repository,
        entity_store=state.entity_store,
        action_executor=state.action_executor,
        job_queue=job_queue,
        loop_guard=state.loop_guard,
        evaluator=ConditionEvaluator(),
    )
    state.trigger_matcher = TriggerMatcher(
        repository=state.repository,
        cache=state.cache,
        job_queue=job_queue,
        loop_guard=state.loop_guard,
        eligible_entity_types=config.eligible_entity_types,
    )
    state.date_scanner = DateTriggerScanner(
        repository=state.repository,
        entity_store=state.entity_store,
        job_queue=job_queue,
        window_minutes=config.preferred_time_window_minutes,
    )
    state.workflow_manager = WorkflowManager(
        repository=state.repository,
        cache=state.cache,
        eligible_entity_types=config.eligible_entity_types,
    )

    state.entity_store.subscribe(state.trigger_matcher.on_entity_event)
    job_queue.set_handler(JobDispatcher(
        state.execution_engine,
        RetryConfig.for_jobs(config.job_max_retries, config.job_retry_base_delay),
    ))
    return state


def start_background_jobs(state: ApplicationState, logger) -> None:
    """Register the periodic date scan and start the scheduler."""
    job_queue = state.job_queue
    if isinstance(job_queue, SchedulerJobQueue):
        job_queue.register_interval_job(SCAN_JOB_ID, state.date_scanner.scan, state.config.date_scan_interval_minutes)
    job_queue.start()
    logger.info("Background jobs started")


def graceful_shutdown(state: ApplicationState, logger) -> None:
    """Handle graceful shutdown of application components."""
    logger.info(f"Shutting down {state.config.app_name if state.config else 'application'}")
    try:
        if state.job_queue is not None:
            state.job_queue.shutdown()
            logger.info("Job queue shutdown completed")
    except Exception as e:
        logger.error(f"Error during job queue shutdown: {str(e)}")


def create_lifespan_handler(config: AppConfig):
    """Create application lifespan handler."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.log_structured,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger = get_logger(__name__)
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        try:
            session_factory = initialize_database(config, logger)
            build_components(config, session_factory, state=app_state)
            init_dependencies(
                workflow_manager=app_state.workflow_manager,
                repository=app_state.repository,
                trigger_matcher=app_state.trigger_matcher,
                date_scanner=app_state.date_scanner,
                entity_store=app_state.entity_store,
            )
            start_background_jobs(app_state, logger)
            logger.info("Application startup completed successfully")
        except Exception as e:
            logger.error(f"Application startup failed: {e}")
            raise

        yield

        graceful_shutdown(app_state, logger)

    return lifespan


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Create and configure FastAPI application instance."""
    if config is None:
        config = get_config()

    validate_config(config)

    app = FastAPI(
        title=config.app_name,
        description="Event-driven workflow automation for CRM records",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config)
    )

    app.include_router(router)
    add_health_endpoints(app, config)
    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    """Add health check endpoints to the application."""

    @app.get("/")
    async def root():
        """Root endpoint for basic health check."""
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        """Basic health check endpoint."""
        return {
            "status": "healthy",
            "service": config.app_name.lower().replace(" ", "-"),
            "version": config.app_version
        }

    @app.get("/health/ready")
    async def readiness_check():
        """Readiness check: database reachable and job queue running."""
        checks = {}
        try:
            db = (app_state.session_factory or get_session_factory())()
            try:
                db.execute(text("SELECT 1"))
            finally:
                db.close()
            checks["database"] = "healthy"
        except Exception as e:
            get_logger(__name__).error(f"Readiness check failed: {str(e)}")
            checks["database"] = f"unhealthy: {str(e)}"

        job_queue = app_state.job_queue
        if isinstance(job_queue, SchedulerJobQueue):
            checks["scheduler"] = "healthy" if job_queue.scheduler.running else "stopped"
        else:
            checks["scheduler"] = "disabled"

        ready = checks["database"] == "healthy" and checks["scheduler"] != "stopped"
        return JSONResponse(
            status_code=200 if ready else 503,
            content={
                "status": "ready" if ready else "not_ready",
                "checks": checks,
                "timestamp": datetime.now(timezone.utc).isoformat()
            }
        )
