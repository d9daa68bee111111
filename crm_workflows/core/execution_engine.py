"""Execution engine: runs one workflow for one entity through its action graph."""

import time
from collections import deque
from typing import Any, Dict, List, Optional, Set

from ..models.core import (
    ActionLog,
    ActionStatus,
    ExecutionLog,
    ExecutionStatus,
    NodeType,
    Workflow,
    WorkflowActionConfig,
    WorkflowTriggerContext,
    utc_now,
)
from ..storage.entity_store import EntityStore
from ..storage.workflow_repository import WorkflowRepository
from .action_executor import ActionExecutor
from .condition_evaluator import ConditionEvaluator
from .exceptions import WorkflowEngineError
from .job_queue import JobDescriptor, JobQueue
from .logging import get_logger, logging_context
from .loop_guard import LoopGuard
from .tenant import tenant_scope

logger = get_logger(__name__)


class TraversalResult:
    """What one traversal call did to the execution log."""

    def __init__(self):
        self.suspended = False
        self.halted = False


class ExecutionEngine:
    """Loads a workflow, evaluates its conditions and executes its action graph.

    Every call produces at most one execution log. A run that reaches a wait
    node is persisted as waiting and continued later by a delayed job that
    calls :meth:`continue_from_node`.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        entity_store: EntityStore,
        action_executor: ActionExecutor,
        job_queue: JobQueue,
        loop_guard: Optional[LoopGuard] = None,
        evaluator: Optional[ConditionEvaluator] = None,
    ):
        """
        Initialize the execution engine.

        Args:
            repository: Workflow and execution log persistence
            entity_store: Source of entity snapshots
            action_executor: Dispatches action configs to implementations
            job_queue: Queue used to schedule continuations after waits
            loop_guard: Cascade guard shared with the trigger matcher
            evaluator: Condition evaluator for top-level and branch conditions
        """
        self.repository = repository
        self.entity_store = entity_store
        self.action_executor = action_executor
        self.job_queue = job_queue
        self.loop_guard = loop_guard or LoopGuard()
        self.evaluator = evaluator or ConditionEvaluator()

    def execute(self, context: WorkflowTriggerContext) -> Optional[ExecutionLog]:
        """
        Run a workflow for the entity in ``context``.

        Args:
            context: Trigger context produced by the trigger matcher or date scanner

        Returns:
            The persisted execution log, or None when nothing ran
        """
        with tenant_scope(context.tenant_id), self.loop_guard.chain(context.current_depth):
            if not self.loop_guard.can_execute():
                logger.warning(
                    f"Cascade depth {self.loop_guard.current_depth} reached; "
                    f"workflow {context.workflow_id} not executed for {context.entity_type}/{context.entity_id}"
                )
                return None

            with self.loop_guard.increment_depth():
                if not self.loop_guard.try_mark_processed(context.workflow_id, context.entity_id):
                    logger.debug(
                        f"Workflow {context.workflow_id} already processed for entity {context.entity_id}, skipping"
                    )
                    return None

                with logging_context(
                    tenant_id=context.tenant_id,
                    workflow_id=context.workflow_id,
                    entity_id=context.entity_id,
                ):
                    return self._execute(context)

    def _execute(self, context: WorkflowTriggerContext) -> Optional[ExecutionLog]:
        workflow = self._load_runnable_workflow(context)
        if workflow is None:
            return None

        started = time.monotonic()
        log = ExecutionLog.start(context)

        try:
            entity_data = self.entity_store.load_entity_data(context.entity_type, context.entity_id)
            if entity_data is None:
                logger.warning(f"Entity {context.entity_type}/{context.entity_id} not found, workflow not executed")
                log.status = ExecutionStatus.FAILED
                log.error_message = f"Entity {context.entity_type}/{context.entity_id} not found"
            else:
                definition = workflow.definition
                log.conditions_evaluated = len(definition.conditions) > 0
                log.conditions_passed = self.evaluator.evaluate(
                    definition.conditions,
                    entity_data,
                    context.changed_properties,
                    context.old_property_values,
                )

                if not log.conditions_passed:
                    logger.debug(f"Conditions of workflow {workflow.id} not met for entity {context.entity_id}")
                    log.status = ExecutionStatus.SKIPPED
                else:
                    suspended = self._run_graph(workflow, entity_data, context, log)
                    log.status = self._compute_status(log, suspended)
                    logger.info(
                        f"Workflow {workflow.id} execution finished: status={log.status.value}, "
                        f"actions={len(log.action_logs)}"
                    )
        except Exception as e:
            logger.error(f"Workflow {workflow.id} execution failed with unhandled error: {str(e)}", exc_info=True)
            log.status = ExecutionStatus.FAILED
            log.error_message = self._error_text(e)

        self._finish(log, started)
        self._persist(log)
        self._record_execution(workflow)
        return log

    def continue_from_node(
        self,
        context: WorkflowTriggerContext,
        execution_log_id: str,
        node_id: str,
    ) -> Optional[ExecutionLog]:
        """
        Resume a run after a wait node.

        Args:
            context: Trigger context of the suspended run
            execution_log_id: Log of the suspended run
            node_id: Node to continue the traversal from

        Returns:
            The persisted execution log, or None when the run cannot continue
        """
        with tenant_scope(context.tenant_id), self.loop_guard.chain(context.current_depth):
            with self.loop_guard.increment_depth():
                with logging_context(
                    tenant_id=context.tenant_id,
                    workflow_id=context.workflow_id,
                    entity_id=context.entity_id,
                    execution_log_id=execution_log_id,
                ):
                    return self._continue(context, execution_log_id, node_id)

    def _continue(self, context: WorkflowTriggerContext, execution_log_id: str, node_id: str) -> Optional[ExecutionLog]:
        workflow = self._load_runnable_workflow(context)
        if workflow is None:
            return None

        log = self.repository.get_execution_log(execution_log_id, context.tenant_id)
        if log is None:
            log = ExecutionLog.start(context).model_copy(
                update={"id": execution_log_id, "conditions_evaluated": False, "conditions_passed": True}
            )

        started = time.monotonic()
        try:
            # Snapshot is re-read here; the run may have been suspended for days
            entity_data = self.entity_store.load_entity_data(context.entity_type, context.entity_id)
            if entity_data is None:
                logger.info(
                    f"Entity {context.entity_type}/{context.entity_id} no longer exists; continuation dropped"
                )
                return None

            result = self._traverse_from(workflow, entity_data, context, log, node_id)
            log.status = self._compute_status(log, result.suspended)
            logger.info(f"Workflow {workflow.id} continued from node {node_id}: status={log.status.value}")
        except Exception as e:
            logger.error(
                f"Workflow {workflow.id} continuation from node {node_id} failed: {str(e)}",
                exc_info=True,
            )
            log.status = ExecutionStatus.FAILED
            log.error_message = self._error_text(e)

        self._finish(log, started)
        self._persist(log)
        self._record_execution(workflow)
        return log

    # Graph traversal

    def _run_graph(
        self,
        workflow: Workflow,
        entity_data: Dict[str, Any],
        context: WorkflowTriggerContext,
        log: ExecutionLog,
    ) -> bool:
        """Execute the graph from its trigger nodes; returns True when the run was suspended."""
        definition = workflow.definition
        trigger_nodes = definition.trigger_nodes()

        if not trigger_nodes:
            # Definitions without a graph run their actions in declared order
            for action in sorted(definition.actions, key=lambda a: a.order):
                if not self._execute_action(action, entity_data, context, log) and not action.continue_on_error:
                    break
            return False

        suspended = False
        for trigger_node in trigger_nodes:
            for next_node_id in definition.successors(trigger_node.id):
                result = self._traverse_from(workflow, entity_data, context, log, next_node_id)
                suspended = suspended or result.suspended
                if result.halted:
                    return suspended
        return suspended

    def _traverse_from(
        self,
        workflow: Workflow,
        entity_data: Dict[str, Any],
        context: WorkflowTriggerContext,
        log: ExecutionLog,
        start_node_id: str,
    ) -> TraversalResult:
        """Breadth-first traversal from one node, executing actions as they are reached."""
        definition = workflow.definition
        nodes = definition.node_map()
        result = TraversalResult()
        visited: Set[str] = set()
        queue = deque([start_node_id])

        while queue:
            node_id = queue.popleft()
            if node_id in visited:
                continue
            visited.add(node_id)

            node = nodes.get(node_id)
            if node is None:
                continue

            if node.type == NodeType.ACTION.value:
                action = definition.action_for_node(node_id)
                if action is not None:
                    succeeded = self._execute_action(action, entity_data, context, log)
                    if not succeeded and not action.continue_on_error:
                        logger.info(f"Action on node {node_id} failed; halting workflow {workflow.id}")
                        result.halted = True
                        return result
                queue.extend(definition.successors(node_id))

            elif node.type == NodeType.BRANCH.value:
                output = "yes" if self._evaluate_branch(node_id, node.branch_config, entity_data, context) else "no"
                logger.debug(f"Branch node {node_id} took the '{output}' path")
                queue.extend(definition.successors(node_id, output))

            elif node.type == NodeType.WAIT.value:
                delay = node.wait_config.delay
                next_nodes = definition.successors(node_id)
                if next_nodes and delay.total_seconds() > 0:
                    for next_node_id in next_nodes:
                        self.job_queue.schedule(JobDescriptor.continue_from(context, log.id, next_node_id), delay)
                        logger.info(
                            f"Workflow {workflow.id} waiting {delay} before continuing to node {next_node_id}"
                        )
                    result.suspended = True
                    return result
                queue.extend(next_nodes)

            else:
                # Condition nodes and unknown node types pass through
                queue.extend(definition.successors(node_id))

        return result

    def _evaluate_branch(self, node_id, branch_config, entity_data, context) -> bool:
        if not branch_config.condition_groups:
            return True
        try:
            return self.evaluator.evaluate(
                branch_config.condition_groups,
                entity_data,
                context.changed_properties,
                context.old_property_values,
            )
        except Exception as e:
            logger.warning(f"Branch node {node_id} evaluation failed, taking the 'no' path: {str(e)}")
            return False

    def _execute_action(
        self,
        action: WorkflowActionConfig,
        entity_data: Dict[str, Any],
        context: WorkflowTriggerContext,
        log: ExecutionLog,
    ) -> bool:
        started_at = utc_now()
        started = time.monotonic()
        result = self.action_executor.execute(action, entity_data, context)
        log.action_logs.append(ActionLog(
            action_type=action.action_type,
            action_node_id=action.node_id,
            order=action.order,
            status=ActionStatus.SUCCEEDED if result.succeeded else ActionStatus.FAILED,
            error_message=result.error_message,
            started_at=started_at,
            completed_at=utc_now(),
            duration_ms=int((time.monotonic() - started) * 1000),
        ))
        return result.succeeded

    # Helpers

    def _load_runnable_workflow(self, context: WorkflowTriggerContext) -> Optional[Workflow]:
        workflow = self.repository.get_by_id(context.workflow_id, context.tenant_id)
        if workflow is None or not workflow.is_runnable:
            logger.info(f"Workflow {context.workflow_id} not found, inactive or paused; skipping execution")
            return None
        return workflow

    @staticmethod
    def _compute_status(log: ExecutionLog, suspended: bool) -> ExecutionStatus:
        if suspended:
            return ExecutionStatus.WAITING
        outcomes: List[bool] = [action.status == ActionStatus.SUCCEEDED for action in log.action_logs]
        if not outcomes or all(outcomes):
            return ExecutionStatus.SUCCEEDED
        if any(outcomes):
            return ExecutionStatus.PARTIALLY_FAILED
        return ExecutionStatus.FAILED

    @staticmethod
    def _finish(log: ExecutionLog, started: float) -> None:
        log.duration_ms += int((time.monotonic() - started) * 1000)
        log.completed_at = None if log.status == ExecutionStatus.WAITING else utc_now()

    @staticmethod
    def _error_text(error: Exception) -> str:
        return error.message if isinstance(error, WorkflowEngineError) else str(error)

    def _record_execution(self, workflow: Workflow) -> None:
        try:
            self.repository.record_execution(workflow.id)
        except WorkflowEngineError as e:
            logger.error(f"Failed to update run counters of workflow {workflow.id}: {e.message}")

    def _persist(self, log: ExecutionLog) -> None:
        try:
            self.repository.save_execution_log(log)
        except Exception as e:
            logger.error(f"Failed to save execution log {log.id}: {str(e)}")
