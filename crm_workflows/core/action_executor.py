"""Dispatch of action configs to their implementations."""

from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel

from ..models.core import ActionType, WorkflowActionConfig, WorkflowTriggerContext
from .exceptions import UnsupportedActionError, WorkflowEngineError
from .logging import get_logger

logger = get_logger(__name__)

# Graph-structural types that may appear as action configs; the engine handles them
STRUCTURAL_ACTION_TYPES = frozenset({ActionType.BRANCH.value, ActionType.WAIT.value})


class ActionResult(BaseModel):
    """Outcome of one action execution."""
    succeeded: bool
    error_message: Optional[str] = None

    @classmethod
    def success(cls) -> "ActionResult":
        return cls(succeeded=True)

    @classmethod
    def failure(cls, message: str) -> "ActionResult":
        return cls(succeeded=False, error_message=message)


class ActionExecutor:
    """Registry of action implementations keyed by action type."""

    def __init__(self, actions: Optional[Mapping[str, Any]] = None):
        self._actions: Dict[str, Any] = dict(actions or {})

    def register(self, action_type: str, action: Any) -> None:
        """Register or replace the implementation of an action type."""
        if not action_type or not action_type.strip():
            raise UnsupportedActionError("Action type cannot be empty")
        self._actions[action_type.strip()] = action
        logger.debug(f"Registered action '{action_type}'")

    def is_registered(self, action_type: str) -> bool:
        return action_type in self._actions

    def list_action_types(self):
        return sorted(self._actions)

    def execute(
        self,
        action_config: WorkflowActionConfig,
        entity_data: Dict[str, Any],
        context: WorkflowTriggerContext,
    ) -> ActionResult:
        """
        Run one action and report its outcome without raising.

        Args:
            action_config: Action attached to the node being executed
            entity_data: Snapshot of the triggering record
            context: Trigger context of the run

        Returns:
            ActionResult describing success or the failure message
        """
        action_type = action_config.action_type
        if action_type in STRUCTURAL_ACTION_TYPES:
            logger.debug(f"Skipping structural action '{action_type}' on node {action_config.node_id}")
            return ActionResult.success()

        action = self._actions.get(action_type)
        if action is None:
            message = f"Unsupported workflow action type: {action_type}"
            logger.warning(message)
            return ActionResult.failure(message)

        try:
            action.execute(action_config.config, entity_data, context)
            return ActionResult.success()
        except WorkflowEngineError as e:
            logger.warning(f"Action '{action_type}' on node {action_config.node_id} failed: {e.message}")
            return ActionResult.failure(e.message)
        except Exception as e:
            logger.error(
                f"Unexpected error in action '{action_type}' on node {action_config.node_id}: {str(e)}",
                exc_info=True,
            )
            return ActionResult.failure(str(e))
