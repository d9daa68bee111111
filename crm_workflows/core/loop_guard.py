"""Cascade protection for workflow executions triggered by other workflows."""

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional, Set

from .logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_DEPTH = 5


class ChainState:
    """Depth and processed (workflow, entity) pairs of one execution chain."""

    def __init__(self, depth: int = 0):
        self.depth = depth
        self.processed: Set[str] = set()


_chain_state: ContextVar[Optional[ChainState]] = ContextVar("crm_workflows_chain_state", default=None)


class LoopGuard:
    """Bounds cascade depth and suppresses duplicate runs within one chain.

    The chain state lives in a context variable, so it follows the current
    thread or task. It does not survive a job queue boundary: producers stamp
    ``current_depth`` on the trigger context and job handlers restore it with
    :meth:`chain` before running the engine.
    """

    def __init__(self, max_depth: int = DEFAULT_MAX_DEPTH):
        self.max_depth = max_depth

    def _state(self) -> ChainState:
        state = _chain_state.get()
        if state is None:
            state = ChainState()
            _chain_state.set(state)
        return state

    @property
    def current_depth(self) -> int:
        state = _chain_state.get()
        return state.depth if state is not None else 0

    def can_execute(self) -> bool:
        """True while the chain is shallower than the maximum depth."""
        return self.current_depth < self.max_depth

    def try_mark_processed(self, workflow_id: str, entity_id: str) -> bool:
        """Mark the pair as processed; False if it already was in this chain.

        Pairs are remembered only inside an :meth:`increment_depth` scope. At
        depth 0 no chain is running, so nothing is recorded and the call
        always returns True.
        """
        key = f"{workflow_id}:{entity_id}"
        state = _chain_state.get()
        if state is None or state.depth <= 0:
            return True
        if key in state.processed:
            return False
        state.processed.add(key)
        return True

    @contextmanager
    def increment_depth(self) -> Iterator[int]:
        """Scope one level deeper; leaving the outermost scope ends the chain."""
        state = self._state()
        state.depth += 1
        try:
            yield state.depth
        finally:
            state.depth -= 1
            if state.depth <= 0:
                state.depth = 0
                state.processed.clear()

    def set_depth(self, depth: int) -> None:
        """Restore the depth carried across a queue boundary."""
        self._state().depth = max(depth, 0)

    @contextmanager
    def chain(self, depth: int) -> Iterator[ChainState]:
        """Run a job inside a chain at ``depth``.

        When a chain is already active in this context (the job runs inline
        inside another execution) it is joined; otherwise a fresh chain is
        started and the previous state is restored on exit.
        """
        existing = _chain_state.get()
        if existing is not None and existing.depth > 0:
            if existing.depth != depth:
                logger.debug(f"Joining active chain at depth {existing.depth} (job carried {depth})")
            yield existing
            return

        token = _chain_state.set(ChainState(depth=max(depth, 0)))
        try:
            yield _chain_state.get()
        finally:
            _chain_state.reset(token)
