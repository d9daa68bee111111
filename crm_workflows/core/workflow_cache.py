"""Short-lived cache of active workflows per tenant and entity type."""

import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from ..models.core import Workflow
from .logging import get_logger

logger = get_logger(__name__)

CacheKey = Tuple[str, str]


class ActiveWorkflowCache:
    """TTL cache with explicit invalidation.

    Entries expire after ``ttl_seconds`` but every workflow change must call
    :meth:`invalidate`; expiry alone is not relied upon for freshness.
    """

    def __init__(self, ttl_seconds: float = 60.0, clock: Optional[Callable[[], float]] = None):
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.monotonic
        self._entries: Dict[CacheKey, Tuple[float, List[Workflow]]] = {}
        # Bumped by invalidate()/clear() so loads that overlap a change are not stored
        self._key_generations: Dict[CacheKey, int] = {}
        self._tenant_generations: Dict[str, int] = {}
        self._epoch = 0
        self._lock = threading.RLock()

    def get_or_load(
        self,
        tenant_id: str,
        entity_type: str,
        loader: Callable[[str, str], List[Workflow]],
    ) -> List[Workflow]:
        """
        Return cached workflows, loading them on a miss or after expiry.

        Args:
            tenant_id: Tenant the workflows belong to
            entity_type: Entity type the workflows listen to
            loader: Called with (tenant_id, entity_type) on a miss

        Returns:
            List of active workflows
        """
        key = (tenant_id, entity_type)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry[0] > now:
                return entry[1]
            generation = self._generation(key)

        workflows = list(loader(tenant_id, entity_type))
        with self._lock:
            # An invalidation during the load means the result may predate the change
            if self._generation(key) != generation:
                logger.debug(f"Workflow cache for tenant {tenant_id} / {entity_type} invalidated during load")
                return workflows
            self._entries[key] = (self._clock() + self.ttl_seconds, workflows)
        logger.debug(f"Cached {len(workflows)} active workflows for tenant {tenant_id} / {entity_type}")
        return workflows

    def invalidate(self, tenant_id: str, entity_type: Optional[str] = None) -> None:
        """Drop one entity type of a tenant, or every entity type when none is given."""
        with self._lock:
            if entity_type is not None:
                self._entries.pop((tenant_id, entity_type), None)
                self._bump((tenant_id, entity_type))
            else:
                for key in [key for key in self._entries if key[0] == tenant_id]:
                    del self._entries[key]
                self._tenant_generations[tenant_id] = self._tenant_generations.get(tenant_id, 0) + 1
        logger.debug(f"Invalidated workflow cache for tenant {tenant_id} ({entity_type or 'all entity types'})")

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._epoch += 1

    def _generation(self, key: CacheKey) -> Tuple[int, int, int]:
        return self._epoch, self._tenant_generations.get(key[0], 0), self._key_generations.get(key, 0)

    def _bump(self, key: CacheKey) -> None:
        self._key_generations[key] = self._key_generations.get(key, 0) + 1

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
