"""Resolution of the users a workflow action addresses."""

from typing import Any, Dict, Optional

from ..core.logging import get_logger
from ..models.core import WorkflowTriggerContext
from ..storage.entity_store import EntityStore

logger = get_logger(__name__)

OWNER_FIELD = "owner_id"


def resolve_user(
    recipient_type: Optional[str],
    recipient_id: Optional[str],
    entity_data: Dict[str, Any],
    context: WorkflowTriggerContext,
    entity_store: Optional[EntityStore] = None,
) -> Optional[str]:
    """
    Resolve the user id for a recipient or assignee setting.

    Args:
        recipient_type: record_owner, deal_owner or specific_user
        recipient_id: User id for specific_user
        entity_data: Snapshot of the triggering record
        context: Trigger context of the run
        entity_store: Used to look up the linked deal for deal_owner

    Returns:
        The user id, or None when it cannot be resolved
    """
    if recipient_type == "specific_user":
        return recipient_id or None

    if recipient_type == "deal_owner":
        if context.entity_type == "Deal":
            return entity_data.get(OWNER_FIELD)
        deal_id = entity_data.get("deal_id")
        if deal_id and entity_store is not None:
            deal = entity_store.load_entity_data("Deal", str(deal_id))
            if deal:
                return deal.get(OWNER_FIELD)
        logger.debug(f"No deal linked to {context.entity_type}/{context.entity_id}")
        return None

    return entity_data.get(OWNER_FIELD)
