"""Enrollment of contacts into outreach sequences."""

import uuid
from typing import Any, Dict, Optional

from sqlalchemy.orm import sessionmaker

from ..core.exceptions import ActionExecutionError
from ..core.logging import get_logger
from ..models.core import EnrollInSequenceConfig, WorkflowTriggerContext
from ..storage.database import session_scope
from ..storage.models import SequenceEnrollmentModel
from .base import WorkflowAction

logger = get_logger(__name__)


class EnrollInSequenceAction(WorkflowAction):
    """Enrolls the triggering contact; an active enrollment is left as is."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory

    def execute(self, config: EnrollInSequenceConfig, entity_data: Dict[str, Any], context: WorkflowTriggerContext) -> None:
        if context.entity_type != "Contact":
            raise ActionExecutionError(
                f"Sequence enrollment requires a Contact, got {context.entity_type}",
                action_type="enrollInSequence",
            )

        with session_scope(self.session_factory) as db:
            existing = (
                db.query(SequenceEnrollmentModel)
                .filter(
                    SequenceEnrollmentModel.tenant_id == context.tenant_id,
                    SequenceEnrollmentModel.sequence_id == config.sequence_id,
                    SequenceEnrollmentModel.contact_id == context.entity_id,
                    SequenceEnrollmentModel.status == "active",
                )
                .first()
            )
            if existing is not None:
                logger.info(f"Contact {context.entity_id} already enrolled in sequence {config.sequence_id}")
                return

            db.add(SequenceEnrollmentModel(
                id=str(uuid.uuid4()),
                tenant_id=context.tenant_id,
                sequence_id=config.sequence_id,
                contact_id=context.entity_id,
                status="active",
                current_step=0,
                enrolled_by_workflow_id=context.workflow_id,
            ))
        logger.info(f"Enrolled contact {context.entity_id} in sequence {config.sequence_id}")
