"""
Decision Status State Machine

Validates and records lifecycle transitions for a decision.
The transition graph is permissive: any status may follow any other.
The hard rules are the closed status set and a mandatory reason when
rejecting or rolling back. Every accepted transition appends one status
event and updates the decision's status in the same transaction.
"""
import logging
from typing import Any, Dict, Optional, Tuple, Union
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..exceptions import NotFoundError, ValidationError
from ..models.db_models import DecisionDB, DecisionStatus, DecisionStatusEventDB, utcnow
from ..models.schemas import StatusUpdate, parse_payload
from .lookup import get_owned_decision

logger = logging.getLogger(__name__)


# =============================================================================
# STATUS CONFIGURATION
# =============================================================================

STATUS_CONFIG = {
    DecisionStatus.PROPOSED: {
        "description": "Recommendation produced, not yet reviewed",
        "requires_reason": False,
    },
    DecisionStatus.IN_REVIEW: {
        "description": "Under review by the team",
        "requires_reason": False,
    },
    DecisionStatus.APPROVED: {
        "description": "Approved for rollout",
        "requires_reason": False,
    },
    DecisionStatus.REJECTED: {
        "description": "Declined; reason recorded",
        "requires_reason": True,
    },
    DecisionStatus.IMPLEMENTED: {
        "description": "Pricing change is live",
        "requires_reason": False,
    },
    DecisionStatus.ROLLED_BACK: {
        "description": "Change reverted after implementation; reason recorded",
        "requires_reason": True,
    },
}


class DecisionStatusMachine:
    """Applies status transitions to decisions owned by a user."""

    def __init__(self, db: Session):
        self.db = db

    def get_status_config(self, status: DecisionStatus) -> Dict[str, Any]:
        return STATUS_CONFIG.get(status, {})

    def can_transition(
        self,
        from_status: DecisionStatus,
        to_status: DecisionStatus,
        reason: Optional[str] = None,
    ) -> Tuple[bool, str]:
        """
        Check if a transition is allowed.

        Returns (allowed, reason)
        """
        if to_status not in STATUS_CONFIG:
            return False, f"Unknown status: {to_status}"

        if STATUS_CONFIG[to_status]["requires_reason"] and not (reason or "").strip():
            return False, f"reason is required when status is {to_status.value}"

        return True, "Transition allowed"

    def transition(
        self,
        decision_id: str,
        user_id: str,
        request: Union[StatusUpdate, Dict[str, Any]],
    ) -> DecisionDB:
        """
        Execute a status transition.

        Side effects by target status:
            implemented: implemented_at (supplied or now)
            rejected:    rejection_reason
            rolled_back: rollback_at (supplied or now), rollback_reason

        Raises:
            ValidationError: unknown status or missing reason
            NotFoundError: decision absent, deleted, or not owned
        """
        request = parse_payload(StatusUpdate, request)
        decision = get_owned_decision(self.db, decision_id, user_id)

        allowed, message = self.can_transition(decision.status, request.status, request.reason)
        if not allowed:
            raise ValidationError(message, field="reason")

        now = utcnow()
        values: Dict[str, Any] = {"status": request.status, "updated_at": now}
        event = DecisionStatusEventDB(
            id=str(uuid4()),
            decision_id=decision_id,
            status=request.status,
            reason=request.reason,
            created_by=user_id,
            created_at=now,
        )

        if request.status == DecisionStatus.IMPLEMENTED:
            values["implemented_at"] = request.implemented_at or now
            event.implemented_at = values["implemented_at"]
        elif request.status == DecisionStatus.REJECTED:
            values["rejection_reason"] = request.reason
        elif request.status == DecisionStatus.ROLLED_BACK:
            values["rollback_at"] = request.rollback_at or now
            values["rollback_reason"] = request.reason
            event.rollback_at = values["rollback_at"]

        from_status = decision.status
        result = self.db.execute(
            update(DecisionDB)
            .where(
                DecisionDB.id == decision_id,
                DecisionDB.user_id == user_id,
                DecisionDB.is_deleted.is_(False),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # Deleted between the read and the write
            self.db.rollback()
            raise NotFoundError("decision", decision_id)

        self.db.add(event)
        self.db.commit()

        logger.info(
            f"Decision {decision_id} status {from_status.value} -> {request.status.value}"
        )
        return self.db.query(DecisionDB).filter(DecisionDB.id == decision_id).one()

    def record_initial(self, decision: DecisionDB, actor: Optional[str]) -> DecisionStatusEventDB:
        """Stage the creation event for a decision being inserted. Caller commits."""
        event = DecisionStatusEventDB(
            id=str(uuid4()),
            decision_id=decision.id,
            status=decision.status,
            reason="Decision created",
            created_by=actor,
            created_at=decision.created_at,
        )
        self.db.add(event)
        return event
