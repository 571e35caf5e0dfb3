"""
Hard Delete Service

Administrative, transactional removal of a decision with full dependency
teardown. Ordinary user deletes are soft deletes (DecisionService.soft_delete);
this path exists for cleanup and data-removal requests.
"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


class HardDeleteService:
    """
    Centralized hard delete service.
    Single source of truth for dependency discovery and ordered deletion.
    """

    def __init__(self, db: Session):
        self.db = db

    def delete_decision(self, decision_id: str, user_id: str) -> Optional[dict]:
        """
        Hard delete a decision and all dependent records.
        Soft-deleted decisions are included.

        Deletion order:
        1. Cached scenario deltas
        2. Scenario sets (every version)
        3. Measurable outcome
        4. Decision outcomes (corrections included)
        5. Status events and version history
        6. The decision

        Returns cascade counts, or None if the decision is not found/not owned.
        """
        from ..models.db_models import (
            DecisionDB, DecisionContextVersionDB, DecisionVerdictVersionDB,
            DecisionStatusEventDB, DecisionOutcomeDB, MeasurableOutcomeDB,
            ScenarioSetDB, ScenarioDeltaDB,
        )

        decision = self.db.query(DecisionDB).filter(
            DecisionDB.id == decision_id,
            DecisionDB.user_id == user_id,
        ).first()

        if not decision:
            return None

        cascade = {
            "scenario_deltas": 0,
            "scenario_sets": 0,
            "measurable_outcomes": 0,
            "decision_outcomes": 0,
            "status_events": 0,
            "context_versions": 0,
            "verdict_versions": 0,
        }

        # Step 1-2: scenario data
        cascade["scenario_deltas"] = self.db.query(ScenarioDeltaDB).filter(
            ScenarioDeltaDB.verdict_id == decision_id
        ).delete(synchronize_session=False)

        cascade["scenario_sets"] = self.db.query(ScenarioSetDB).filter(
            ScenarioSetDB.decision_id == decision_id,
            ScenarioSetDB.user_id == user_id,
        ).delete(synchronize_session=False)

        # Step 3-4: outcomes
        cascade["measurable_outcomes"] = self.db.query(MeasurableOutcomeDB).filter(
            MeasurableOutcomeDB.verdict_id == decision_id,
            MeasurableOutcomeDB.user_id == user_id,
        ).delete(synchronize_session=False)

        cascade["decision_outcomes"] = self.db.query(DecisionOutcomeDB).filter(
            DecisionOutcomeDB.decision_id == decision_id
        ).delete(synchronize_session=False)

        # Step 5: audit trail
        cascade["status_events"] = self.db.query(DecisionStatusEventDB).filter(
            DecisionStatusEventDB.decision_id == decision_id
        ).delete(synchronize_session=False)

        cascade["context_versions"] = self.db.query(DecisionContextVersionDB).filter(
            DecisionContextVersionDB.decision_id == decision_id
        ).delete(synchronize_session=False)

        cascade["verdict_versions"] = self.db.query(DecisionVerdictVersionDB).filter(
            DecisionVerdictVersionDB.decision_id == decision_id
        ).delete(synchronize_session=False)

        # Step 6: the decision. Expire first so already-loaded child
        # collections are not deleted a second time.
        self.db.expire(decision)
        self.db.delete(decision)
        self.db.commit()

        logger.info(f"Hard-deleted decision {decision_id}: {cascade}")
        return cascade

    def delete_user_data(self, user_id: str) -> dict:
        """Hard delete every decision the user owns. Returns summed cascade counts."""
        from ..models.db_models import DecisionDB

        decision_ids = [
            d.id for d in
            self.db.query(DecisionDB.id).filter(DecisionDB.user_id == user_id).all()
        ]

        totals = {"decisions": 0}
        for decision_id in decision_ids:
            cascade = self.delete_decision(decision_id, user_id)
            if cascade is None:
                continue
            totals["decisions"] += 1
            for key, count in cascade.items():
                totals[key] = totals.get(key, 0) + count
        return totals
