"""
Scenario Store

Versioned sets of alternative scenarios per decision, plus the user's
chosen scenario. Versions are never overwritten: each generation writes
max(version) + 1 under a unique (decision_id, user_id, version) index.
Generation itself is done by an external collaborator; this module only
validates and stores what it returns.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union
from uuid import uuid4

from dateutil.relativedelta import relativedelta
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import VERSION_APPEND_MAX_RETRIES
from ..exceptions import ConflictError, NotFoundError, ValidationError
from ..models.db_models import (
    DecisionDB, EpisodeStatus, ScenarioId, ScenarioSetDB, utcnow,
)
from ..models.schemas import ScenarioItem, ScenarioSetPayload, parse_payload
from .lookup import get_owned_decision, read_with_retry

logger = logging.getLogger(__name__)

BALANCED_LABEL = "Balanced (Recommended)"

# Receives the decision, returns a ScenarioSetPayload or an equivalent dict
ScenarioGenerator = Callable[[DecisionDB], Union[ScenarioSetPayload, Dict[str, Any]]]


@dataclass(frozen=True)
class Baseline:
    scenario_id: str
    name: str


def validate_scenario_id(scenario_id: str) -> ScenarioId:
    try:
        return ScenarioId(scenario_id)
    except ValueError:
        valid = ", ".join(s.value for s in ScenarioId)
        raise ValidationError(f"Invalid scenario_id '{scenario_id}'. Must be one of: {valid}", field="scenario_id")


def scenario_items(scenario_set: ScenarioSetDB) -> List[ScenarioItem]:
    return [ScenarioItem.model_validate(item) for item in scenario_set.scenarios]


def find_scenario(scenario_set: ScenarioSetDB, scenario_id: str) -> Optional[ScenarioItem]:
    for item in scenario_items(scenario_set):
        if item.scenario_id.value == scenario_id:
            return item
    return None


class ScenarioStore:
    """Reads and writes scenario sets for decisions owned by a user."""

    def __init__(self, db: Session, max_retries: int = VERSION_APPEND_MAX_RETRIES):
        self.db = db
        self.max_retries = max_retries

    # =========================================================================
    # SCENARIO SETS
    # =========================================================================

    def create(
        self,
        decision_id: str,
        user_id: str,
        payload: Union[ScenarioSetPayload, Dict[str, Any]],
        commit: bool = True,
    ) -> ScenarioSetDB:
        """
        Store a new version of the decision's scenario set.

        With commit=False the row is only flushed, so the caller can commit it
        together with other writes; a version collision then surfaces as
        IntegrityError for the caller to retry.
        """
        payload = parse_payload(ScenarioSetPayload, payload)
        get_owned_decision(self.db, decision_id, user_id)

        scenarios = [item.model_dump(mode="json") for item in payload.scenarios]
        model_meta = payload.model_meta.model_dump(mode="json") if payload.model_meta else None

        if not commit:
            scenario_set = self._stage_version(decision_id, user_id, scenarios, model_meta)
            self.db.flush()
            return scenario_set

        for attempt in range(1, self.max_retries + 1):
            scenario_set = self._stage_version(decision_id, user_id, scenarios, model_meta)
            try:
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                logger.warning(
                    f"Scenario set v{scenario_set.version} for decision {decision_id} already exists, "
                    f"attempt {attempt}/{self.max_retries}"
                )
                continue

            logger.info(f"Created scenario set v{scenario_set.version} for decision {decision_id}")
            return scenario_set

        raise ConflictError(f"could not allocate a scenario set version for decision {decision_id}")

    def get_current(self, decision_id: str, user_id: str) -> Optional[ScenarioSetDB]:
        """Highest non-deleted version, or None."""
        return read_with_retry(
            self.db,
            self.db.query(ScenarioSetDB).filter(
                ScenarioSetDB.decision_id == decision_id,
                ScenarioSetDB.user_id == user_id,
                ScenarioSetDB.is_deleted.is_(False),
            ).order_by(ScenarioSetDB.version.desc()).first,
            "get_current_scenario_set",
        )

    def get_scenarios(self, decision_id: str, user_id: str) -> ScenarioSetDB:
        """Current set for a decision the user owns; NotFoundError if there is none."""
        get_owned_decision(self.db, decision_id, user_id)
        scenario_set = self.get_current(decision_id, user_id)
        if scenario_set is None:
            raise NotFoundError("scenario_set", decision_id)
        return scenario_set

    def soft_delete(self, scenario_set_id: str, user_id: str) -> ScenarioSetDB:
        """Mark one version deleted. Other versions keep their numbers."""
        scenario_set = self.db.query(ScenarioSetDB).filter(
            ScenarioSetDB.id == scenario_set_id,
            ScenarioSetDB.user_id == user_id,
            ScenarioSetDB.is_deleted.is_(False),
        ).first()
        if scenario_set is None:
            raise NotFoundError("scenario_set", scenario_set_id)

        now = utcnow()
        scenario_set.is_deleted = True
        scenario_set.deleted_at = now
        scenario_set.updated_at = now
        self.db.commit()

        logger.info(f"Soft-deleted scenario set {scenario_set_id} (v{scenario_set.version})")
        return scenario_set

    def exists_for_decision(self, decision_id: str, user_id: str) -> bool:
        return self.get_current(decision_id, user_id) is not None

    def count_by_user_since(self, user_id: str, since: datetime) -> int:
        """Scenario sets generated by a user since a point in time (usage accounting)."""
        return self.db.query(func.count(ScenarioSetDB.id)).filter(
            ScenarioSetDB.user_id == user_id,
            ScenarioSetDB.created_at >= since,
        ).scalar() or 0

    def count_this_month(self, user_id: str, now: Optional[datetime] = None) -> int:
        month_start = (now or utcnow()) + relativedelta(day=1, hour=0, minute=0, second=0, microsecond=0)
        return self.count_by_user_since(user_id, month_start)

    # =========================================================================
    # GENERATION AND SELECTION
    # =========================================================================

    def generate_scenarios(
        self,
        decision_id: str,
        user_id: str,
        generator: ScenarioGenerator,
        force: bool = False,
    ) -> ScenarioSetDB:
        """
        Return the current scenario set, generating a new version when
        there is none or when `force` is set.

        The new version, its link on the decision and the removal of every
        cached scenario delta for the decision are committed together.
        """
        from .delta_calculator import DeltaCalculator

        decision = get_owned_decision(self.db, decision_id, user_id)

        if not force:
            existing = self.get_current(decision_id, user_id)
            if existing is not None:
                return existing

        payload = parse_payload(ScenarioSetPayload, generator(decision))
        calculator = DeltaCalculator(self.db)

        for attempt in range(1, self.max_retries + 1):
            try:
                scenario_set = self.create(decision_id, user_id, payload, commit=False)

                decision = get_owned_decision(self.db, decision_id, user_id)
                decision.scenarios_id = scenario_set.id
                if decision.episode_status == EpisodeStatus.DRAFT:
                    decision.episode_status = EpisodeStatus.EXPLORED
                decision.updated_at = utcnow()
                calculator.invalidate_for_decision(decision_id, commit=False)
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                logger.warning(
                    f"Scenario set version for decision {decision_id} taken concurrently, "
                    f"attempt {attempt}/{self.max_retries}"
                )
                continue
            except SQLAlchemyError:
                self.db.rollback()
                raise

            logger.info(f"Linked scenario set v{scenario_set.version} to decision {decision_id}")
            return scenario_set

        raise ConflictError(f"could not allocate a scenario set version for decision {decision_id}")

    def set_chosen_scenario(self, decision_id: str, user_id: str, scenario_id: str) -> DecisionDB:
        """
        Record the user's chosen scenario. Re-choosing the same id only
        refreshes chosen_scenario_at.
        """
        validate_scenario_id(scenario_id)
        decision = get_owned_decision(self.db, decision_id, user_id)

        scenario_set = self.get_current(decision_id, user_id)
        if scenario_set is None:
            raise NotFoundError("scenario_set", decision_id)
        if find_scenario(scenario_set, scenario_id) is None:
            raise NotFoundError("scenario", scenario_id)

        now = utcnow()
        decision.chosen_scenario_id = scenario_id
        decision.chosen_scenario_at = now
        decision.episode_status = EpisodeStatus.PATH_CHOSEN
        decision.updated_at = now
        self.db.commit()

        logger.info(f"Decision {decision_id} chose scenario {scenario_id}")
        return decision

    def resolve_baseline(self, decision: DecisionDB, scenario_set: Optional[ScenarioSetDB] = None) -> Baseline:
        """Chosen scenario if any, otherwise the balanced scenario."""
        if not decision.chosen_scenario_id:
            return Baseline(ScenarioId.BALANCED.value, BALANCED_LABEL)

        if scenario_set is None:
            scenario_set = self.get_current(decision.id, decision.user_id)
        chosen = find_scenario(scenario_set, decision.chosen_scenario_id) if scenario_set else None
        name = chosen.title if chosen else decision.chosen_scenario_id
        return Baseline(decision.chosen_scenario_id, name)

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _next_version(self, decision_id: str, user_id: str) -> int:
        # Soft-deleted versions still occupy their number
        latest = self.db.query(func.max(ScenarioSetDB.version)).filter(
            ScenarioSetDB.decision_id == decision_id,
            ScenarioSetDB.user_id == user_id,
        ).scalar() or 0
        return latest + 1

    def _stage_version(
        self,
        decision_id: str,
        user_id: str,
        scenarios: List[Dict[str, Any]],
        model_meta: Optional[Dict[str, Any]],
    ) -> ScenarioSetDB:
        now = utcnow()
        scenario_set = ScenarioSetDB(
            id=str(uuid4()),
            decision_id=decision_id,
            user_id=user_id,
            version=self._next_version(decision_id, user_id),
            scenarios=scenarios,
            model_meta=model_meta,
            is_deleted=False,
            created_at=now,
            updated_at=now,
        )
        self.db.add(scenario_set)
        return scenario_set
