"""
Scenario Delta Calculator

Computes the metric differences between a baseline and a candidate scenario
of one decision and memoizes them in scenario_deltas, keyed by
(verdict_id, baseline_scenario_id, candidate_scenario_id). A cached row is
returned unchanged until the decision's scenarios are regenerated, which
clears every row for that decision.

The cache is an optimization: if writing it fails, the freshly computed
value is still returned.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..exceptions import NotFoundError
from ..models.db_models import DeltaDirection, ScenarioDeltaDB, utcnow
from ..models.schemas import ScenarioItem
from .lookup import get_owned_decision, read_with_retry
from .metric_parsing import compare_level, parse_day_range, parse_percent_range
from .scenario_store import ScenarioStore, find_scenario, validate_scenario_id

logger = logging.getLogger(__name__)


# =============================================================================
# DELTA VALUES
# =============================================================================

@dataclass(frozen=True)
class DeltaRange:
    min: float
    max: float

    def to_dict(self) -> Dict[str, float]:
        return {"min": self.min, "max": self.max}


@dataclass(frozen=True)
class DeltaValues:
    """Candidate minus baseline, per metric."""
    revenue_impact_pct: DeltaRange
    churn_impact_pp: DeltaRange
    time_to_impact_days: DeltaRange
    risk_delta: DeltaDirection
    effort_delta: DeltaDirection

    def to_dict(self) -> Dict[str, Any]:
        return {
            "revenue_impact_pct": self.revenue_impact_pct.to_dict(),
            "churn_impact_pp": self.churn_impact_pp.to_dict(),
            "time_to_impact_days": self.time_to_impact_days.to_dict(),
            "risk_delta": self.risk_delta.value,
            "effort_delta": self.effort_delta.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeltaValues":
        return cls(
            revenue_impact_pct=DeltaRange(**data["revenue_impact_pct"]),
            churn_impact_pp=DeltaRange(**data["churn_impact_pp"]),
            time_to_impact_days=DeltaRange(**data["time_to_impact_days"]),
            risk_delta=DeltaDirection(data["risk_delta"]),
            effort_delta=DeltaDirection(data["effort_delta"]),
        )


@dataclass(frozen=True)
class ScenarioDelta:
    verdict_id: str
    baseline_scenario_id: str
    candidate_scenario_id: str
    deltas: DeltaValues
    created_at: datetime
    from_cache: bool = field(default=False, compare=False)


@dataclass(frozen=True)
class DeltaInspectView:
    baseline_scenario_id: str
    baseline_name: str
    candidate_scenario_id: str
    candidate_name: str
    delta: ScenarioDelta


def compute_scenario_delta(baseline: ScenarioItem, candidate: ScenarioItem) -> DeltaValues:
    base_rev = parse_percent_range(baseline.metrics.revenue_impact_range)
    cand_rev = parse_percent_range(candidate.metrics.revenue_impact_range)
    base_churn = parse_percent_range(baseline.metrics.churn_impact_range)
    cand_churn = parse_percent_range(candidate.metrics.churn_impact_range)
    base_time = parse_day_range(baseline.metrics.time_to_impact)
    cand_time = parse_day_range(candidate.metrics.time_to_impact)

    return DeltaValues(
        revenue_impact_pct=DeltaRange(cand_rev[0] - base_rev[0], cand_rev[1] - base_rev[1]),
        churn_impact_pp=DeltaRange(cand_churn[0] - base_churn[0], cand_churn[1] - base_churn[1]),
        time_to_impact_days=DeltaRange(
            float(cand_time[0] - base_time[0]),
            float(cand_time[1] - base_time[1]),
        ),
        risk_delta=compare_level(baseline.metrics.risk_label, candidate.metrics.risk_label),
        effort_delta=compare_level(baseline.metrics.execution_effort, candidate.metrics.execution_effort),
    )


# =============================================================================
# CALCULATOR
# =============================================================================

class DeltaCalculator:
    """Get-or-compute access to the scenario delta cache."""

    def __init__(self, db: Session):
        self.db = db
        self.scenarios = ScenarioStore(db)

    def get_or_compute(
        self,
        decision_id: str,
        user_id: str,
        baseline_scenario_id: str,
        candidate_scenario_id: str,
    ) -> ScenarioDelta:
        """
        Cached delta for (decision, baseline, candidate), computing and
        caching it on a miss.

        Raises:
            ValidationError: unknown scenario id
            NotFoundError: decision not owned, no scenario set, or a
                scenario missing from the current set
        """
        validate_scenario_id(baseline_scenario_id)
        validate_scenario_id(candidate_scenario_id)
        get_owned_decision(self.db, decision_id, user_id)

        cached = self._get_cached(decision_id, baseline_scenario_id, candidate_scenario_id)
        if cached is not None:
            logger.debug(f"Delta cache hit: {decision_id} {baseline_scenario_id}->{candidate_scenario_id}")
            return self._to_delta(cached, from_cache=True)

        logger.debug(f"Delta cache miss: {decision_id} {baseline_scenario_id}->{candidate_scenario_id}")
        scenario_set = self.scenarios.get_current(decision_id, user_id)
        if scenario_set is None:
            raise NotFoundError("scenario_set", decision_id)

        baseline = find_scenario(scenario_set, baseline_scenario_id)
        if baseline is None:
            raise NotFoundError("scenario", baseline_scenario_id)
        candidate = find_scenario(scenario_set, candidate_scenario_id)
        if candidate is None:
            raise NotFoundError("scenario", candidate_scenario_id)

        deltas = self._compute(baseline, candidate)
        row = self._store(decision_id, user_id, baseline_scenario_id, candidate_scenario_id, deltas)
        if row is None:
            return ScenarioDelta(
                verdict_id=decision_id,
                baseline_scenario_id=baseline_scenario_id,
                candidate_scenario_id=candidate_scenario_id,
                deltas=deltas,
                created_at=utcnow(),
            )
        return self._to_delta(row)

    def get_delta_for_inspect(
        self,
        decision_id: str,
        user_id: str,
        candidate_scenario_id: str,
        baseline_scenario_id: Optional[str] = None,
    ) -> DeltaInspectView:
        """Delta against the chosen scenario (or balanced) when no baseline is given."""
        decision = get_owned_decision(self.db, decision_id, user_id)
        scenario_set = self.scenarios.get_current(decision_id, user_id)

        if baseline_scenario_id:
            chosen = find_scenario(scenario_set, baseline_scenario_id) if scenario_set else None
            baseline_name = chosen.title if chosen else baseline_scenario_id
        else:
            baseline = self.scenarios.resolve_baseline(decision, scenario_set)
            baseline_scenario_id, baseline_name = baseline.scenario_id, baseline.name

        delta = self.get_or_compute(decision_id, user_id, baseline_scenario_id, candidate_scenario_id)

        candidate = find_scenario(scenario_set, candidate_scenario_id) if scenario_set else None
        return DeltaInspectView(
            baseline_scenario_id=baseline_scenario_id,
            baseline_name=baseline_name,
            candidate_scenario_id=candidate_scenario_id,
            candidate_name=candidate.title if candidate else candidate_scenario_id,
            delta=delta,
        )

    def invalidate_for_decision(self, decision_id: str, commit: bool = True) -> int:
        """Delete every cached delta for the decision. Returns rows removed."""
        removed = self.db.query(ScenarioDeltaDB).filter(
            ScenarioDeltaDB.verdict_id == decision_id
        ).delete(synchronize_session=False)
        if commit:
            self.db.commit()
        logger.info(f"Invalidated {removed} cached deltas for decision {decision_id}")
        return removed

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _compute(self, baseline: ScenarioItem, candidate: ScenarioItem) -> DeltaValues:
        return compute_scenario_delta(baseline, candidate)

    def _get_cached(self, decision_id: str, baseline_id: str, candidate_id: str) -> Optional[ScenarioDeltaDB]:
        return read_with_retry(
            self.db,
            self.db.query(ScenarioDeltaDB).filter(
                ScenarioDeltaDB.verdict_id == decision_id,
                ScenarioDeltaDB.baseline_scenario_id == baseline_id,
                ScenarioDeltaDB.candidate_scenario_id == candidate_id,
            ).first,
            "get_cached_delta",
        )

    def _store(
        self,
        decision_id: str,
        user_id: str,
        baseline_id: str,
        candidate_id: str,
        deltas: DeltaValues,
    ) -> Optional[ScenarioDeltaDB]:
        """Insert the cache row. A concurrent writer's row wins; other failures are logged and skipped."""
        now = utcnow()
        row = ScenarioDeltaDB(
            id=str(uuid4()),
            verdict_id=decision_id,
            user_id=user_id,
            baseline_scenario_id=baseline_id,
            candidate_scenario_id=candidate_id,
            deltas=deltas.to_dict(),
            created_at=now,
            updated_at=now,
        )
        self.db.add(row)
        try:
            self.db.commit()
            return row
        except IntegrityError:
            self.db.rollback()
            logger.debug(f"Delta for {decision_id} {baseline_id}->{candidate_id} cached concurrently")
            return self._get_cached(decision_id, baseline_id, candidate_id)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(f"Failed to cache delta for {decision_id} {baseline_id}->{candidate_id}: {e}")
            return None

    def _to_delta(self, row: ScenarioDeltaDB, from_cache: bool = False) -> ScenarioDelta:
        return ScenarioDelta(
            verdict_id=row.verdict_id,
            baseline_scenario_id=row.baseline_scenario_id,
            candidate_scenario_id=row.candidate_scenario_id,
            deltas=DeltaValues.from_dict(row.deltas),
            created_at=row.created_at,
            from_cache=from_cache,
        )
