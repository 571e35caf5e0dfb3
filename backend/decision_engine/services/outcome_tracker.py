"""
Outcome Tracker

Two ways of recording what actually happened after a decision:

1. Decision outcomes: append-only measurement events. A correction is a new
   row pointing at the row it replaces; both rows are kept forever and the
   effective outcome is resolved by scanning the correction links.

2. Measurable outcome: one KPI sheet per (user, verdict), prefilled from the
   chosen scenario and updated in place as actuals come in.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import DEFAULT_OUTCOME_HORIZON_DAYS, VERSION_APPEND_MAX_RETRIES
from ..exceptions import ConflictError, NotFoundError, ValidationError
from ..models.db_models import (
    DecisionDB, DecisionOutcomeDB, EpisodeStatus, KPIConfidence, KPIKey, KPIUnit,
    MeasurableOutcomeDB, OutcomeStatus, utcnow,
)
from ..models.schemas import (
    DecisionContext, MeasurableOutcomeUpdate, OutcomeCreate, OutcomeKPI, ScenarioItem, parse_payload,
)
from .lookup import get_owned_decision, read_with_retry
from .metric_parsing import midpoint_days, parse_percent_range
from .outcome_helper import (
    calculate_delta_percent, compute_kpi_delta, get_effective_outcomes,
    get_latest_effective_outcome, is_outcome_complete,
)
from .scenario_store import ScenarioStore, find_scenario, validate_scenario_id

logger = logging.getLogger(__name__)


# Context primary_kpi value -> KPI tracked for it
PRIMARY_KPI_MAP = {
    "mrr_growth": KPIKey.MRR,
    "churn_reduction": KPIKey.CHURN,
    "activation": KPIKey.ACTIVATION,
    "arpu": KPIKey.ARPA,
    "nrr": KPIKey.RETENTION,
    "cvr": KPIKey.CONVERSION,
}

KPI_UNITS = {
    KPIKey.CHURN: KPIUnit.PERCENT,
    KPIKey.CONVERSION: KPIUnit.PERCENT,
    KPIKey.ACTIVATION: KPIUnit.PERCENT,
    KPIKey.RETENTION: KPIUnit.PERCENT,
    KPIKey.MRR: KPIUnit.EUR,
    KPIKey.ARR: KPIUnit.EUR,
    KPIKey.ARPA: KPIUnit.EUR,
    KPIKey.CAC: KPIUnit.EUR,
    KPIKey.LTV: KPIUnit.EUR,
    KPIKey.NPS: KPIUnit.COUNT,
}


def unit_for_kpi(key: KPIKey) -> KPIUnit:
    return KPI_UNITS.get(key, KPIUnit.PERCENT)


def build_kpis_from_scenario(context: DecisionContext, scenario: ScenarioItem) -> List[OutcomeKPI]:
    """Revenue and churn targets from the scenario's ranges, plus the decision's primary KPI."""
    revenue_min, revenue_max = parse_percent_range(scenario.metrics.revenue_impact_range)
    churn_min, churn_max = parse_percent_range(scenario.metrics.churn_impact_range)

    kpis = [
        OutcomeKPI(
            key=KPIKey.REVENUE,
            unit=KPIUnit.PERCENT,
            baseline=0.0,
            target=(revenue_min + revenue_max) / 2,
            confidence=KPIConfidence.MEDIUM,
            notes=f"Expected impact: {scenario.metrics.revenue_impact_range}",
        ),
        OutcomeKPI(
            key=KPIKey.CHURN,
            unit=KPIUnit.PERCENTAGE_POINTS,
            baseline=0.0,
            target=(churn_min + churn_max) / 2,
            confidence=KPIConfidence.MEDIUM,
            notes=f"Expected impact: {scenario.metrics.churn_impact_range}",
        ),
    ]

    primary = PRIMARY_KPI_MAP.get(context.primary_kpi.value or "", KPIKey.MRR)
    if primary not in (KPIKey.REVENUE, KPIKey.CHURN):
        kpis.append(OutcomeKPI(
            key=primary,
            unit=unit_for_kpi(primary),
            baseline=0.0,
            target=0.0,
            confidence=KPIConfidence.LOW,
            notes="Set your baseline and target",
        ))
    return kpis


def with_kpi_deltas(kpis: List[OutcomeKPI]) -> List[Dict[str, Any]]:
    """Serialize KPIs with delta/delta_pct derived from baseline and actual."""
    rows = []
    for kpi in kpis:
        row = kpi.model_dump(mode="json")
        row["delta"], row["delta_pct"] = compute_kpi_delta(kpi.baseline, kpi.actual)
        rows.append(row)
    return rows


@dataclass
class ApplyScenarioResult:
    outcome: MeasurableOutcomeDB
    chosen_scenario_id: str
    episode_status: EpisodeStatus


class OutcomeTracker:
    """Records outcomes against decisions owned by a user."""

    def __init__(self, db: Session, max_retries: int = VERSION_APPEND_MAX_RETRIES):
        self.db = db
        self.max_retries = max_retries
        self.scenarios = ScenarioStore(db)

    # =========================================================================
    # DECISION OUTCOMES (append-only, correctable)
    # =========================================================================

    def add_outcome(
        self,
        decision_id: str,
        user_id: str,
        payload: Union[OutcomeCreate, Dict[str, Any]],
    ) -> DecisionOutcomeDB:
        """
        Append a measurement event to a decision.

        A correction must name an outcome that already exists on the same
        decision; that outcome gets superseded_by_id set in the same commit.

        Raises:
            ValidationError: bad outcome type, metric, timeframe or correction link
            NotFoundError: decision not owned, or corrected outcome missing
        """
        request = parse_payload(OutcomeCreate, payload)
        decision = get_owned_decision(self.db, decision_id, user_id)

        corrected = None
        if request.is_correction:
            corrected = self.db.query(DecisionOutcomeDB).filter(
                DecisionOutcomeDB.id == request.corrects_outcome_id,
                DecisionOutcomeDB.decision_id == decision_id,
            ).first()
            if corrected is None:
                raise NotFoundError("outcome", request.corrects_outcome_id)

        now = utcnow()
        outcome = DecisionOutcomeDB(
            id=str(uuid4()),
            decision_id=decision_id,
            user_id=user_id,
            outcome_type=request.outcome_type,
            timeframe_days=request.timeframe_days,
            metric_name=request.metric_name,
            metric_before=request.metric_before,
            metric_after=request.metric_after,
            delta_percent=calculate_delta_percent(request.metric_before, request.metric_after),
            notes=request.notes,
            evidence_url=request.evidence_url,
            is_correction=request.is_correction,
            corrects_outcome_id=request.corrects_outcome_id,
            correction_reason=request.correction_reason,
            created_by=user_id,
            created_at=now,
        )
        self.db.add(outcome)
        if corrected is not None:
            corrected.superseded_by_id = outcome.id
        decision.updated_at = now
        self.db.commit()

        if corrected is not None:
            logger.info(f"Outcome {outcome.id} corrects {corrected.id} on decision {decision_id}")
        else:
            logger.info(f"Recorded {request.outcome_type.value} outcome {outcome.id} on decision {decision_id}")
        return outcome

    def list_outcomes(self, decision_id: str, user_id: str) -> List[DecisionOutcomeDB]:
        """Every outcome including superseded ones, oldest first."""
        get_owned_decision(self.db, decision_id, user_id)
        return read_with_retry(
            self.db,
            self.db.query(DecisionOutcomeDB).filter(
                DecisionOutcomeDB.decision_id == decision_id,
            ).order_by(DecisionOutcomeDB.created_at).all,
            "list_outcomes",
        )

    def get_effective_outcomes(self, decision_id: str, user_id: str) -> List[DecisionOutcomeDB]:
        return get_effective_outcomes(self.list_outcomes(decision_id, user_id))

    def get_effective_outcome(self, decision_id: str, user_id: str) -> Optional[DecisionOutcomeDB]:
        return get_latest_effective_outcome(self.list_outcomes(decision_id, user_id))

    # =========================================================================
    # MEASURABLE OUTCOME (one per verdict, upserted)
    # =========================================================================

    def get_measurable_outcome(self, decision_id: str, user_id: str) -> MeasurableOutcomeDB:
        get_owned_decision(self.db, decision_id, user_id)
        outcome = self._find_measurable(decision_id, user_id)
        if outcome is None:
            raise NotFoundError("outcome", decision_id)
        return outcome

    def exists_for_verdict(self, decision_id: str, user_id: str) -> bool:
        return self._find_measurable(decision_id, user_id) is not None

    def list_by_user(self, user_id: str) -> List[MeasurableOutcomeDB]:
        """Most recently updated first."""
        return self.db.query(MeasurableOutcomeDB).filter(
            MeasurableOutcomeDB.user_id == user_id,
        ).order_by(MeasurableOutcomeDB.updated_at.desc()).all()

    def upsert_measurable_outcome(
        self,
        decision_id: str,
        user_id: str,
        chosen_scenario_id: str,
        kpis: List[OutcomeKPI],
        horizon_days: int,
        status: OutcomeStatus = OutcomeStatus.PENDING,
    ) -> MeasurableOutcomeDB:
        """Insert or replace in place; id and created_at survive a replace."""
        if horizon_days <= 0:
            raise ValidationError("horizon_days must be positive", field="horizon_days")
        get_owned_decision(self.db, decision_id, user_id)

        values = {
            "chosen_scenario_id": chosen_scenario_id,
            "status": status,
            "horizon_days": horizon_days,
            "kpis": with_kpi_deltas(kpis),
        }

        existing = self._find_measurable(decision_id, user_id)
        if existing is None:
            now = utcnow()
            outcome = MeasurableOutcomeDB(
                id=str(uuid4()),
                user_id=user_id,
                verdict_id=decision_id,
                evidence_links=[],
                created_at=now,
                updated_at=now,
                **values,
            )
            self.db.add(outcome)
            try:
                self.db.commit()
                logger.info(f"Created measurable outcome {outcome.id} for decision {decision_id}")
                return outcome
            except IntegrityError:
                # Concurrent first write; fall through and update the winner
                self.db.rollback()
                existing = self._find_measurable(decision_id, user_id)
                if existing is None:
                    raise

        for key, value in values.items():
            setattr(existing, key, value)
        existing.updated_at = utcnow()
        self.db.commit()
        logger.info(f"Replaced measurable outcome {existing.id} for decision {decision_id}")
        return existing

    def apply_scenario(self, decision_id: str, user_id: str, scenario_id: str) -> ApplyScenarioResult:
        """
        Choose a scenario and start measuring it.

        Sets the chosen scenario, prefills KPI targets from its metrics,
        derives the horizon from its time-to-impact range, upserts the
        outcome as pending and links it on the decision.
        """
        validate_scenario_id(scenario_id)
        get_owned_decision(self.db, decision_id, user_id)

        scenario_set = self.scenarios.get_current(decision_id, user_id)
        if scenario_set is None:
            raise NotFoundError("scenario_set", decision_id)
        scenario = find_scenario(scenario_set, scenario_id)
        if scenario is None:
            raise NotFoundError("scenario", scenario_id)

        decision = self.scenarios.set_chosen_scenario(decision_id, user_id, scenario_id)
        context = DecisionContext.model_validate(decision.context)

        outcome = self.upsert_measurable_outcome(
            decision_id,
            user_id,
            chosen_scenario_id=scenario_id,
            kpis=build_kpis_from_scenario(context, scenario),
            horizon_days=midpoint_days(scenario.metrics.time_to_impact, DEFAULT_OUTCOME_HORIZON_DAYS),
        )

        decision = get_owned_decision(self.db, decision_id, user_id)
        decision.outcome_id = outcome.id
        decision.updated_at = utcnow()
        self.db.commit()

        return ApplyScenarioResult(
            outcome=outcome,
            chosen_scenario_id=scenario_id,
            episode_status=decision.episode_status,
        )

    def update_outcome(
        self,
        decision_id: str,
        user_id: str,
        payload: Union[MeasurableOutcomeUpdate, Dict[str, Any]],
    ) -> MeasurableOutcomeDB:
        """Partial update of the measurable outcome. Only supplied fields change."""
        request = parse_payload(MeasurableOutcomeUpdate, payload)
        outcome = self.get_measurable_outcome(decision_id, user_id)

        if request.status is not None:
            outcome.status = request.status
        if request.horizon_days is not None:
            outcome.horizon_days = request.horizon_days
        if request.kpis is not None:
            outcome.kpis = with_kpi_deltas(request.kpis)
        if request.evidence_links is not None:
            outcome.evidence_links = [link.model_dump(mode="json") for link in request.evidence_links]
        if request.summary is not None:
            outcome.summary = request.summary
        if request.notes is not None:
            outcome.notes = request.notes

        return self._save_measurable(decision_id, user_id, outcome)

    def update_status(self, decision_id: str, user_id: str, status: Union[OutcomeStatus, str]) -> MeasurableOutcomeDB:
        try:
            status = OutcomeStatus(status)
        except ValueError:
            valid = ", ".join(s.value for s in OutcomeStatus)
            raise ValidationError(f"Invalid outcome status '{status}'. Must be one of: {valid}", field="status")

        outcome = self.get_measurable_outcome(decision_id, user_id)
        outcome.status = status
        return self._save_measurable(decision_id, user_id, outcome)

    def update_kpi_actual(
        self,
        decision_id: str,
        user_id: str,
        kpi_key: Union[KPIKey, str],
        actual: Optional[float],
    ) -> MeasurableOutcomeDB:
        """
        Set one KPI's actual and recompute its deltas; other KPIs are untouched.

        The KPI list is rewritten with a compare-and-swap on updated_at, so a
        concurrent write to another KPI forces a re-read instead of being lost.

        Raises:
            ValidationError: unknown KPI key
            NotFoundError: no outcome for the decision, or KPI not tracked
            ConflictError: lost the compare-and-swap on every attempt
        """
        try:
            kpi_key = KPIKey(kpi_key)
        except ValueError:
            raise ValidationError(f"Unknown KPI key '{kpi_key}'", field="kpi_key")

        get_owned_decision(self.db, decision_id, user_id)

        for attempt in range(1, self.max_retries + 1):
            current = self._read_kpis(decision_id, user_id)
            if current is None:
                raise NotFoundError("outcome", decision_id)
            outcome_id, seen_updated_at, status, stored = current

            kpis = [dict(kpi) for kpi in stored or []]
            target = next((kpi for kpi in kpis if kpi.get("key") == kpi_key.value), None)
            if target is None:
                raise NotFoundError("kpi", kpi_key.value)

            target["actual"] = actual
            target["delta"], target["delta_pct"] = compute_kpi_delta(target.get("baseline"), actual)

            result = self.db.execute(
                update(MeasurableOutcomeDB)
                .where(
                    MeasurableOutcomeDB.id == outcome_id,
                    MeasurableOutcomeDB.updated_at == seen_updated_at,
                )
                .values(kpis=kpis, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.db.rollback()
                logger.warning(
                    f"Concurrent KPI update on outcome {outcome_id}, attempt {attempt}/{self.max_retries}"
                )
                continue

            if is_outcome_complete(status, kpis):
                decision: DecisionDB = get_owned_decision(self.db, decision_id, user_id)
                decision.episode_status = EpisodeStatus.OUTCOME_SAVED
            self.db.commit()

            logger.info(f"Set {kpi_key.value} actual on outcome {outcome_id}")
            return self.get_measurable_outcome(decision_id, user_id)

        raise ConflictError(
            f"could not update {kpi_key.value} on decision {decision_id} after {self.max_retries} attempts"
        )

    def delete_outcome(self, decision_id: str, user_id: str) -> None:
        """Owner-scoped hard delete of the measurable outcome."""
        outcome = self.get_measurable_outcome(decision_id, user_id)
        self.db.delete(outcome)

        decision = get_owned_decision(self.db, decision_id, user_id)
        if decision.outcome_id == outcome.id:
            decision.outcome_id = None
        self.db.commit()
        logger.info(f"Deleted measurable outcome {outcome.id} for decision {decision_id}")

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _find_measurable(self, decision_id: str, user_id: str) -> Optional[MeasurableOutcomeDB]:
        return read_with_retry(
            self.db,
            self.db.query(MeasurableOutcomeDB).filter(
                MeasurableOutcomeDB.verdict_id == decision_id,
                MeasurableOutcomeDB.user_id == user_id,
            ).first,
            "get_measurable_outcome",
        )

    def _read_kpis(self, decision_id: str, user_id: str) -> Optional[Tuple[str, datetime, OutcomeStatus, List[dict]]]:
        """(id, updated_at, status, kpis) of the measurable outcome, read as plain columns."""
        row = read_with_retry(
            self.db,
            self.db.query(
                MeasurableOutcomeDB.id,
                MeasurableOutcomeDB.updated_at,
                MeasurableOutcomeDB.status,
                MeasurableOutcomeDB.kpis,
            ).filter(
                MeasurableOutcomeDB.verdict_id == decision_id,
                MeasurableOutcomeDB.user_id == user_id,
            ).first,
            "read_outcome_kpis",
        )
        if row is None:
            return None
        return row[0], row[1], row[2], row[3]

    def _save_measurable(self, decision_id: str, user_id: str, outcome: MeasurableOutcomeDB) -> MeasurableOutcomeDB:
        outcome.updated_at = utcnow()
        if is_outcome_complete(outcome.status, outcome.kpis):
            decision: DecisionDB = get_owned_decision(self.db, decision_id, user_id)
            decision.episode_status = EpisodeStatus.OUTCOME_SAVED
        self.db.commit()
        return outcome
