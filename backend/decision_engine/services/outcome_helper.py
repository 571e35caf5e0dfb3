"""
Pure helpers for outcome math and correction-chain resolution.

An outcome is "effective" when no other outcome names it in
corrects_outcome_id. Resolution always scans the full list so a
correction that arrives out of order is still honoured. A correction
stands in the timeline at the position of the outcome it replaces.
"""
from typing import Iterable, List, Optional, Sequence, Tuple

from ..models.db_models import DecisionOutcomeDB, OutcomeStatus


def calculate_delta_percent(before: Optional[float], after: Optional[float]) -> Optional[float]:
    """Percentage change from before to after. None when either is missing or before is zero."""
    if before is None or after is None or before == 0:
        return None
    return (after - before) / before * 100


def compute_kpi_delta(
    baseline: Optional[float],
    actual: Optional[float],
) -> Tuple[Optional[float], Optional[float]]:
    """(absolute delta, percent delta) for one KPI. Percent stays None on a zero baseline."""
    if actual is None or baseline is None:
        return None, None
    return actual - baseline, calculate_delta_percent(baseline, actual)


def corrected_ids(outcomes: Iterable[DecisionOutcomeDB]) -> set:
    return {o.corrects_outcome_id for o in outcomes if o.corrects_outcome_id}


def get_effective_outcomes(outcomes: Sequence[DecisionOutcomeDB]) -> List[DecisionOutcomeDB]:
    """All outcomes not superseded by a correction, in their original order."""
    superseded = corrected_ids(outcomes)
    return [o for o in outcomes if o.id not in superseded]


def timeline_position(outcome: DecisionOutcomeDB, by_id: dict) -> Tuple:
    """
    Sort key for an outcome. A correction takes the place of the outcome it
    corrects, so it is ranked by the created_at of the root of its chain,
    then by its own created_at.
    """
    root = outcome
    seen = {outcome.id}
    while root.corrects_outcome_id in by_id and root.corrects_outcome_id not in seen:
        root = by_id[root.corrects_outcome_id]
        seen.add(root.id)
    return root.created_at, outcome.created_at


def get_latest_effective_outcome(outcomes: Sequence[DecisionOutcomeDB]) -> Optional[DecisionOutcomeDB]:
    """The effective outcome latest on the timeline, or None."""
    by_id = {o.id: o for o in outcomes}
    latest = None
    latest_key = None
    for outcome in get_effective_outcomes(outcomes):
        key = timeline_position(outcome, by_id)
        if latest is None or key > latest_key:
            latest, latest_key = outcome, key
    return latest


def format_outcome_summary(outcome: Optional[DecisionOutcomeDB]) -> str:
    """e.g. "+15.5% revenue (30d)"."""
    if outcome is None:
        return ""
    if outcome.delta_percent is None:
        return "Outcome recorded"
    sign = "" if outcome.delta_percent < 0 else "+"
    return f"{sign}{outcome.delta_percent:.1f}% {outcome.outcome_type.value} ({outcome.timeframe_days}d)"


def get_outcome_summary(outcomes: Sequence[DecisionOutcomeDB]) -> str:
    return format_outcome_summary(get_latest_effective_outcome(outcomes))


def is_outcome_complete(status: OutcomeStatus, kpis: Sequence[dict]) -> bool:
    """Achieved/missed, or at least one KPI has an actual measurement."""
    if status in (OutcomeStatus.ACHIEVED, OutcomeStatus.MISSED):
        return True
    return any(kpi.get("actual") is not None for kpi in kpis)
