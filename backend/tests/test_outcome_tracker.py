"""
Tests for OutcomeTracker.

Covers:
- Appending decision outcomes and corrections
- Effective outcome resolution against stored rows
- Measurable outcome prefill from a chosen scenario
- KPI actual updates and the outcome_saved episode transition
- Ownership scoping
"""
import pytest
from datetime import datetime
from unittest.mock import patch

from decision_engine.exceptions import ConflictError, NotFoundError, ValidationError
from decision_engine.models.db_models import (
    DecisionOutcomeDB, EpisodeStatus, KPIKey, KPIUnit, MeasurableOutcomeDB, OutcomeStatus,
)
from decision_engine.models.schemas import OutcomeKPI
from decision_engine.services.outcome_tracker import OutcomeTracker, build_kpis_from_scenario


def revenue_outcome(before=100.0, after=115.5, **extra):
    payload = {
        "outcome_type": "revenue",
        "timeframe_days": 30,
        "metric_name": "MRR",
        "metric_before": before,
        "metric_after": after,
    }
    payload.update(extra)
    return payload


def add_at(tracker, decision, user_id, when, payload):
    with patch("decision_engine.services.outcome_tracker.utcnow", return_value=when):
        return tracker.add_outcome(decision.id, user_id, payload)


@pytest.fixture
def tracker(db):
    return OutcomeTracker(db)


# =============================================================================
# TEST: DECISION OUTCOMES
# =============================================================================

class TestAddOutcome:

    def test_records_delta(self, tracker, decision, user_id):
        outcome = tracker.add_outcome(decision.id, user_id, revenue_outcome())

        assert outcome.delta_percent == pytest.approx(15.5)
        assert outcome.is_correction is False
        assert outcome.created_by == user_id

    def test_zero_before_leaves_delta_unset(self, tracker, decision, user_id):
        outcome = tracker.add_outcome(decision.id, user_id, revenue_outcome(before=0, after=50))
        assert outcome.delta_percent is None

    def test_correction_keeps_original(self, db, tracker, decision, user_id):
        original = tracker.add_outcome(decision.id, user_id, revenue_outcome())
        correction = tracker.add_outcome(decision.id, user_id, revenue_outcome(
            after=108.0,
            is_correction=True,
            corrects_outcome_id=original.id,
            correction_reason="Double-counted annual plans",
        ))

        assert db.query(DecisionOutcomeDB).count() == 2
        db.refresh(original)
        assert original.superseded_by_id == correction.id
        assert tracker.get_effective_outcome(decision.id, user_id).id == correction.id
        assert [o.id for o in tracker.get_effective_outcomes(decision.id, user_id)] == [correction.id]

    def test_out_of_order_correction(self, tracker, decision, user_id):
        o1 = add_at(tracker, decision, user_id, datetime(2026, 3, 1), revenue_outcome())
        o2 = add_at(tracker, decision, user_id, datetime(2026, 3, 2), revenue_outcome(after=120.0))
        add_at(tracker, decision, user_id, datetime(2026, 3, 3), revenue_outcome(
            after=110.0, is_correction=True, corrects_outcome_id=o1.id,
        ))

        assert tracker.get_effective_outcome(decision.id, user_id).id == o2.id

    def test_correction_requires_target(self, tracker, decision, user_id):
        with pytest.raises(ValidationError):
            tracker.add_outcome(decision.id, user_id, revenue_outcome(is_correction=True))

    def test_target_requires_correction_flag(self, tracker, decision, user_id):
        original = tracker.add_outcome(decision.id, user_id, revenue_outcome())
        with pytest.raises(ValidationError):
            tracker.add_outcome(decision.id, user_id, revenue_outcome(corrects_outcome_id=original.id))

    def test_correction_of_missing_outcome(self, tracker, decision, user_id):
        with pytest.raises(NotFoundError):
            tracker.add_outcome(decision.id, user_id, revenue_outcome(
                is_correction=True, corrects_outcome_id="does-not-exist",
            ))

    def test_correction_across_decisions_rejected(self, decision_service, tracker, decision, user_id, verdict_payload):
        other = decision_service.create_decision(user_id, "https://beta.dev", verdict_payload)
        original = tracker.add_outcome(other.id, user_id, revenue_outcome())

        with pytest.raises(NotFoundError):
            tracker.add_outcome(decision.id, user_id, revenue_outcome(
                is_correction=True, corrects_outcome_id=original.id,
            ))

    @pytest.mark.parametrize("field,value", [
        ("outcome_type", "profit"),
        ("metric_name", "Happiness"),
        ("timeframe_days", 0),
    ])
    def test_invalid_fields(self, tracker, decision, user_id, field, value):
        with pytest.raises(ValidationError) as exc:
            tracker.add_outcome(decision.id, user_id, revenue_outcome(**{field: value}))
        assert exc.value.field == field

    def test_foreign_decision(self, tracker, decision, other_user_id):
        with pytest.raises(NotFoundError):
            tracker.add_outcome(decision.id, other_user_id, revenue_outcome())

    def test_no_outcomes(self, tracker, decision, user_id):
        assert tracker.get_effective_outcome(decision.id, user_id) is None
        assert tracker.list_outcomes(decision.id, user_id) == []


# =============================================================================
# TEST: SCENARIO PREFILL
# =============================================================================

class TestApplyScenario:

    def test_prefills_balanced_targets(self, tracker, decision_with_scenarios, user_id):
        result = tracker.apply_scenario(decision_with_scenarios.id, user_id, "balanced")

        kpis = {kpi["key"]: kpi for kpi in result.outcome.kpis}
        assert kpis["Revenue"]["target"] == pytest.approx(11.0)
        assert kpis["Revenue"]["unit"] == KPIUnit.PERCENT.value
        assert kpis["Churn"]["target"] == pytest.approx(0.75)
        assert kpis["Churn"]["unit"] == KPIUnit.PERCENTAGE_POINTS.value
        assert kpis["MRR"]["unit"] == KPIUnit.EUR.value
        assert kpis["MRR"]["confidence"] == "low"
        assert result.outcome.horizon_days == 45
        assert result.outcome.status == OutcomeStatus.PENDING
        assert result.chosen_scenario_id == "balanced"
        assert result.episode_status == EpisodeStatus.PATH_CHOSEN

    def test_links_outcome_on_decision(self, db, tracker, decision_with_scenarios, user_id):
        result = tracker.apply_scenario(decision_with_scenarios.id, user_id, "aggressive")
        db.refresh(decision_with_scenarios)

        assert decision_with_scenarios.outcome_id == result.outcome.id
        assert decision_with_scenarios.chosen_scenario_id == "aggressive"

    def test_unparseable_horizon_uses_default(self, tracker, decision_with_scenarios, user_id):
        result = tracker.apply_scenario(decision_with_scenarios.id, user_id, "do_nothing")
        assert result.outcome.horizon_days == 90

    def test_reapply_replaces_in_place(self, db, tracker, decision_with_scenarios, user_id):
        first = tracker.apply_scenario(decision_with_scenarios.id, user_id, "balanced")
        second = tracker.apply_scenario(decision_with_scenarios.id, user_id, "conservative")

        assert second.outcome.id == first.outcome.id
        assert second.outcome.chosen_scenario_id == "conservative"
        assert db.query(MeasurableOutcomeDB).count() == 1

    def test_unknown_scenario_id(self, tracker, decision_with_scenarios, user_id):
        with pytest.raises(ValidationError):
            tracker.apply_scenario(decision_with_scenarios.id, user_id, "yolo")

    def test_no_scenarios_generated(self, tracker, decision, user_id):
        with pytest.raises(NotFoundError):
            tracker.apply_scenario(decision.id, user_id, "balanced")

    def test_primary_kpi_churn_not_duplicated(self, scenario_payload):
        from decision_engine.models.schemas import DecisionContext, ScenarioItem
        context = DecisionContext.model_validate({"primary_kpi": {"value": "churn_reduction", "source": "user"}})
        scenario = ScenarioItem.model_validate(scenario_payload["scenarios"][1])

        keys = [kpi.key for kpi in build_kpis_from_scenario(context, scenario)]
        assert keys == [KPIKey.REVENUE, KPIKey.CHURN]


# =============================================================================
# TEST: MEASURABLE OUTCOME UPDATES
# =============================================================================

class TestMeasurableOutcome:

    @pytest.fixture
    def applied(self, tracker, decision_with_scenarios, user_id):
        tracker.apply_scenario(decision_with_scenarios.id, user_id, "balanced")
        return decision_with_scenarios

    def test_update_kpi_actual(self, db, tracker, applied, user_id):
        outcome = tracker.update_kpi_actual(applied.id, user_id, "Revenue", 9.5)

        kpis = {kpi["key"]: kpi for kpi in outcome.kpis}
        assert kpis["Revenue"]["actual"] == 9.5
        assert kpis["Revenue"]["delta"] == 9.5
        assert kpis["Revenue"]["delta_pct"] is None
        assert kpis["Churn"]["actual"] is None

        db.refresh(applied)
        assert applied.episode_status == EpisodeStatus.OUTCOME_SAVED

    def test_update_kpi_actual_with_baseline(self, tracker, applied, user_id):
        tracker.update_outcome(applied.id, user_id, {"kpis": [
            {"key": "MRR", "unit": "€", "baseline": 20000, "target": 22000},
        ]})
        outcome = tracker.update_kpi_actual(applied.id, user_id, KPIKey.MRR, 23000)

        kpi = outcome.kpis[0]
        assert kpi["delta"] == 3000
        assert kpi["delta_pct"] == pytest.approx(15.0)

    def test_unknown_kpi_key(self, tracker, applied, user_id):
        with pytest.raises(ValidationError):
            tracker.update_kpi_actual(applied.id, user_id, "Vibes", 1.0)

    def test_kpi_not_tracked(self, tracker, applied, user_id):
        with pytest.raises(NotFoundError):
            tracker.update_kpi_actual(applied.id, user_id, "NPS", 40)

    def test_status_update_completes_episode(self, db, tracker, applied, user_id):
        tracker.update_status(applied.id, user_id, "achieved")
        db.refresh(applied)
        assert applied.episode_status == EpisodeStatus.OUTCOME_SAVED

    def test_in_progress_without_actuals_keeps_episode(self, db, tracker, applied, user_id):
        tracker.update_status(applied.id, user_id, OutcomeStatus.IN_PROGRESS)
        db.refresh(applied)
        assert applied.episode_status == EpisodeStatus.PATH_CHOSEN

    def test_invalid_status(self, tracker, applied, user_id):
        with pytest.raises(ValidationError):
            tracker.update_status(applied.id, user_id, "abandoned")

    def test_partial_update(self, tracker, applied, user_id):
        outcome = tracker.update_outcome(applied.id, user_id, {
            "summary": "Tracking since launch",
            "evidence_links": [{"label": "Dashboard", "url": "https://metrics.example/pro"}],
        })

        assert outcome.summary == "Tracking since launch"
        assert outcome.evidence_links[0]["label"] == "Dashboard"
        assert outcome.horizon_days == 45
        assert len(outcome.kpis) == 3

    def test_upsert_keeps_identity(self, tracker, applied, user_id):
        before = tracker.get_measurable_outcome(applied.id, user_id)
        created_at = before.created_at

        after = tracker.upsert_measurable_outcome(
            applied.id, user_id, "balanced",
            kpis=[OutcomeKPI(key=KPIKey.ARR, unit=KPIUnit.EUR)],
            horizon_days=30,
        )

        assert after.id == before.id
        assert after.created_at == created_at
        assert [kpi["key"] for kpi in after.kpis] == ["ARR"]

    def test_concurrent_first_write_updates_winner(self, db, tracker, applied, user_id):
        winner = tracker.get_measurable_outcome(applied.id, user_id)
        winner_id = winner.id

        # First lookup misses the row another writer just inserted
        with patch.object(tracker, "_find_measurable", side_effect=[None, winner]):
            outcome = tracker.upsert_measurable_outcome(
                applied.id, user_id, "conservative",
                kpis=[OutcomeKPI(key=KPIKey.ARR, unit=KPIUnit.EUR)],
                horizon_days=75,
            )

        assert outcome.id == winner_id
        assert outcome.chosen_scenario_id == "conservative"
        assert outcome.horizon_days == 75
        assert db.query(MeasurableOutcomeDB).count() == 1

    def test_concurrent_kpi_update_is_not_lost(self, tracker, applied, user_id):
        snapshot = tracker._read_kpis(applied.id, user_id)
        # Lands between the read above and the write below
        tracker.update_kpi_actual(applied.id, user_id, "Churn", 0.5)

        real_read = tracker._read_kpis
        calls = {"n": 0}

        def stale_then_real(decision_id, owner):
            calls["n"] += 1
            if calls["n"] == 1:
                return snapshot
            return real_read(decision_id, owner)

        with patch.object(tracker, "_read_kpis", side_effect=stale_then_real):
            outcome = tracker.update_kpi_actual(applied.id, user_id, "Revenue", 9.5)

        assert calls["n"] == 2
        kpis = {kpi["key"]: kpi for kpi in outcome.kpis}
        assert kpis["Revenue"]["actual"] == 9.5
        assert kpis["Churn"]["actual"] == 0.5

    def test_kpi_update_gives_up_with_conflict(self, db, applied, user_id):
        tracker = OutcomeTracker(db, max_retries=2)
        snapshot = tracker._read_kpis(applied.id, user_id)
        tracker.update_kpi_actual(applied.id, user_id, "Churn", 0.5)

        with patch.object(tracker, "_read_kpis", return_value=snapshot):
            with pytest.raises(ConflictError):
                tracker.update_kpi_actual(applied.id, user_id, "Revenue", 9.5)

        kpis = {kpi["key"]: kpi for kpi in tracker.get_measurable_outcome(applied.id, user_id).kpis}
        assert kpis["Revenue"]["actual"] is None
        assert kpis["Churn"]["actual"] == 0.5

    def test_upsert_rejects_bad_horizon(self, tracker, applied, user_id):
        with pytest.raises(ValidationError):
            tracker.upsert_measurable_outcome(applied.id, user_id, "balanced", kpis=[], horizon_days=0)

    def test_delete(self, db, tracker, applied, user_id):
        assert tracker.exists_for_verdict(applied.id, user_id) is True

        tracker.delete_outcome(applied.id, user_id)

        db.refresh(applied)
        assert applied.outcome_id is None
        assert tracker.exists_for_verdict(applied.id, user_id) is False
        with pytest.raises(NotFoundError):
            tracker.get_measurable_outcome(applied.id, user_id)

    def test_list_by_user(self, tracker, applied, user_id, other_user_id):
        assert len(tracker.list_by_user(user_id)) == 1
        assert tracker.list_by_user(other_user_id) == []

    def test_foreign_user_cannot_read(self, tracker, applied, other_user_id):
        with pytest.raises(NotFoundError):
            tracker.get_measurable_outcome(applied.id, other_user_id)
        assert tracker.exists_for_verdict(applied.id, other_user_id) is False
