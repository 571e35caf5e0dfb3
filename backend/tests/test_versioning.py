"""
Tests for the Versioned Record Store.

1. append_version is pure and always moves the counter by exactly one
2. Context/verdict appends keep version == len(history)
3. Earlier history entries are never changed
4. A stale compare-and-swap is retried instead of overwriting history
5. The unique (decision_id, version) index rejects a duplicate entry
6. Ownership and soft-delete scoping
"""
import pytest
from datetime import datetime
from unittest.mock import patch
from uuid import uuid4

from sqlalchemy.exc import IntegrityError

from decision_engine.exceptions import ConflictError, NotFoundError
from decision_engine.models.db_models import DecisionContextVersionDB
from decision_engine.services.versioning import (
    VersionedField, VersionedRecordStore, append_version,
)


# =============================================================================
# TEST: PURE APPEND
# =============================================================================

class TestAppendVersion:

    def test_increments_by_one(self):
        new_version, entry = append_version(3, {"a": 1}, "user-a", reason="edit")
        assert new_version == 4
        assert entry.version == 4
        assert entry.value == {"a": 1}
        assert entry.created_by == "user-a"
        assert entry.reason == "edit"

    def test_uses_supplied_timestamp(self):
        now = datetime(2026, 3, 1, 12, 0)
        _, entry = append_version(0, {}, None, now=now)
        assert entry.created_at == now

    def test_negative_counter_rejected(self):
        with pytest.raises(ValueError):
            append_version(-1, {}, None)


# =============================================================================
# TEST: STORE
# =============================================================================

class TestVersionedRecordStore:

    def test_created_decision_starts_at_version_one(self, decision):
        assert decision.context_version == 1
        assert decision.verdict_version == 1
        assert [v.version for v in decision.context_versions] == [1]
        assert [v.version for v in decision.verdict_versions] == [1]
        assert decision.context_versions[0].reason == "Initial context from creation"

    def test_context_updates_keep_counter_and_history_in_step(self, decision_service, decision, user_id):
        decision_service.update_context(decision.id, user_id, {"company_stage": "seed"}, reason="typo")
        updated = decision_service.update_context(decision.id, user_id, {"business_model": "b2b_saas"})

        assert updated.context_version == 3
        assert len(updated.context_versions) == 3
        assert [v.version for v in updated.context_versions] == [1, 2, 3]
        assert updated.context_versions[1].reason == "typo"

    def test_history_entries_are_never_rewritten(self, db, decision_service, decision, user_id):
        before = [(v.id, v.version, dict(v.value)) for v in decision.context_versions]

        decision_service.update_context(decision.id, user_id, {"company_stage": "growth"})
        decision_service.update_context(decision.id, user_id, {"company_stage": "scale"})

        rows = db.query(DecisionContextVersionDB).filter(
            DecisionContextVersionDB.decision_id == decision.id
        ).order_by(DecisionContextVersionDB.version).all()
        assert [(r.id, r.version, r.value) for r in rows[:1]] == before
        assert rows[1].value["company_stage"]["value"] == "growth"
        assert rows[2].value["company_stage"]["value"] == "scale"

    def test_verdict_append_records_model_meta(self, decision_service, decision, user_id, verdict_factory):
        updated = decision_service.regenerate_verdict(
            decision.id, user_id,
            verdict_factory(headline="Hold prices"),
            reason="new competitor data",
            model_meta={"model_name": "verdict-gen", "prompt_version": "v9"},
        )

        assert updated.verdict_version == 2
        assert len(updated.verdict_versions) == 2
        assert updated.verdict["headline"] == "Hold prices"
        assert updated.verdict_versions[1].model_meta["prompt_version"] == "v9"
        assert updated.verdict_versions[0].value["headline"] == "Raise Pro tier to $49"

    def test_stale_read_is_retried_not_overwritten(self, db, decision_service, decision, user_id):
        decision_service.update_context(decision.id, user_id, {"company_stage": "seed"})

        store = VersionedRecordStore(db)
        real_read = store._read_current
        calls = {"n": 0}

        def stale_then_real(decision_id, owner, field):
            calls["n"] += 1
            version, value = real_read(decision_id, owner, field)
            if calls["n"] == 1:
                # Simulates a concurrent writer landing between read and write
                return version - 1, value
            return version, value

        with patch.object(store, "_read_current", side_effect=stale_then_real):
            updated = store.append(
                decision.id, user_id, VersionedField.CONTEXT,
                lambda current: {**current, "note": "concurrent"}, actor=user_id,
            )

        assert calls["n"] == 2
        assert updated.context_version == 3
        assert [v.version for v in updated.context_versions] == [1, 2, 3]

    def test_gives_up_with_conflict_after_max_retries(self, db, decision, user_id):
        store = VersionedRecordStore(db, max_retries=2)

        with patch.object(store, "_read_current", return_value=(0, {})):
            with pytest.raises(ConflictError):
                store.append(decision.id, user_id, VersionedField.CONTEXT, {}, actor=user_id)

        db.expire_all()
        assert decision.context_version == 1
        assert len(decision.context_versions) == 1

    def test_duplicate_history_version_rejected_by_index(self, db, decision):
        db.add(DecisionContextVersionDB(
            id=str(uuid4()),
            decision_id=decision.id,
            version=1,
            value={},
        ))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

    def test_other_user_gets_not_found(self, decision_service, decision, other_user_id):
        with pytest.raises(NotFoundError):
            decision_service.update_context(decision.id, other_user_id, {"company_stage": "seed"})

    def test_soft_deleted_decision_cannot_be_versioned(self, decision_service, decision, user_id):
        decision_service.soft_delete(decision.id, user_id)
        with pytest.raises(NotFoundError):
            decision_service.regenerate_verdict(decision.id, user_id, {"headline": "x"})

    def test_get_history_oldest_first(self, db, decision_service, decision, user_id):
        decision_service.update_context(decision.id, user_id, {"company_stage": "seed"}, reason="r1")

        history = VersionedRecordStore(db).get_history(decision.id, user_id, VersionedField.CONTEXT)

        assert [entry.version for entry in history] == [1, 2]
        assert history[1].reason == "r1"
        assert history[1].created_by == user_id
