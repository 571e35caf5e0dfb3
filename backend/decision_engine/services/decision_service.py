"""
Decision Service

Entry point for the decision lifecycle: create, read, list, edit context,
regenerate verdict, change status, compare and soft delete. Every operation
is scoped to the owning user; another user's decision is indistinguishable
from a missing one.

Verdicts and inferred context are produced elsewhere and handed in as
payloads.
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from ..config import DECISION_LIST_DEFAULT_PAGE_SIZE, DECISION_LIST_MAX_PAGE_SIZE
from ..exceptions import NotFoundError, ValidationError
from ..models.db_models import (
    DecisionDB, DecisionOutcomeDB, DecisionStatus, EpisodeStatus, utcnow,
)
from ..models.schemas import (
    ContextInput, DecisionContext, DecisionListFilters, InferenceResult, ModelMeta,
    OutcomeCreate, StatusUpdate, Verdict, parse_payload, to_naive_utc,
)
from .context_resolver import (
    extract_company_name, has_changes, merge_user_context, resolve_full_context,
)
from .lookup import get_owned_decision, read_with_retry
from .outcome_helper import format_outcome_summary, get_latest_effective_outcome
from .outcome_tracker import OutcomeTracker
from .status_machine import DecisionStatusMachine
from .versioning import VersionedField, VersionedRecordStore

logger = logging.getLogger(__name__)

COMPARE_MIN = 2
COMPARE_MAX = 3


def confidence_label_from_score(score: float) -> str:
    if score >= 0.8:
        return "high"
    if score >= 0.6:
        return "medium"
    return "low"


def risk_label_from_score(score: float) -> str:
    if score >= 0.7:
        return "high"
    if score >= 0.4:
        return "medium"
    return "low"


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class DecisionListItem:
    id: str
    company_name: str
    website_url: str
    verdict_headline: str
    verdict_summary: str
    confidence_score: float
    confidence_label: str
    risk_score: float
    risk_label: str
    status: DecisionStatus
    episode_status: EpisodeStatus
    context: Dict[str, Any]
    outcome_summary: str
    has_scenarios: bool
    chosen_scenario_id: Optional[str]
    has_outcome: bool
    created_at: datetime
    updated_at: datetime


@dataclass
class DecisionListResult:
    decisions: List[DecisionListItem]
    page: int
    page_size: int
    total: int
    total_pages: int


@dataclass
class DecisionCompareItem:
    id: str
    company_name: str
    website_url: str
    verdict_headline: str
    verdict_summary: str
    confidence_score: float
    confidence_label: str
    risk_score: float
    risk_label: str
    status: DecisionStatus
    context: Dict[str, Any]
    expected_impact: Dict[str, Any]
    verdict: Dict[str, Any]
    created_at: datetime
    latest_outcome: Optional[DecisionOutcomeDB] = None
    outcome_summary: str = ""


@dataclass
class _VerdictView:
    """Fields the list/compare views read off a stored verdict."""
    headline: str = ""
    summary: str = ""
    confidence_score: float = 0.0
    confidence_label: str = "low"
    risk_score: float = 0.0
    risk_label: str = "low"
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def of(cls, verdict: Dict[str, Any]) -> "_VerdictView":
        parsed = Verdict.model_validate(verdict)
        risk = parsed.what_to_expect
        return cls(
            headline=parsed.headline,
            summary=parsed.summary,
            confidence_score=parsed.confidence_score,
            confidence_label=parsed.confidence_label or confidence_label_from_score(parsed.confidence_score),
            risk_score=risk.risk_score,
            risk_label=risk.risk_label or risk_label_from_score(risk.risk_score),
            raw=verdict,
        )


def _verdict_columns(verdict: Verdict, model_meta: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    details = verdict.supporting_details
    return {
        "verdict_headline": verdict.headline[:500],
        "confidence_score": verdict.confidence_score,
        "risk_score": verdict.what_to_expect.risk_score,
        "model_meta": model_meta,
        "expected_impact": {
            "revenue_range": details.expected_revenue_impact,
            "churn_note": details.churn_outlook,
        },
    }


def _context_columns(context: Dict[str, Any]) -> Dict[str, Any]:
    parsed = DecisionContext.model_validate(context)
    return {
        "primary_kpi": parsed.primary_kpi.value,
        "market_segment": parsed.market.segment.value,
    }


def _verdict_dump(verdict: Verdict) -> Dict[str, Any]:
    data = verdict.model_dump(mode="json")
    if not data.get("confidence_label"):
        data["confidence_label"] = confidence_label_from_score(verdict.confidence_score)
    return data


class DecisionService:
    """Lifecycle operations on decisions owned by a user."""

    def __init__(self, db: Session):
        self.db = db
        self.versions = VersionedRecordStore(db)
        self.status_machine = DecisionStatusMachine(db)
        self.outcomes = OutcomeTracker(db)

    # =========================================================================
    # CREATE / READ
    # =========================================================================

    def create_decision(
        self,
        user_id: str,
        website_url: str,
        verdict: Union[Verdict, Dict[str, Any]],
        context: Optional[Union[ContextInput, Dict[str, Any]]] = None,
        workspace_defaults: Optional[Union[ContextInput, Dict[str, Any]]] = None,
        inferred: Optional[Union[InferenceResult, Dict[str, Any]]] = None,
        model_meta: Optional[Union[ModelMeta, Dict[str, Any]]] = None,
    ) -> DecisionDB:
        """
        Create a decision at version 1 of context and verdict, status proposed.

        Args:
            user_id: Owner
            website_url: Company website the decision is about
            verdict: AI-produced verdict payload
            context: Values the user typed in (highest priority)
            workspace_defaults: The user's saved workspace defaults
            inferred: Values inferred from the website, with confidence
            model_meta: Provenance of the verdict

        Returns:
            The stored decision
        """
        if not website_url or not website_url.strip():
            raise ValidationError("website_url is required", field="website_url")

        verdict = parse_payload(Verdict, verdict)
        user_context = parse_payload(ContextInput, context) if context is not None else None
        workspace = parse_payload(ContextInput, workspace_defaults) if workspace_defaults is not None else None
        inference = parse_payload(InferenceResult, inferred) if inferred is not None else None
        meta = parse_payload(ModelMeta, model_meta).model_dump(mode="json") if model_meta is not None else None

        context_value = resolve_full_context(user_context, workspace, inference).model_dump(mode="json")
        verdict_value = _verdict_dump(verdict)

        now = utcnow()
        website_url = website_url.strip()
        decision = DecisionDB(
            id=str(uuid4()),
            user_id=user_id,
            company_name=extract_company_name(website_url),
            website_url=website_url,
            status=DecisionStatus.PROPOSED,
            episode_status=EpisodeStatus.DRAFT,
            is_deleted=False,
            created_at=now,
            updated_at=now,
            **_verdict_columns(verdict, meta),
            **_context_columns(context_value),
        )
        self.db.add(decision)
        self.versions.build_initial(
            decision, VersionedField.CONTEXT, context_value, user_id, "Initial context from creation"
        )
        self.versions.build_initial(
            decision, VersionedField.VERDICT, verdict_value, user_id, "Initial verdict from AI analysis",
            history_extra={"model_meta": meta},
        )
        self.status_machine.record_initial(decision, user_id)
        self.db.commit()

        logger.info(f"Created decision {decision.id} for {decision.company_name} (user {user_id})")
        return decision

    def get_decision(self, decision_id: str, user_id: str, include_deleted: bool = False) -> DecisionDB:
        """include_deleted is for administrative and audit reads only."""
        return get_owned_decision(self.db, decision_id, user_id, include_deleted=include_deleted)

    def list_decisions(
        self,
        user_id: str,
        filters: Optional[Union[DecisionListFilters, Dict[str, Any]]] = None,
    ) -> DecisionListResult:
        """Newest first, filtered and paginated."""
        filters = parse_payload(DecisionListFilters, filters or {})

        query = self.db.query(DecisionDB).filter(
            DecisionDB.user_id == user_id,
            DecisionDB.is_deleted.is_(False),
        )
        if filters.status is not None:
            query = query.filter(DecisionDB.status == filters.status)
        if filters.segment:
            query = query.filter(DecisionDB.market_segment == filters.segment)
        if filters.kpi:
            query = query.filter(DecisionDB.primary_kpi == filters.kpi)
        if filters.min_confidence:
            query = query.filter(DecisionDB.confidence_score >= filters.min_confidence)
        if filters.created_from is not None:
            query = query.filter(DecisionDB.created_at >= to_naive_utc(filters.created_from))
        if filters.created_to is not None:
            query = query.filter(DecisionDB.created_at <= to_naive_utc(filters.created_to))
        if filters.search:
            escaped = filters.search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            pattern = f"%{escaped}%"
            query = query.filter(or_(
                DecisionDB.company_name.ilike(pattern, escape="\\"),
                DecisionDB.website_url.ilike(pattern, escape="\\"),
                DecisionDB.verdict_headline.ilike(pattern, escape="\\"),
            ))

        page = max(filters.page, 1)
        page_size = filters.page_size if filters.page_size >= 1 else DECISION_LIST_DEFAULT_PAGE_SIZE
        page_size = min(page_size, DECISION_LIST_MAX_PAGE_SIZE)

        total = read_with_retry(self.db, query.count, "count_decisions")
        decisions = read_with_retry(
            self.db,
            query.order_by(DecisionDB.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all,
            "list_decisions",
        )
        outcomes_by_decision = self._outcomes_for([d.id for d in decisions])

        items = []
        for d in decisions:
            verdict = _VerdictView.of(d.verdict)
            latest = get_latest_effective_outcome(outcomes_by_decision.get(d.id, []))
            items.append(DecisionListItem(
                id=d.id,
                company_name=d.company_name,
                website_url=d.website_url,
                verdict_headline=verdict.headline,
                verdict_summary=verdict.summary,
                confidence_score=verdict.confidence_score,
                confidence_label=verdict.confidence_label,
                risk_score=verdict.risk_score,
                risk_label=verdict.risk_label,
                status=d.status,
                episode_status=d.episode_status,
                context=d.context,
                outcome_summary=format_outcome_summary(latest),
                has_scenarios=d.scenarios_id is not None,
                chosen_scenario_id=d.chosen_scenario_id,
                has_outcome=d.outcome_id is not None or latest is not None,
                created_at=d.created_at,
                updated_at=d.updated_at,
            ))

        return DecisionListResult(
            decisions=items,
            page=page,
            page_size=page_size,
            total=total,
            total_pages=math.ceil(total / page_size) if total else 0,
        )

    # =========================================================================
    # VERSIONED UPDATES
    # =========================================================================

    def update_context(
        self,
        decision_id: str,
        user_id: str,
        changes: Union[ContextInput, Dict[str, Any]],
        reason: Optional[str] = None,
    ) -> DecisionDB:
        """Merge the supplied fields (as user-sourced) and append a context version."""
        changes = parse_payload(ContextInput, changes)
        if not has_changes(changes):
            raise ValidationError("no context fields supplied", field="context")

        def merge(current: Dict[str, Any]) -> Dict[str, Any]:
            merged = merge_user_context(DecisionContext.model_validate(current), changes)
            return merged.model_dump(mode="json")

        return self.versions.append(
            decision_id,
            user_id,
            VersionedField.CONTEXT,
            merge,
            actor=user_id,
            reason=reason,
            extra_values=_context_columns,
        )

    def regenerate_verdict(
        self,
        decision_id: str,
        user_id: str,
        verdict: Union[Verdict, Dict[str, Any]],
        reason: Optional[str] = None,
        model_meta: Optional[Union[ModelMeta, Dict[str, Any]]] = None,
    ) -> DecisionDB:
        """Append a verdict version produced by an external generator."""
        verdict = parse_payload(Verdict, verdict)
        meta = parse_payload(ModelMeta, model_meta).model_dump(mode="json") if model_meta is not None else None
        columns = _verdict_columns(verdict, meta)
        if meta is None:
            # Keep the previous provenance
            columns.pop("model_meta")

        return self.versions.append(
            decision_id,
            user_id,
            VersionedField.VERDICT,
            _verdict_dump(verdict),
            actor=user_id,
            reason=reason,
            extra_values=columns,
            history_extra={"model_meta": meta},
        )

    def update_status(
        self,
        decision_id: str,
        user_id: str,
        status: Union[DecisionStatus, str],
        reason: Optional[str] = None,
        implemented_at: Optional[datetime] = None,
        rollback_at: Optional[datetime] = None,
    ) -> DecisionDB:
        request = parse_payload(StatusUpdate, {
            "status": status,
            "reason": reason,
            "implemented_at": implemented_at,
            "rollback_at": rollback_at,
        })
        return self.status_machine.transition(decision_id, user_id, request)

    # =========================================================================
    # OUTCOMES
    # =========================================================================

    def add_outcome(
        self,
        decision_id: str,
        user_id: str,
        payload: Union[OutcomeCreate, Dict[str, Any]],
    ) -> DecisionOutcomeDB:
        return self.outcomes.add_outcome(decision_id, user_id, payload)

    def get_effective_outcomes(self, decision_id: str, user_id: str) -> List[DecisionOutcomeDB]:
        return self.outcomes.get_effective_outcomes(decision_id, user_id)

    def get_effective_outcome(self, decision_id: str, user_id: str) -> Optional[DecisionOutcomeDB]:
        return self.outcomes.get_effective_outcome(decision_id, user_id)

    # =========================================================================
    # COMPARE
    # =========================================================================

    def compare_decisions(self, user_id: str, decision_ids: List[str]) -> List[DecisionCompareItem]:
        """
        Side-by-side view of 2-3 distinct decisions, in request order.
        Ids that are missing, deleted or not owned are left out.
        """
        if not COMPARE_MIN <= len(dict.fromkeys(decision_ids)) <= COMPARE_MAX:
            raise ValidationError(
                f"compare needs between {COMPARE_MIN} and {COMPARE_MAX} decision ids",
                field="ids",
            )

        decisions = read_with_retry(
            self.db,
            self.db.query(DecisionDB).filter(
                DecisionDB.id.in_(decision_ids),
                DecisionDB.user_id == user_id,
                DecisionDB.is_deleted.is_(False),
            ).all,
            "compare_decisions",
        )
        by_id = {d.id: d for d in decisions}
        outcomes_by_decision = self._outcomes_for(list(by_id))

        items = []
        for decision_id in dict.fromkeys(decision_ids):
            d = by_id.get(decision_id)
            if d is None:
                continue
            verdict = _VerdictView.of(d.verdict)
            latest = get_latest_effective_outcome(outcomes_by_decision.get(d.id, []))
            items.append(DecisionCompareItem(
                id=d.id,
                company_name=d.company_name,
                website_url=d.website_url,
                verdict_headline=verdict.headline,
                verdict_summary=verdict.summary,
                confidence_score=verdict.confidence_score,
                confidence_label=verdict.confidence_label,
                risk_score=verdict.risk_score,
                risk_label=verdict.risk_label,
                status=d.status,
                context=d.context,
                expected_impact=d.expected_impact or {},
                verdict=verdict.raw,
                created_at=d.created_at,
                latest_outcome=latest,
                outcome_summary=format_outcome_summary(latest),
            ))
        return items

    # =========================================================================
    # DELETE
    # =========================================================================

    def soft_delete(self, decision_id: str, user_id: str) -> None:
        """Hide the decision from every read. The row and its history stay."""
        now = utcnow()
        result = self.db.execute(
            update(DecisionDB)
            .where(
                DecisionDB.id == decision_id,
                DecisionDB.user_id == user_id,
                DecisionDB.is_deleted.is_(False),
            )
            .values(is_deleted=True, deleted_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            raise NotFoundError("decision", decision_id)
        self.db.commit()
        logger.info(f"Soft-deleted decision {decision_id}")

    def delete_user_decisions(self, user_id: str) -> int:
        """Soft-delete every decision the user owns. Returns how many were hidden."""
        now = utcnow()
        result = self.db.execute(
            update(DecisionDB)
            .where(
                DecisionDB.user_id == user_id,
                DecisionDB.is_deleted.is_(False),
            )
            .values(is_deleted=True, deleted_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        logger.info(f"Soft-deleted {result.rowcount} decisions for user {user_id}")
        return result.rowcount

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _outcomes_for(self, decision_ids: List[str]) -> Dict[str, List[DecisionOutcomeDB]]:
        if not decision_ids:
            return {}
        rows = self.db.query(DecisionOutcomeDB).filter(
            DecisionOutcomeDB.decision_id.in_(decision_ids),
        ).order_by(DecisionOutcomeDB.created_at).all()
        grouped: Dict[str, List[DecisionOutcomeDB]] = {}
        for row in rows:
            grouped.setdefault(row.decision_id, []).append(row)
        return grouped
