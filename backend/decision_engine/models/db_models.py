"""
Decision Engine - SQLAlchemy ORM Models
Relational storage for decisions, their version history, outcomes,
scenario sets and the scenario delta cache
"""
from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, Float, DateTime, Text, JSON, ForeignKey,
    Enum as SQLEnum, Boolean, UniqueConstraint, Index,
)
from sqlalchemy.orm import relationship
from ..database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what DateTime columns round-trip."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================================
# ENUMS FOR DECISION LIFECYCLE
# =============================================================================

class DecisionStatus(str, Enum):
    """Lifecycle status of a decision."""
    PROPOSED = "proposed"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    IMPLEMENTED = "implemented"
    ROLLED_BACK = "rolled_back"


class EpisodeStatus(str, Enum):
    """How far the user has progressed through explore -> choose -> measure."""
    DRAFT = "draft"
    EXPLORED = "explored"
    PATH_CHOSEN = "path_chosen"
    OUTCOME_SAVED = "outcome_saved"


class ContextSource(str, Enum):
    """Where a context field value came from."""
    USER = "user"
    WORKSPACE = "workspace"
    INFERRED = "inferred"


# =============================================================================
# ENUMS FOR OUTCOMES
# =============================================================================

class OutcomeType(str, Enum):
    REVENUE = "revenue"
    CHURN = "churn"
    ACTIVATION = "activation"
    RETENTION = "retention"
    PRICING = "pricing"
    OTHER = "other"


class OutcomeStatus(str, Enum):
    """Status of a measurable outcome."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    ACHIEVED = "achieved"
    MISSED = "missed"


class KPIKey(str, Enum):
    """Known metric kinds. OTHER covers anything not listed."""
    MRR = "MRR"
    ARR = "ARR"
    REVENUE = "Revenue"
    CONVERSION = "Conversion"
    CHURN = "Churn"
    ARPA = "ARPA"
    CAC = "CAC"
    ACTIVATION = "Activation"
    RETENTION = "Retention"
    NPS = "NPS"
    LTV = "LTV"
    OTHER = "Other"


class KPIUnit(str, Enum):
    PERCENT = "%"
    PERCENTAGE_POINTS = "pp"
    EUR = "€"
    USD = "$"
    COUNT = "count"
    DAYS = "days"
    MULTIPLIER = "x"


class KPIConfidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# =============================================================================
# ENUMS FOR SCENARIOS
# =============================================================================

class ScenarioId(str, Enum):
    """Well-known scenario ids. BALANCED is the recommended baseline."""
    AGGRESSIVE = "aggressive"
    BALANCED = "balanced"
    CONSERVATIVE = "conservative"
    DO_NOTHING = "do_nothing"


class DeltaDirection(str, Enum):
    UP = "up"
    SAME = "same"
    DOWN = "down"


# =============================================================================
# DECISION AGGREGATE
# =============================================================================

class DecisionDB(Base):
    """
    Root aggregate for one pricing decision.

    context/verdict hold the current value; the full history lives in the
    append-only version tables. context_version always equals the number of
    rows in decision_context_versions for this decision (same for verdict).
    """
    __tablename__ = "decisions"

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), nullable=False, index=True)

    # Target company
    company_name = Column(String(255), nullable=False)
    website_url = Column(String(2048), nullable=False)

    # Current context
    context = Column(JSON, nullable=False)
    context_version = Column(Integer, nullable=False, default=1)

    # Current verdict
    verdict = Column(JSON, nullable=False)
    verdict_version = Column(Integer, nullable=False, default=1)
    model_meta = Column(JSON, nullable=True)
    expected_impact = Column(JSON, nullable=True)  # {revenue_range, churn_note}

    # Denormalized from context/verdict for list filtering
    verdict_headline = Column(String(500), nullable=True)
    confidence_score = Column(Float, nullable=True)
    risk_score = Column(Float, nullable=True)
    primary_kpi = Column(String(100), nullable=True, index=True)
    market_segment = Column(String(100), nullable=True, index=True)

    # Lifecycle
    status = Column(SQLEnum(DecisionStatus), nullable=False, default=DecisionStatus.PROPOSED, index=True)
    implemented_at = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    rollback_at = Column(DateTime, nullable=True)
    rollback_reason = Column(Text, nullable=True)

    # Scenario / outcome links
    scenarios_id = Column(String(36), nullable=True)
    chosen_scenario_id = Column(String(50), nullable=True)
    chosen_scenario_at = Column(DateTime, nullable=True)
    outcome_id = Column(String(36), nullable=True)
    episode_status = Column(SQLEnum(EpisodeStatus), nullable=False, default=EpisodeStatus.DRAFT)

    # Soft delete
    is_deleted = Column(Boolean, nullable=False, default=False, index=True)
    deleted_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    context_versions = relationship(
        "DecisionContextVersionDB", back_populates="decision",
        order_by="DecisionContextVersionDB.version", cascade="all, delete-orphan",
    )
    verdict_versions = relationship(
        "DecisionVerdictVersionDB", back_populates="decision",
        order_by="DecisionVerdictVersionDB.version", cascade="all, delete-orphan",
    )
    status_events = relationship(
        "DecisionStatusEventDB", back_populates="decision",
        order_by="DecisionStatusEventDB.created_at", cascade="all, delete-orphan",
    )
    outcomes = relationship(
        "DecisionOutcomeDB", back_populates="decision",
        order_by="DecisionOutcomeDB.created_at", cascade="all, delete-orphan",
    )


class DecisionContextVersionDB(Base):
    """
    Snapshot of a decision's context.
    Append-only. Immutable after insert.
    """
    __tablename__ = "decision_context_versions"
    __table_args__ = (
        UniqueConstraint("decision_id", "version", name="uq_context_version"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    decision_id = Column(String(36), ForeignKey("decisions.id", ondelete="CASCADE"), nullable=False, index=True)
    version = Column(Integer, nullable=False)
    value = Column(JSON, nullable=False)
    reason = Column(Text, nullable=True)
    created_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    decision = relationship("DecisionDB", back_populates="context_versions")


class DecisionVerdictVersionDB(Base):
    """
    Snapshot of a decision's verdict and its provenance.
    Append-only. Immutable after insert.
    """
    __tablename__ = "decision_verdict_versions"
    __table_args__ = (
        UniqueConstraint("decision_id", "version", name="uq_verdict_version"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    decision_id = Column(String(36), ForeignKey("decisions.id", ondelete="CASCADE"), nullable=False, index=True)
    version = Column(Integer, nullable=False)
    value = Column(JSON, nullable=False)
    model_meta = Column(JSON, nullable=True)
    reason = Column(Text, nullable=True)
    created_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    decision = relationship("DecisionDB", back_populates="verdict_versions")


class DecisionStatusEventDB(Base):
    """
    Immutable log of decision status changes.
    Append-only - records every transition.
    """
    __tablename__ = "decision_status_events"

    id = Column(String(36), primary_key=True)  # UUID
    decision_id = Column(String(36), ForeignKey("decisions.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(SQLEnum(DecisionStatus), nullable=False)
    reason = Column(Text, nullable=True)
    implemented_at = Column(DateTime, nullable=True)
    rollback_at = Column(DateTime, nullable=True)
    created_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    decision = relationship("DecisionDB", back_populates="status_events")


# =============================================================================
# OUTCOMES
# =============================================================================

class DecisionOutcomeDB(Base):
    """
    One measurement event recorded against a decision.
    Append-only. A correction points back at the outcome it replaces via
    corrects_outcome_id; the replaced row gets superseded_by_id set in the
    same transaction. Neither row is ever removed.
    """
    __tablename__ = "decision_outcomes"

    id = Column(String(36), primary_key=True)  # UUID
    decision_id = Column(String(36), ForeignKey("decisions.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), nullable=False, index=True)

    outcome_type = Column(SQLEnum(OutcomeType), nullable=False)
    timeframe_days = Column(Integer, nullable=False)
    metric_name = Column(SQLEnum(KPIKey), nullable=False)
    metric_before = Column(Float, nullable=True)
    metric_after = Column(Float, nullable=True)
    delta_percent = Column(Float, nullable=True)
    notes = Column(Text, nullable=True)
    evidence_url = Column(String(2048), nullable=True)

    # Correction chain
    is_correction = Column(Boolean, nullable=False, default=False)
    corrects_outcome_id = Column(String(36), nullable=True, index=True)
    correction_reason = Column(Text, nullable=True)
    superseded_by_id = Column(String(36), nullable=True)

    created_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    decision = relationship("DecisionDB", back_populates="outcomes")


class MeasurableOutcomeDB(Base):
    """
    KPI-based outcome for a decision's chosen scenario.
    Exactly one row per (user, verdict); writes are upserts.
    """
    __tablename__ = "measurable_outcomes"
    __table_args__ = (
        UniqueConstraint("user_id", "verdict_id", name="uq_measurable_outcome_user_verdict"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), nullable=False, index=True)
    verdict_id = Column(String(36), ForeignKey("decisions.id", ondelete="CASCADE"), nullable=False, index=True)

    chosen_scenario_id = Column(String(50), nullable=False)
    status = Column(SQLEnum(OutcomeStatus), nullable=False, default=OutcomeStatus.PENDING)
    horizon_days = Column(Integer, nullable=False)
    kpis = Column(JSON, nullable=False)  # [{key, unit, baseline, target, actual, delta, delta_pct, confidence, notes}]
    evidence_links = Column(JSON, nullable=True)  # [{label, url}]
    summary = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


# =============================================================================
# SCENARIOS
# =============================================================================

class ScenarioSetDB(Base):
    """
    Versioned set of alternative scenarios for a decision.
    Only the highest non-deleted version per (decision, user) is current.
    """
    __tablename__ = "scenario_sets"
    __table_args__ = (
        UniqueConstraint("decision_id", "user_id", "version", name="uq_scenario_set_version"),
        Index("ix_scenario_sets_lookup", "decision_id", "user_id", "version"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    decision_id = Column(String(36), ForeignKey("decisions.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), nullable=False, index=True)
    version = Column(Integer, nullable=False)
    scenarios = Column(JSON, nullable=False)
    model_meta = Column(JSON, nullable=True)

    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class ScenarioDeltaDB(Base):
    """
    Cached metric differences between two scenarios of one decision.
    Cleared wholesale whenever the decision's scenarios are regenerated.
    """
    __tablename__ = "scenario_deltas"
    __table_args__ = (
        UniqueConstraint(
            "verdict_id", "baseline_scenario_id", "candidate_scenario_id",
            name="uq_scenario_delta_key",
        ),
    )

    id = Column(String(36), primary_key=True)  # UUID
    verdict_id = Column(String(36), ForeignKey("decisions.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), nullable=False)
    baseline_scenario_id = Column(String(50), nullable=False)
    candidate_scenario_id = Column(String(50), nullable=False)
    deltas = Column(JSON, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
