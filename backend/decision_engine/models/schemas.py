"""
Decision Engine - Payload Schemas

Pydantic models for everything that enters the engine from outside:
AI-produced verdicts and scenario sets, user-supplied context edits,
status changes and outcome measurements. Services call parse_payload()
so shape errors surface as the engine's ValidationError before any write.
"""
from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from ..exceptions import ValidationError
from .db_models import (
    ContextSource, DecisionStatus, KPIConfidence, KPIKey, KPIUnit,
    OutcomeStatus, OutcomeType, ScenarioId,
)

ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_payload(model_cls: Type[ModelT], payload: Union[ModelT, Dict[str, Any]]) -> ModelT:
    """Coerce a dict (or an existing model) into model_cls, raising ValidationError on failure."""
    if isinstance(payload, model_cls):
        return payload
    if payload is None:
        raise ValidationError(f"{model_cls.__name__} payload is required")
    try:
        return model_cls.model_validate(payload)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationError(f"{field or model_cls.__name__}: {first['msg']}", field=field or None) from e


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a possibly tz-aware timestamp to naive UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


# =============================================================================
# CONTEXT
# =============================================================================

class ContextField(BaseModel):
    """One context value with attribution."""
    value: Optional[str] = None
    source: ContextSource = ContextSource.INFERRED
    confidence_score: Optional[float] = None
    inferred_signal: Optional[str] = None


class MarketContext(BaseModel):
    type: ContextField = Field(default_factory=ContextField)
    segment: ContextField = Field(default_factory=ContextField)


class DecisionContext(BaseModel):
    company_stage: ContextField = Field(default_factory=ContextField)
    business_model: ContextField = Field(default_factory=ContextField)
    primary_kpi: ContextField = Field(default_factory=ContextField)
    market: MarketContext = Field(default_factory=MarketContext)


class MarketInput(BaseModel):
    type: Optional[str] = None
    segment: Optional[str] = None


class ContextInput(BaseModel):
    """Partial context as typed by a user or stored as workspace defaults."""
    company_stage: Optional[str] = None
    business_model: Optional[str] = None
    primary_kpi: Optional[str] = None
    market: Optional[MarketInput] = None


class InferredField(BaseModel):
    value: Optional[str] = None
    confidence: float = 0.0
    signal: Optional[str] = None


class InferenceResult(BaseModel):
    """Context guessed from the company website by an external inference step."""
    company_stage: Optional[InferredField] = None
    business_model: Optional[InferredField] = None
    primary_kpi: Optional[InferredField] = None
    market_type: Optional[InferredField] = None
    market_segment: Optional[InferredField] = None


# =============================================================================
# VERDICT
# =============================================================================

class WhatToExpect(BaseModel):
    risk_score: float = 0.0
    risk_label: Optional[str] = None
    description: str = ""


class SupportingDetails(BaseModel):
    expected_revenue_impact: str = ""
    churn_outlook: str = ""
    market_positioning: str = ""


class Verdict(BaseModel):
    """
    AI recommendation attached to a decision.

    Only the fields the engine reads are declared; everything else the
    generator produces is kept as-is.
    """
    model_config = ConfigDict(extra="allow")

    headline: str = Field(..., min_length=1)
    summary: str = ""
    confidence_score: float = Field(0.0, ge=0.0, le=1.0)
    confidence_label: Optional[str] = None
    cta: str = ""
    why_this_decision: List[str] = Field(default_factory=list)
    what_to_expect: WhatToExpect = Field(default_factory=WhatToExpect)
    supporting_details: SupportingDetails = Field(default_factory=SupportingDetails)


class ModelMeta(BaseModel):
    """Provenance of whatever produced a verdict or scenario set."""
    model_config = ConfigDict(protected_namespaces=())

    model_name: str = ""
    prompt_version: str = ""
    inference_duration_ms: int = 0
    website_content_hash: Optional[str] = None


# =============================================================================
# STATUS
# =============================================================================

REASON_REQUIRED_STATUSES = (DecisionStatus.REJECTED, DecisionStatus.ROLLED_BACK)


class StatusUpdate(BaseModel):
    status: DecisionStatus
    reason: Optional[str] = None
    implemented_at: Optional[datetime] = None
    rollback_at: Optional[datetime] = None

    @model_validator(mode="after")
    def require_reason(self) -> "StatusUpdate":
        if self.reason is not None:
            self.reason = self.reason.strip() or None
        if self.status in REASON_REQUIRED_STATUSES and not self.reason:
            raise ValueError(f"reason is required when status is {self.status.value}")
        self.implemented_at = to_naive_utc(self.implemented_at)
        self.rollback_at = to_naive_utc(self.rollback_at)
        return self


# =============================================================================
# OUTCOMES
# =============================================================================

class OutcomeCreate(BaseModel):
    """One measurement event, optionally correcting an earlier one."""
    outcome_type: OutcomeType
    timeframe_days: int = Field(..., gt=0)
    metric_name: KPIKey
    metric_before: Optional[float] = None
    metric_after: Optional[float] = None
    notes: str = ""
    evidence_url: Optional[str] = None
    is_correction: bool = False
    corrects_outcome_id: Optional[str] = None
    correction_reason: Optional[str] = None

    @model_validator(mode="after")
    def check_correction_link(self) -> "OutcomeCreate":
        if self.is_correction and not self.corrects_outcome_id:
            raise ValueError("corrects_outcome_id is required for a correction")
        if self.corrects_outcome_id and not self.is_correction:
            raise ValueError("corrects_outcome_id is only allowed on a correction")
        return self


class OutcomeKPI(BaseModel):
    key: KPIKey
    unit: KPIUnit
    baseline: float = 0.0
    target: float = 0.0
    actual: Optional[float] = None
    delta: Optional[float] = None
    delta_pct: Optional[float] = None
    confidence: KPIConfidence = KPIConfidence.MEDIUM
    notes: Optional[str] = None


class EvidenceLink(BaseModel):
    label: str
    url: str


class MeasurableOutcomeUpdate(BaseModel):
    """Partial update; only supplied fields are written."""
    status: Optional[OutcomeStatus] = None
    horizon_days: Optional[int] = Field(None, gt=0)
    kpis: Optional[List[OutcomeKPI]] = None
    evidence_links: Optional[List[EvidenceLink]] = None
    summary: Optional[str] = None
    notes: Optional[str] = None


# =============================================================================
# SCENARIOS
# =============================================================================

class ScenarioMetrics(BaseModel):
    """Projected metrics as free-text ranges, e.g. "+5–12%" or "30-60 days"."""
    revenue_impact_range: str = ""
    churn_impact_range: str = ""
    risk_label: str = ""
    time_to_impact: str = ""
    execution_effort: str = ""


class ScenarioItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    scenario_id: ScenarioId
    title: str = Field(..., min_length=1)
    summary: str = ""
    positioning: str = ""
    best_when: str = ""
    metrics: ScenarioMetrics = Field(default_factory=ScenarioMetrics)
    deltas: Dict[str, str] = Field(default_factory=dict)
    tradeoffs: List[str] = Field(default_factory=list)
    is_baseline: bool = False

    @model_validator(mode="after")
    def mark_baseline(self) -> "ScenarioItem":
        self.is_baseline = self.scenario_id == ScenarioId.BALANCED
        return self


class ScenarioSetPayload(BaseModel):
    """What an external scenario generator hands back."""
    model_config = ConfigDict(protected_namespaces=())

    scenarios: List[ScenarioItem] = Field(..., min_length=1)
    model_meta: Optional[ModelMeta] = None

    @field_validator("scenarios")
    @classmethod
    def unique_ids(cls, scenarios: List[ScenarioItem]) -> List[ScenarioItem]:
        seen = set()
        for item in scenarios:
            if item.scenario_id in seen:
                raise ValueError(f"duplicate scenario_id {item.scenario_id.value}")
            seen.add(item.scenario_id)
        return scenarios


# =============================================================================
# LISTING
# =============================================================================

class DecisionListFilters(BaseModel):
    status: Optional[DecisionStatus] = None
    segment: Optional[str] = None
    kpi: Optional[str] = None
    min_confidence: Optional[float] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    search: Optional[str] = None
    page: int = 1
    page_size: int = 0
