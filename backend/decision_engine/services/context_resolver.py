"""
Context Resolution

Builds a decision's context from three sources with fixed priority:
user input > workspace defaults > inferred from the website (only when
the inference is confident enough). Also merges later user edits into an
existing context.
"""
from typing import Optional
from urllib.parse import urlsplit

from ..config import INFERRED_CONTEXT_MIN_CONFIDENCE
from ..models.db_models import ContextSource
from ..models.schemas import (
    ContextField, ContextInput, DecisionContext, InferenceResult, InferredField, MarketContext,
)


def resolve_context_field(
    user_value: Optional[str],
    workspace_value: Optional[str],
    inferred: Optional[InferredField],
) -> ContextField:
    if user_value:
        return ContextField(value=user_value, source=ContextSource.USER)

    if workspace_value:
        return ContextField(value=workspace_value, source=ContextSource.WORKSPACE)

    if inferred is not None:
        if inferred.value and inferred.confidence >= INFERRED_CONTEXT_MIN_CONFIDENCE:
            return ContextField(
                value=inferred.value,
                source=ContextSource.INFERRED,
                confidence_score=inferred.confidence,
                inferred_signal=inferred.signal,
            )
        if inferred.confidence > 0:
            # Unknown, but keep the low confidence for display
            return ContextField(source=ContextSource.INFERRED, confidence_score=inferred.confidence)

    return ContextField(source=ContextSource.INFERRED)


def resolve_full_context(
    user: Optional[ContextInput] = None,
    workspace: Optional[ContextInput] = None,
    inferred: Optional[InferenceResult] = None,
) -> DecisionContext:
    user = user or ContextInput()
    workspace = workspace or ContextInput()
    inferred = inferred or InferenceResult()
    user_market = user.market
    workspace_market = workspace.market

    return DecisionContext(
        company_stage=resolve_context_field(
            user.company_stage, workspace.company_stage, inferred.company_stage
        ),
        business_model=resolve_context_field(
            user.business_model, workspace.business_model, inferred.business_model
        ),
        primary_kpi=resolve_context_field(
            user.primary_kpi, workspace.primary_kpi, inferred.primary_kpi
        ),
        market=MarketContext(
            type=resolve_context_field(
                user_market.type if user_market else None,
                workspace_market.type if workspace_market else None,
                inferred.market_type,
            ),
            segment=resolve_context_field(
                user_market.segment if user_market else None,
                workspace_market.segment if workspace_market else None,
                inferred.market_segment,
            ),
        ),
    )


def has_changes(changes: ContextInput) -> bool:
    market = changes.market
    return any([
        changes.company_stage is not None,
        changes.business_model is not None,
        changes.primary_kpi is not None,
        market is not None and (market.type is not None or market.segment is not None),
    ])


def merge_user_context(current: DecisionContext, changes: ContextInput) -> DecisionContext:
    """Overlay only the supplied fields; each one becomes user-sourced."""
    merged = current.model_copy(deep=True)

    def user_field(value: str) -> ContextField:
        return ContextField(value=value, source=ContextSource.USER)

    if changes.company_stage is not None:
        merged.company_stage = user_field(changes.company_stage)
    if changes.business_model is not None:
        merged.business_model = user_field(changes.business_model)
    if changes.primary_kpi is not None:
        merged.primary_kpi = user_field(changes.primary_kpi)
    if changes.market is not None:
        if changes.market.type is not None:
            merged.market.type = user_field(changes.market.type)
        if changes.market.segment is not None:
            merged.market.segment = user_field(changes.market.segment)
    return merged


def extract_company_name(website_url: str) -> str:
    """"https://www.acme.io/pricing" -> "Acme"."""
    url = website_url.strip()
    if "://" not in url:
        url = f"//{url}"
    host = urlsplit(url).hostname or ""
    if host.startswith("www."):
        host = host[len("www."):]
    name = host.split(".")[0]
    if not name:
        return "Unknown"
    return name[:1].upper() + name[1:]
