"""Decision Engine 2.0 - Data Models"""
from .db_models import (
    # Enums
    DecisionStatus, EpisodeStatus, ContextSource, OutcomeType, OutcomeStatus,
    KPIKey, KPIUnit, KPIConfidence, ScenarioId, DeltaDirection,
    # Tables
    DecisionDB, DecisionContextVersionDB, DecisionVerdictVersionDB, DecisionStatusEventDB,
    DecisionOutcomeDB, MeasurableOutcomeDB, ScenarioSetDB, ScenarioDeltaDB,
)

__all__ = [
    "DecisionStatus", "EpisodeStatus", "ContextSource", "OutcomeType", "OutcomeStatus",
    "KPIKey", "KPIUnit", "KPIConfidence", "ScenarioId", "DeltaDirection",
    "DecisionDB", "DecisionContextVersionDB", "DecisionVerdictVersionDB", "DecisionStatusEventDB",
    "DecisionOutcomeDB", "MeasurableOutcomeDB", "ScenarioSetDB", "ScenarioDeltaDB",
]
