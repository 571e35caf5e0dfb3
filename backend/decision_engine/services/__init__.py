"""
Decision Lifecycle Services

- VersionedRecordStore: append-only context/verdict history
- DecisionStatusMachine: status transitions with audit events
- OutcomeTracker: correctable outcomes and the per-verdict KPI sheet
- ScenarioStore: versioned scenario sets and chosen scenario
- DeltaCalculator: cached scenario-to-scenario deltas
- DecisionService: lifecycle entry point
- HardDeleteService: administrative cascade delete
"""

from .versioning import VersionedRecordStore, VersionedField, append_version
from .status_machine import DecisionStatusMachine
from .outcome_tracker import OutcomeTracker
from .scenario_store import ScenarioStore
from .delta_calculator import DeltaCalculator
from .decision_service import DecisionService
from .hard_delete_service import HardDeleteService

__all__ = [
    'VersionedRecordStore',
    'VersionedField',
    'append_version',
    'DecisionStatusMachine',
    'OutcomeTracker',
    'ScenarioStore',
    'DeltaCalculator',
    'DecisionService',
    'HardDeleteService',
]
