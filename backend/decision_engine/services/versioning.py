"""
Versioned Record Store

Append-only history for the mutable parts of a decision (context, verdict).
The decision row holds the current value and a version counter; every change
writes version N+1 and inserts one history row in the same transaction.

Concurrent appends are serialized by compare-and-swap on the counter
(UPDATE ... WHERE <field>_version = N) backed by a unique index on
(decision_id, version) in the history tables. A writer that loses the race
re-reads and retries; nothing is ever overwritten.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import VERSION_APPEND_MAX_RETRIES
from ..exceptions import ConflictError, NotFoundError
from ..models.db_models import (
    DecisionDB, DecisionContextVersionDB, DecisionVerdictVersionDB, utcnow,
)
from .lookup import read_with_retry

logger = logging.getLogger(__name__)


class VersionedField(str, Enum):
    CONTEXT = "context"
    VERDICT = "verdict"


FIELD_CONFIG = {
    VersionedField.CONTEXT: {
        "value_column": "context",
        "version_column": "context_version",
        "history_model": DecisionContextVersionDB,
    },
    VersionedField.VERDICT: {
        "value_column": "verdict",
        "version_column": "verdict_version",
        "history_model": DecisionVerdictVersionDB,
    },
}


@dataclass(frozen=True)
class VersionEntry:
    version: int
    value: Dict[str, Any]
    created_at: datetime
    created_by: Optional[str] = None
    reason: Optional[str] = None


def append_version(
    current_version: int,
    new_value: Dict[str, Any],
    actor: Optional[str],
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[int, VersionEntry]:
    """
    Compute the next version number and the history entry to push.

    Pure function: the caller persists both atomically.
    """
    if current_version < 0:
        raise ValueError(f"version counter cannot be negative: {current_version}")
    new_version = current_version + 1
    entry = VersionEntry(
        version=new_version,
        value=new_value,
        created_at=now or utcnow(),
        created_by=actor,
        reason=reason,
    )
    return new_version, entry


ValueBuilder = Callable[[Dict[str, Any]], Dict[str, Any]]


class VersionedRecordStore:
    """Appends context/verdict versions to decisions owned by a user."""

    def __init__(self, db: Session, max_retries: int = VERSION_APPEND_MAX_RETRIES):
        self.db = db
        self.max_retries = max_retries

    def build_initial(
        self,
        decision: DecisionDB,
        field: VersionedField,
        value: Dict[str, Any],
        actor: Optional[str],
        reason: str,
        history_extra: Optional[Dict[str, Any]] = None,
    ) -> VersionEntry:
        """Stage version 1 for a decision that is being inserted. Caller commits."""
        config = FIELD_CONFIG[field]
        version, entry = append_version(0, value, actor, reason, now=decision.created_at)
        setattr(decision, config["value_column"], value)
        setattr(decision, config["version_column"], version)
        self.db.add(self._history_row(decision.id, field, entry, history_extra))
        return entry

    def append(
        self,
        decision_id: str,
        user_id: str,
        field: VersionedField,
        new_value: Union[Dict[str, Any], ValueBuilder],
        actor: Optional[str],
        reason: Optional[str] = None,
        extra_values: Optional[Union[Dict[str, Any], ValueBuilder]] = None,
        history_extra: Optional[Dict[str, Any]] = None,
    ) -> DecisionDB:
        """
        Append a new version of `field` and make it current.

        Args:
            decision_id: Decision to update
            user_id: Owner; other users get NotFoundError
            field: CONTEXT or VERDICT
            new_value: Full new value, or a callable building it from the
                current value (re-run on every retry)
            actor: User id recorded as created_by
            reason: Optional edit reason stored on the history row
            extra_values: Additional decision columns set in the same UPDATE,
                or a callable building them from the new value
            history_extra: Additional history-row columns (e.g. model_meta)

        Raises:
            NotFoundError: decision absent, deleted, or not owned
            ConflictError: lost the compare-and-swap on every attempt
        """
        config = FIELD_CONFIG[field]
        version_column = getattr(DecisionDB, config["version_column"])

        for attempt in range(1, self.max_retries + 1):
            current, current_value = self._read_current(decision_id, user_id, field)
            value = new_value(current_value) if callable(new_value) else new_value
            new_version, entry = append_version(current, value, actor, reason)

            values = {
                config["value_column"]: value,
                config["version_column"]: new_version,
                "updated_at": entry.created_at,
            }
            if callable(extra_values):
                values.update(extra_values(value))
            elif extra_values:
                values.update(extra_values)

            try:
                result = self.db.execute(
                    update(DecisionDB)
                    .where(
                        DecisionDB.id == decision_id,
                        DecisionDB.user_id == user_id,
                        DecisionDB.is_deleted.is_(False),
                        version_column == current,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    self.db.rollback()
                    logger.warning(
                        f"Concurrent {field.value} append on decision {decision_id} "
                        f"(expected v{current}), attempt {attempt}/{self.max_retries}"
                    )
                    continue

                self.db.add(self._history_row(decision_id, field, entry, history_extra))
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                logger.warning(
                    f"{field.value} v{new_version} already written for decision {decision_id}, "
                    f"attempt {attempt}/{self.max_retries}"
                )
                continue

            logger.info(f"Appended {field.value} v{new_version} to decision {decision_id}")
            return self.db.query(DecisionDB).filter(DecisionDB.id == decision_id).one()

        raise ConflictError(
            f"could not append {field.value} version to decision {decision_id} "
            f"after {self.max_retries} attempts"
        )

    def get_history(self, decision_id: str, user_id: str, field: VersionedField) -> List[VersionEntry]:
        """Full history for `field`, oldest first."""
        history_model = FIELD_CONFIG[field]["history_model"]
        self._read_current(decision_id, user_id, field)
        rows = read_with_retry(
            self.db,
            self.db.query(history_model)
            .filter(history_model.decision_id == decision_id)
            .order_by(history_model.version)
            .all,
            f"get_{field.value}_history",
        )
        return [
            VersionEntry(
                version=row.version,
                value=row.value,
                created_at=row.created_at,
                created_by=row.created_by,
                reason=row.reason,
            )
            for row in rows
        ]

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _read_current(self, decision_id: str, user_id: str, field: VersionedField) -> Tuple[int, Dict[str, Any]]:
        config = FIELD_CONFIG[field]
        row = read_with_retry(
            self.db,
            self.db.query(
                getattr(DecisionDB, config["version_column"]),
                getattr(DecisionDB, config["value_column"]),
            ).filter(
                DecisionDB.id == decision_id,
                DecisionDB.user_id == user_id,
                DecisionDB.is_deleted.is_(False),
            ).first,
            f"read_{field.value}_version",
        )
        if row is None:
            raise NotFoundError("decision", decision_id)
        return row[0], row[1]

    def _history_row(
        self,
        decision_id: str,
        field: VersionedField,
        entry: VersionEntry,
        history_extra: Optional[Dict[str, Any]],
    ):
        history_model = FIELD_CONFIG[field]["history_model"]
        return history_model(
            id=str(uuid4()),
            decision_id=decision_id,
            version=entry.version,
            value=entry.value,
            reason=entry.reason,
            created_by=entry.created_by,
            created_at=entry.created_at,
            **(history_extra or {}),
        )
