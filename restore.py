"""Restore the whole database from a backup, rolling back on failure.

States::

    IDLE -> VALIDATING -> SNAPSHOTTING_CURRENT -> REPLACING -> COMMITTED
                 |                                    |
                 +-> ABORTED                          +-> ROLLED_BACK
                                                      +-> ABORTED (rollback failed)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from threading import RLock
from typing import Any, List, Mapping, Optional, Union

from backup import parse_backup, snapshot_from_backup, validate_backup
from errors import BackupError, LibraryError, RollbackFailed, RolledBack
from record_store import RecordStore
from transactions import TransactionCoordinator

logger = logging.getLogger(__name__)


class ImportState(Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    SNAPSHOTTING_CURRENT = "snapshotting_current"
    REPLACING = "replacing"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    ABORTED = "aborted"


@dataclass
class ImportOutcome:
    state: ImportState
    record_count: int
    version: Optional[str] = None
    export_timestamp: Optional[str] = None
    counts: dict = field(default_factory=dict)


class BackupImporter:
    def __init__(self, store: RecordStore, coordinator: TransactionCoordinator) -> None:
        self.store = store
        self.coordinator = coordinator
        self.state = ImportState.IDLE
        self.history: List[ImportState] = [ImportState.IDLE]
        # One import at a time; state and history describe that run
        self._lock = RLock()

    def _enter(self, state: ImportState) -> None:
        logger.debug(f"Import: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def import_backup(self, raw: Union[str, bytes, bytearray]) -> ImportOutcome:
        """Parse, validate and restore backup text."""
        with self._lock:
            self._reset()
            self._enter(ImportState.VALIDATING)
            try:
                payload = parse_backup(raw)
            except BackupError as exc:
                self._abort(exc)
                raise
            return self._restore(payload)

    def import_payload(self, payload: Any) -> ImportOutcome:
        """Validate and restore an already decoded backup object."""
        with self._lock:
            self._reset()
            self._enter(ImportState.VALIDATING)
            return self._restore(payload)

    def _reset(self) -> None:
        self.state = ImportState.IDLE
        self.history = [ImportState.IDLE]

    def _abort(self, exc: Exception) -> None:
        logger.warning(f"Backup rejected: {exc}")
        self._enter(ImportState.ABORTED)

    def _restore(self, payload: Any) -> ImportOutcome:
        try:
            validate_backup(payload)
        except BackupError as exc:
            self._abort(exc)
            raise

        self._enter(ImportState.SNAPSHOTTING_CURRENT)
        try:
            rollback_point = self.store.export_all()
        except LibraryError as exc:
            # Nothing has been written yet
            logger.error(f"Could not snapshot current data, restore cancelled: {exc}")
            self._enter(ImportState.ABORTED)
            raise

        self._enter(ImportState.REPLACING)
        try:
            counts = self.coordinator.replace_all(snapshot_from_backup(payload))
        except LibraryError as exc:
            self._rollback(rollback_point, exc)

        self._enter(ImportState.COMMITTED)
        logger.info(f"Backup restored: {payload['recordCount']} records (version {payload['version']})")
        return ImportOutcome(
            state=self.state,
            record_count=payload["recordCount"],
            version=payload.get("version"),
            export_timestamp=payload.get("exportTimestamp"),
            counts=counts,
        )

    def _rollback(self, rollback_point: Mapping, cause: LibraryError) -> None:
        logger.warning(f"Restore failed ({cause}); rolling back to the previous data")
        try:
            self.coordinator.replace_all(rollback_point)
        except LibraryError as exc:
            logger.error(f"Rollback failed, data may be inconsistent: {exc}")
            self._enter(ImportState.ABORTED)
            raise RollbackFailed(cause, exc) from exc
        self._enter(ImportState.ROLLED_BACK)
        raise RolledBack(cause) from cause
