"""Typed failures raised by the library core.

Every error carries a stable ``reason`` code so callers (CLI, HTTP API) can
tell failures apart without parsing messages.
"""

from __future__ import annotations

from typing import Optional


class LibraryError(Exception):
    reason = "library_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


# ------------------------- Store and transactions ------------------------- #
class ConstraintViolation(LibraryError):
    """A unique index (isbn, registrationNumber) would collide with another record."""

    reason = "constraint_violation"

    def __init__(self, collection: str, field: str, value: object = None) -> None:
        message = f"A record in {collection} with {field} {value!r} already exists."
        super().__init__(message)
        self.collection = collection
        self.field = field
        self.value = value


class Unavailable(LibraryError):
    reason = "unavailable"


class InvalidLoanState(LibraryError):
    reason = "invalid_loan_state"


class StorageFault(LibraryError):
    reason = "storage_fault"


# ------------------------- Backup validation ------------------------- #
class BackupError(LibraryError):
    reason = "backup_error"


class ParseError(BackupError):
    reason = "parse_error"


class MalformedRoot(BackupError):
    reason = "malformed_root"


class CorruptCollections(BackupError):
    reason = "corrupt_collections"


class CountMismatch(BackupError):
    reason = "count_mismatch"


class ChecksumMismatch(BackupError):
    reason = "checksum_mismatch"


class MissingField(BackupError):
    reason = "missing_field"

    def __init__(self, field: str, collection: str) -> None:
        super().__init__(f"Required field '{field}' is missing from a record in {collection}.")
        self.field = field
        self.collection = collection


# ------------------------- Restore outcomes ------------------------- #
class RolledBack(LibraryError):
    """The new data could not be written; the previous data was restored."""

    reason = "rolled_back"

    def __init__(self, cause: Exception) -> None:
        super().__init__(f"Restore failed and the previous data was restored: {cause}")
        self.cause = cause


class RollbackFailed(LibraryError):
    """Both the restore and the rollback failed. The data may be inconsistent."""

    reason = "rollback_failed"

    def __init__(self, cause: Exception, rollback_error: Optional[Exception] = None) -> None:
        super().__init__(
            f"Restore failed and the previous data could not be restored: {rollback_error or cause}"
        )
        self.cause = cause
        self.rollback_error = rollback_error
