"""Exception hierarchy and storage error classification.

All exceptions inherit from LedgerError so callers can catch every
ledger failure with one except clause. Each class carries a stable
``code`` that outer layers (HTTP handlers, the CLI) map to responses.

Storage failures are classified into a StorageErrorKind from the
driver's explicit result code before the coordinator sees them. The
coordinator's retry decision is then a dispatch on exception type.
"""

import sqlite3
from enum import Enum

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError


class StorageErrorKind(str, Enum):
    """What a storage failure means for the caller."""

    TRANSIENT = "transient"  # lost a lock race, safe to retry
    CONSTRAINT = "constraint"  # schema constraint rejected the write
    PERMANENT = "permanent"  # disk, connection or programming failure


class LedgerError(Exception):
    """Base exception for all ledger errors."""

    code = "INTERNAL_ERROR"


class ValidationError(LedgerError):
    """Raised for malformed input: bad ids, dates or penalty amounts.

    Attributes:
        field: Name of the offending argument, when known.
    """

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class NotFoundError(LedgerError):
    """Raised when a resource or an active ledger entry does not exist.

    An entry that was already released is reported the same way as one
    that never existed.
    """

    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: int):
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class ResourceExhaustedError(LedgerError):
    """Raised when a resource has no available units. Never retried."""

    code = "RESOURCE_EXHAUSTED"

    def __init__(self, resource_id: int):
        super().__init__(f"No available units for resource {resource_id}")
        self.resource_id = resource_id


class ResourceInUseError(LedgerError):
    """Raised when deleting a resource that ledger entries still reference."""

    code = "RESOURCE_IN_USE"

    def __init__(self, resource_id: int, references: int):
        super().__init__(
            f"Resource {resource_id} is referenced by {references} ledger entries"
        )
        self.resource_id = resource_id
        self.references = references


class ConflictError(LedgerError):
    """Raised when a transaction lost a storage-level race.

    Covers lock contention reported by the database and guarded updates
    that matched zero rows. The coordinator retries these; callers only
    see one after the retry budget is spent.

    Attributes:
        attempts: Attempts used when the error reached the caller.
        kind: StorageErrorKind.TRANSIENT when raised by the database,
            None when raised by a guarded update.
    """

    code = "CONFLICT"

    def __init__(
        self,
        message: str,
        attempts: int = 1,
        kind: StorageErrorKind | None = None,
    ):
        super().__init__(message)
        self.attempts = attempts
        self.kind = kind


class OperationTimeoutError(LedgerError):
    """Raised when the caller's deadline elapsed inside the retry loop."""

    code = "TIMEOUT"

    def __init__(self, operation: str, timeout: float, attempts: int):
        super().__init__(
            f"{operation} did not complete within {timeout}s ({attempts} attempts)"
        )
        self.operation = operation
        self.timeout = timeout
        self.attempts = attempts


class PersistenceError(LedgerError):
    """Raised for storage failures unrelated to contention. Never retried."""

    code = "DATABASE_ERROR"

    def __init__(self, message: str, kind: StorageErrorKind = StorageErrorKind.PERMANENT):
        super().__init__(message)
        self.kind = kind


# SQLite primary result codes (the low byte of extended codes)
SQLITE_BUSY = 5
SQLITE_LOCKED = 6
SQLITE_CONSTRAINT = 19

# PostgreSQL SQLSTATEs for serialization_failure, deadlock_detected and
# lock_not_available
TRANSIENT_SQLSTATES = frozenset({"40001", "40P01", "55P03"})

# Exact messages sqlite3 uses for SQLITE_BUSY/SQLITE_LOCKED. Only consulted
# when the driver attaches no result code.
SQLITE_LOCK_MESSAGES = frozenset(
    {
        "database is locked",
        "database table is locked",
        "database schema is locked",
    }
)


def classify_storage_error(exc: BaseException) -> StorageErrorKind:
    """Classify a driver error by its explicit result code.

    Accepts either a SQLAlchemy DBAPIError or the raw driver exception.
    """
    orig = exc.orig if isinstance(exc, DBAPIError) else exc

    sqlite_code = getattr(orig, "sqlite_errorcode", None)
    if sqlite_code is not None:
        primary = sqlite_code & 0xFF
        if primary in (SQLITE_BUSY, SQLITE_LOCKED):
            return StorageErrorKind.TRANSIENT
        if primary == SQLITE_CONSTRAINT:
            return StorageErrorKind.CONSTRAINT
        return StorageErrorKind.PERMANENT

    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate:
        if sqlstate in TRANSIENT_SQLSTATES:
            return StorageErrorKind.TRANSIENT
        if sqlstate.startswith("23"):
            return StorageErrorKind.CONSTRAINT
        return StorageErrorKind.PERMANENT

    if isinstance(exc, IntegrityError) or isinstance(orig, sqlite3.IntegrityError):
        return StorageErrorKind.CONSTRAINT

    # No code from the driver: require both the operational error type and
    # one of SQLite's exact lock messages.
    is_operational = isinstance(exc, OperationalError) or isinstance(
        orig, sqlite3.OperationalError
    )
    if is_operational and str(orig).strip().lower() in SQLITE_LOCK_MESSAGES:
        return StorageErrorKind.TRANSIENT

    return StorageErrorKind.PERMANENT


def storage_error_from(exc: DBAPIError) -> LedgerError:
    """Translate a driver error into the ledger's exception types."""
    kind = classify_storage_error(exc)
    detail = str(exc.orig) if exc.orig is not None else str(exc)
    if kind is StorageErrorKind.TRANSIENT:
        return ConflictError(f"Storage contention: {detail}", kind=kind)
    if kind is StorageErrorKind.CONSTRAINT:
        return PersistenceError(f"Constraint violated: {detail}", kind=kind)
    return PersistenceError(f"Storage failure: {detail}", kind=kind)
