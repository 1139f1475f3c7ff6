from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class TransientReason(str, Enum):
    CONNECTION_LOST = "connection_lost"
    TOO_MANY_CONNECTIONS = "too_many_connections"
    TIMED_OUT = "timed_out"


class DataAccessError(Exception):
    """Base data-access error."""


class TransientStoreError(DataAccessError):
    """Raised for store failures that are expected to succeed on retry."""

    def __init__(self, reason: TransientReason, message: str) -> None:
        super().__init__(message)
        self.reason = reason


class StoreUnavailableError(DataAccessError):
    """Raised when the store cannot be reached after retries or is not configured."""


class StatementError(DataAccessError):
    """Raised when the store rejects a statement (syntax, constraint, type, privilege)."""

    def __init__(self, message: str, sqlstate: str | None = None) -> None:
        super().__init__(message)
        self.sqlstate = sqlstate


class PermissionDeniedError(DataAccessError):
    """Raised when the actor's role does not hold an explicitly required action."""

    def __init__(self, action: str, role: str) -> None:
        super().__init__(f"role {role} may not perform {action}")
        self.action = action
        self.role = role


class QueryValidationError(DataAccessError, ValueError):
    """Raised when a statement or its inputs fail validation before reaching the store."""


class NestedTransactionError(DataAccessError, RuntimeError):
    """Raised when a transaction is started from inside another transaction."""


class TransactionClosedError(DataAccessError, RuntimeError):
    """Raised when a transaction handle is used after commit or rollback."""


@dataclass(frozen=True, slots=True)
class NotFoundOrForbidden:
    """Mutation outcome for a record that is missing or not owned by the actor.

    Returned rather than raised; it carries no hint about which of the two
    cases applied.
    """

    entity: str
    record_id: str


@dataclass(frozen=True, slots=True)
class Affected:
    count: int
