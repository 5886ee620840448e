"""
Omega error taxonomy.

Two families:
- PolicyViolation: the caller asked for something the observer boundary does
  not allow. Surfaced to MCP clients as kind="denied". Never retried.
- Operational errors (storage, not-found, cancellation, bad input). Surfaced
  as kind="error". Only StorageUnavailableError is safe to retry, and that
  decision is left to the caller.

Every error carries a stable `code` so responses can be branched on without
parsing messages.
"""

from typing import List, Optional, Sequence


class OmegaError(Exception):
    """Base class for all Omega gateway errors."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def to_dict(self) -> dict:
        data = {"code": self.code, "message": self.message}
        if self.details:
            data["details"] = self.details
        if self.__cause__ is not None:
            data["cause"] = f"{type(self.__cause__).__name__}: {self.__cause__}"
        return data


class SchemaError(OmegaError):
    """Raised when a table descriptor is internally inconsistent."""

    code = "SCHEMA_ERROR"


# ------------------------------------------------------------
# Policy denials
# ------------------------------------------------------------

class PolicyViolation(OmegaError):
    """Base class for requests rejected by the access policy."""

    code = "POLICY_VIOLATION"

    def __init__(self, message: str, invalid_columns: Optional[Sequence[str]] = None):
        super().__init__(message)
        self.invalid_columns: List[str] = list(invalid_columns or [])

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "reason": self.message,
            "invalid_columns": self.invalid_columns,
        }


class UnknownTableError(PolicyViolation):
    code = "TABLE_NOT_ALLOWED"

    def __init__(self, table: str):
        super().__init__(f'Table "{table}" is not in the allowlist.')
        self.table = table


class ColumnPolicyViolation(PolicyViolation):
    code = "COLUMN_NOT_ALLOWED"


class MissingUserScopeError(PolicyViolation):
    code = "USER_ID_REQUIRED"


class RateLimitExceeded(PolicyViolation):
    code = "RATE_LIMIT"


# ------------------------------------------------------------
# Operational errors
# ------------------------------------------------------------

class StorageUnavailableError(OmegaError):
    """The row store failed or did not answer within the server's storage timeout.

    For writes dispatched before the failure, details["outcome"] is "unknown":
    the row may or may not have landed.
    """

    code = "STORAGE_UNAVAILABLE"


class NotFoundError(OmegaError):
    code = "NOT_FOUND"


class Cancelled(OmegaError):
    """The caller cancelled the operation or its own deadline passed."""

    code = "CANCELLED"


class InvalidInputError(OmegaError):
    code = "INVALID_INPUT"
