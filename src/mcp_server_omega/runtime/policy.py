"""
Access Policy Evaluator.

Pure function from an AccessRequest plus the schema registry to an
AccessDecision. No I/O, no shared state, safe to call concurrently.

Denial is a normal return value. Exceptions are reserved for malformed
requests (pydantic raises ValidationError at construction time).
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import (
    ColumnPolicyViolation,
    MissingUserScopeError,
    PolicyViolation,
    UnknownTableError,
)
from .schema import REGISTRY, SchemaRegistry

# Hard ceiling on rows returned by any single query.
MAX_QUERY_LIMIT = 200
DEFAULT_QUERY_LIMIT = 50

TABLE_NOT_ALLOWED = "TABLE_NOT_ALLOWED"
COLUMN_NOT_ALLOWED = "COLUMN_NOT_ALLOWED"
USER_ID_REQUIRED = "USER_ID_REQUIRED"

_DENIAL_ERRORS = {
    COLUMN_NOT_ALLOWED: ColumnPolicyViolation,
    USER_ID_REQUIRED: MissingUserScopeError,
}


class AccessRequest(BaseModel):
    """A single query intent."""

    model_config = ConfigDict(extra="forbid")

    table: str
    requested_columns: List[str] = Field(default_factory=list)
    caller_user_id: Optional[str] = None
    limit: int = Field(default=DEFAULT_QUERY_LIMIT, ge=1)
    filters: Dict[str, Any] = Field(default_factory=dict)
    gte: Dict[str, Any] = Field(default_factory=dict)
    order_by: Optional[str] = None
    ascending: bool = False


class AccessDecision(BaseModel):
    """The evaluator's verdict. Never persisted."""

    model_config = ConfigDict(frozen=True)

    table: str
    permitted: bool
    code: Optional[str] = None
    reason: str = ""
    invalid_columns: List[str] = Field(default_factory=list)
    effective_columns: List[str] = Field(default_factory=list)
    effective_limit: int = 0

    def raise_for_denial(self) -> None:
        if self.permitted:
            return
        if self.code == TABLE_NOT_ALLOWED:
            raise UnknownTableError(self.table)
        raise _DENIAL_ERRORS.get(self.code, PolicyViolation)(self.reason, self.invalid_columns)

    def to_denial(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "reason": self.reason,
            "invalid_columns": list(self.invalid_columns),
        }


def _deny(table: str, code: str, reason: str, invalid: Optional[List[str]] = None) -> AccessDecision:
    return AccessDecision(table=table, permitted=False, code=code, reason=reason, invalid_columns=invalid or [])


def clamp_limit(limit: int, max_limit: int = MAX_QUERY_LIMIT) -> int:
    """min(limit, ceiling); the ceiling itself can never exceed MAX_QUERY_LIMIT."""
    return min(limit, max_limit, MAX_QUERY_LIMIT)


def evaluate(
    request: AccessRequest,
    registry: SchemaRegistry = REGISTRY,
    max_limit: int = MAX_QUERY_LIMIT,
) -> AccessDecision:
    """
    Decide whether `request` may reach storage.

    Order of checks:
        1. table is registered
        2. requested columns, filter keys (eq and gte) and order_by are all safe columns
        3. user scope present unless the table is global
        4. limit clamped to the ceiling
    """
    if request.table not in registry:
        return _deny(request.table, TABLE_NOT_ALLOWED, f'Table "{request.table}" is not in the allowlist.')

    safe = registry.get_safe_columns(request.table)
    columns = list(request.requested_columns) or list(safe)

    invalid = [c for c in columns if c not in safe]
    if invalid:
        return _deny(
            request.table,
            COLUMN_NOT_ALLOWED,
            f'Columns not in safe set for "{request.table}": {", ".join(invalid)}',
            invalid,
        )

    filter_keys = list(dict.fromkeys([*request.filters, *request.gte]))
    bad_filters = [k for k in filter_keys if k not in safe]
    if bad_filters:
        return _deny(
            request.table,
            COLUMN_NOT_ALLOWED,
            f'Filter columns not in safe set for "{request.table}": {", ".join(bad_filters)}',
            bad_filters,
        )

    if request.order_by is not None and request.order_by not in safe:
        return _deny(
            request.table,
            COLUMN_NOT_ALLOWED,
            f'orderBy column "{request.order_by}" not in safe set for "{request.table}"',
            [request.order_by],
        )

    if not registry.is_global_table(request.table) and not request.caller_user_id:
        return _deny(
            request.table,
            USER_ID_REQUIRED,
            f'Missing required user scope: userId is required for table "{request.table}" '
            f"(not a global table)",
        )

    return AccessDecision(
        table=request.table,
        permitted=True,
        effective_columns=columns,
        effective_limit=clamp_limit(request.limit, max_limit),
    )
