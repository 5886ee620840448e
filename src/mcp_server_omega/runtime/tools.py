"""
Tool implementations behind the MCP surface.

Each `_*_impl` coroutine returns the JSON envelope string the MCP tool hands
back to the client. The shared `run_tool` wrapper owns the cross-cutting
concerns: per-tool rate limit, audit record, and mapping exceptions to the
`denied` / `error` kinds.
"""

import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ValidationError

from . import report_ops
from .audit import AuditLog
from .common import KIND_DENIED, KIND_ERROR, KIND_OK, make_response
from .config import Settings, load_settings
from .db import get_storage_backend
from .errors import InvalidInputError, OmegaError, PolicyViolation, RateLimitExceeded
from .gateway import AccessDenied, OmegaGateway
from .policy import AccessRequest
from .rate_limit import RateLimiter

logger = logging.getLogger("omega.tools")


class OmegaRuntime:
    """Everything a tool call needs, built once per process."""

    def __init__(self, settings: Settings, gateway: OmegaGateway, audit: AuditLog, limiter: RateLimiter):
        self.settings = settings
        self.gateway = gateway
        self.audit = audit
        self.limiter = limiter

    @classmethod
    def from_settings(cls, settings: Settings, storage=None) -> "OmegaRuntime":
        storage = storage or get_storage_backend(settings)
        return cls(
            settings=settings,
            gateway=OmegaGateway(storage, settings=settings),
            audit=AuditLog(settings.audit_path if settings.audit_enabled else None),
            limiter=RateLimiter(settings.rate_limit_per_minute),
        )


_runtime: Optional[OmegaRuntime] = None


def get_runtime() -> OmegaRuntime:
    """Lazy-loaded process singleton."""
    global _runtime
    if _runtime is None:
        _runtime = OmegaRuntime.from_settings(load_settings())
    return _runtime


def set_runtime(runtime: Optional[OmegaRuntime]) -> None:
    global _runtime
    _runtime = runtime


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


async def run_tool(name: str, details: Dict[str, Any], operation: Callable[[], Awaitable[Any]]) -> str:
    rt = get_runtime()

    if not rt.limiter.check(name):
        rt.audit.record(name, {**details, "rateLimited": True}, False)
        denial = RateLimitExceeded(f"Rate limit exceeded for {name}. Please wait before retrying.")
        return make_response(KIND_DENIED, denial=denial.to_dict())

    try:
        result = await operation()
    except PolicyViolation as e:
        rt.audit.record(name, {**details, "denied": e.code}, False)
        return make_response(KIND_DENIED, denial=e.to_dict())
    except OmegaError as e:
        logger.warning(f"{name} failed: {e.code} {e.message}")
        rt.audit.record(name, {**details, "error": e.code}, False)
        return make_response(KIND_ERROR, error=e.to_dict())
    except ValidationError as e:
        rt.audit.record(name, {**details, "error": InvalidInputError.code}, False)
        return make_response(KIND_ERROR, error={"code": InvalidInputError.code, "message": str(e)})

    if isinstance(result, AccessDenied):
        rt.audit.record(name, {**details, "denied": result.code}, False)
        return make_response(KIND_DENIED, denial=result.to_denial())

    rt.audit.record(name, details, True)
    return make_response(KIND_OK, result=_jsonable(result))


def _parse_columns(select: Union[str, List[str], None]) -> List[str]:
    if select is None:
        return []
    if isinstance(select, str):
        return [c.strip() for c in select.split(",") if c.strip()]
    return list(select)


# ============================================================
# OBSERVATION
# ============================================================

async def _query_impl(table: str, user_id: Optional[str] = None, select: Union[str, List[str], None] = None,
                      filters: Optional[Dict[str, Any]] = None, limit: Optional[int] = None,
                      order_by: Optional[str] = None, ascending: bool = False) -> str:
    async def op():
        rt = get_runtime()
        request = AccessRequest(
            table=table,
            requested_columns=_parse_columns(select),
            caller_user_id=user_id,
            limit=limit or rt.settings.default_query_limit,
            filters=filters or {},
            order_by=order_by,
            ascending=ascending,
        )
        return await rt.gateway.query(request)

    return await run_tool("query", {"table": table, "userId": user_id, "limit": limit}, op)


async def _analyze_calibration_impl(user_id: str, node: Optional[str] = None,
                                    prediction_type: Optional[str] = None) -> str:
    return await run_tool(
        "analyze_calibration", {"userId": user_id, "node": node},
        lambda: get_runtime().gateway.analyze_calibration(user_id, node, prediction_type),
    )


async def _check_autonomy_impl(user_id: str) -> str:
    return await run_tool(
        "check_autonomy", {"userId": user_id},
        lambda: get_runtime().gateway.check_autonomy(user_id),
    )


async def _get_state_impl(user_id: str) -> str:
    return await run_tool(
        "get_state", {"userId": user_id},
        lambda: report_ops.get_state(get_runtime().gateway, user_id),
    )


async def _health_report_impl(user_id: str) -> str:
    return await run_tool(
        "health_report", {"userId": user_id},
        lambda: report_ops.health_report(get_runtime().gateway, user_id),
    )


async def _risk_report_impl(user_id: str, lookback_hours: float = 24) -> str:
    return await run_tool(
        "risk_report", {"userId": user_id, "lookbackHours": lookback_hours},
        lambda: report_ops.risk_report(get_runtime().gateway, user_id, lookback_hours),
    )


async def _get_reasoning_chain_impl(session_id: str, user_id: str) -> str:
    async def op():
        return await report_ops.get_reasoning_chain(get_runtime().gateway, session_id, user_id)

    return await run_tool("get_reasoning_chain", {"sessionId": session_id, "userId": user_id}, op)


async def _simulate_impact_impl(change_description: str, affected_components: Optional[List[str]] = None) -> str:
    async def op():
        return report_ops.simulate_impact(change_description, affected_components)

    return await run_tool("simulate_impact", {"changeDescription": change_description}, op)


# ============================================================
# GATED WRITES
# ============================================================

async def _propose_improvement_impl(user_id: str, improvement_type: str, target_component: str,
                                    proposed_change: Dict[str, Any], expected_impact: str,
                                    current_state: Optional[Dict[str, Any]] = None,
                                    implementation: Optional[str] = None, risk: Optional[str] = None,
                                    proposal_id: Optional[str] = None) -> str:
    payload: Dict[str, Any] = {
        "improvement_type": improvement_type,
        "target_component": target_component,
        "proposed_change": proposed_change,
        "expected_impact": expected_impact,
        "current_state": current_state or {},
        "implementation": implementation,
    }
    if risk:
        payload["risk"] = risk

    async def op():
        record = await get_runtime().gateway.propose_improvement(user_id, payload, proposal_id=proposal_id)
        return {
            "status": "PROPOSED",
            "proposalId": record.id,
            "userId": record.user_id,
            "type": improvement_type,
            "target": target_component,
            "reviewStatus": record.status,
            "createdAt": record.created_at,
            "message": "Improvement queued for Guardian + human review. "
                       "MCP has no authority to execute changes directly.",
            "reviewRequired": True,
        }

    return await run_tool(
        "propose_improvement", {"userId": user_id, "type": improvement_type, "target": target_component}, op
    )


async def _record_outcome_impl(prediction_id: str, outcome: str, user_id: str,
                               outcome_confidence: Optional[float] = None, notes: Optional[str] = None) -> str:
    return await run_tool(
        "record_outcome", {"predictionId": prediction_id, "userId": user_id, "outcome": outcome},
        lambda: get_runtime().gateway.record_outcome(prediction_id, outcome, user_id, outcome_confidence, notes),
    )


# ============================================================
# RESOURCES
# ============================================================

def _schema_resource_impl() -> str:
    rt = get_runtime()
    snapshot = rt.gateway.registry.describe()
    snapshot["maxQueryLimit"] = rt.settings.max_query_limit
    snapshot["note"] = "Use get_state, health_report, etc. with userId for user-specific data"
    return json.dumps(snapshot, indent=2)


async def _reference_resource_impl(kind: str) -> str:
    """Global reference rows; storage failures are reported inline instead of raising."""
    gateway = get_runtime().gateway
    try:
        if kind == "constraints":
            rows = await gateway.list_constraints()
        else:
            rows = await gateway.list_autonomy_levels()
    except OmegaError as e:
        return json.dumps({"error": e.to_dict()}, indent=2)
    return json.dumps({kind: rows}, indent=2, default=str)
