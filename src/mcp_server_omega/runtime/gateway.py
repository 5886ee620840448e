"""
OmegaGateway: the caller-facing surface of the observer.

Every read goes through the access policy evaluator before storage is
touched. The only writes are:
    - appending a proposal to the review queue (status "pending_review")
    - attaching a realized outcome to an existing confidence prediction

The gateway has no authority to execute anything.

Storage calls are blocking and run in worker threads. Reads honour an optional
caller deadline and CancellationToken; a cancelled read raises Cancelled and
its result is discarded. Writes can only be cancelled before dispatch, and
proposals carry their id from the start so a retry cannot queue a duplicate.
"""

import asyncio
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from .cache import TTLCache
from .calibration import OUTCOMES, confidence_error, earned_autonomy, summarize
from .common import utc_now
from .config import Settings
from .errors import (
    Cancelled,
    InvalidInputError,
    MissingUserScopeError,
    NotFoundError,
    StorageUnavailableError,
)
from .policy import AccessRequest, evaluate
from .proposals import ProposalQueue, ProposalRecord
from .schema import REGISTRY, OmegaTable, SchemaRegistry

logger = logging.getLogger("omega.gateway")

_DEFAULT = object()


class CancellationToken:
    """Caller-held flag; thread-safe."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class QueryResult(BaseModel):
    kind: str = "ok"
    table: str
    user_id: Optional[str] = None
    columns: List[str]
    limit: int
    row_count: int
    rows: List[Dict[str, Any]]


class AccessDenied(BaseModel):
    kind: str = "denied"
    table: str
    code: str
    reason: str
    invalid_columns: List[str] = Field(default_factory=list)

    def to_denial(self) -> Dict[str, Any]:
        return {"code": self.code, "reason": self.reason, "invalid_columns": self.invalid_columns}


class OutcomeRecord(BaseModel):
    prediction_id: str
    outcome: str
    outcome_confidence: Optional[float] = None
    confidence_error: Optional[float] = None
    outcome_recorded_at: Optional[str] = None
    already_recorded: bool = False


class AutonomyStatus(BaseModel):
    user_id: str
    level: int
    name: Optional[str] = None
    reason: str
    source: str  # "recorded" or "earned"
    calibration_score: Optional[float] = None
    auto_execute_allowed: Optional[bool] = None
    manual_override: bool = False
    override_expires_at: Optional[str] = None


class OmegaGateway:
    def __init__(self, storage, registry: SchemaRegistry = REGISTRY, settings: Optional[Settings] = None,
                 reference_cache: Optional[TTLCache] = None):
        self.storage = storage
        self.registry = registry
        self.settings = settings or Settings()
        self.reference_cache = reference_cache or TTLCache(self.settings.reference_ttl_seconds)
        self.proposals = ProposalQueue(storage)

    # ------------------------------------------------------------
    # Storage plumbing
    # ------------------------------------------------------------

    async def _call_storage(self, fn: Callable, *args, timeout=_DEFAULT,
                            token: Optional[CancellationToken] = None,
                            write: Optional[Dict[str, Any]] = None, **kwargs):
        """Run a blocking storage call in a worker thread.

        Reads: a caller timeout or token raises Cancelled and the result is
        discarded. The server's own storage timeout raises StorageUnavailableError.

        Writes (`write` names the row being written): the token is only honoured
        before dispatch. Any timeout after dispatch raises StorageUnavailableError
        with outcome "unknown" and the `write` identifiers in its details.
        """
        if token is not None and token.cancelled:
            raise Cancelled("Operation cancelled before reaching storage")
        caller_deadline = timeout is not _DEFAULT
        if not caller_deadline:
            timeout = self.settings.storage_timeout_seconds

        def invoke():
            try:
                return fn(*args, **kwargs)
            except OSError as e:
                raise StorageUnavailableError(f"Storage call failed: {e}") from e

        try:
            result = await asyncio.wait_for(asyncio.to_thread(invoke), timeout)
        except asyncio.TimeoutError as e:
            if write is not None:
                raise StorageUnavailableError(
                    f"Storage write did not finish within {timeout}s; outcome unknown",
                    details={"outcome": "unknown", **write},
                ) from e
            if caller_deadline:
                raise Cancelled(f"Storage call exceeded {timeout}s deadline") from e
            raise StorageUnavailableError(f"Storage did not answer within {timeout}s") from e

        if write is None and token is not None and token.cancelled:
            raise Cancelled("Operation cancelled; storage result discarded")
        return result

    async def _read(self, table: OmegaTable, user_id: Optional[str], columns: Optional[List[str]] = None,
                    filters: Optional[Dict[str, Any]] = None, gte: Optional[Dict[str, Any]] = None,
                    limit: Optional[int] = None, order_by: Optional[str] = None, ascending: bool = False,
                    **call_kwargs) -> List[Dict[str, Any]]:
        """Internal read through the same policy path as `query`. Denial here is a bug or a missing user id."""
        request = AccessRequest(
            table=table.value,
            requested_columns=columns or [],
            caller_user_id=user_id,
            limit=limit or self.settings.max_query_limit,
            filters=filters or {},
            gte=gte or {},
            order_by=order_by,
            ascending=ascending,
        )
        result = await self.query(request, **call_kwargs)
        if isinstance(result, AccessDenied):
            evaluate(request, self.registry, self.settings.max_query_limit).raise_for_denial()
        return result.rows

    # ------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------

    async def query(self, request: AccessRequest, timeout=_DEFAULT,
                    token: Optional[CancellationToken] = None) -> Union[QueryResult, AccessDenied]:
        decision = evaluate(request, self.registry, self.settings.max_query_limit)
        if not decision.permitted:
            logger.info(f"Denied query on {request.table}: {decision.reason}")
            return AccessDenied(table=request.table, code=decision.code, reason=decision.reason,
                                invalid_columns=decision.invalid_columns)

        is_global = self.registry.is_global_table(request.table)
        filters = dict(request.filters)
        if not is_global:
            # scope always comes from the caller identity, never from caller-supplied filters
            filters["user_id"] = request.caller_user_id

        columns = decision.effective_columns
        rows = await self._call_storage(
            self.storage.select, request.table, columns, filters, decision.effective_limit,
            request.order_by, request.ascending, request.gte,
            timeout=timeout, token=token,
        )
        rows = [{c: row.get(c) for c in columns} for row in rows[:decision.effective_limit]]

        return QueryResult(
            table=request.table,
            user_id=None if is_global else request.caller_user_id,
            columns=columns,
            limit=decision.effective_limit,
            row_count=len(rows),
            rows=rows,
        )

    async def analyze_calibration(self, user_id: str, node: Optional[str] = None,
                                  prediction_type: Optional[str] = None, **call_kwargs) -> Dict[str, Any]:
        """Read-only summary over the aggregated calibration view."""
        if not user_id:
            raise MissingUserScopeError("userId is required")
        filters: Dict[str, Any] = {}
        if node:
            filters["node"] = node
        if prediction_type:
            filters["prediction_type"] = prediction_type

        rows = await self._read(OmegaTable.CONFIDENCE_CALIBRATION, user_id, filters=filters, **call_kwargs)
        return {
            "userId": user_id,
            "node": node or "all",
            "predictionType": prediction_type or "all",
            "calibrationData": rows,
            "summary": summarize(rows),
        }

    async def check_autonomy(self, user_id: str, **call_kwargs) -> AutonomyStatus:
        """Current autonomy tier. Falls back to the earned tier when none is recorded. Never writes."""
        if not user_id:
            raise MissingUserScopeError("userId is required")

        recorded = await self._read(OmegaTable.USER_AUTONOMY, user_id, limit=1,
                                    order_by="updated_at", **call_kwargs)
        levels = await self.list_autonomy_levels(**call_kwargs)

        if recorded:
            row = recorded[0]
            level = int(row.get("current_level") or 0)
            status = AutonomyStatus(
                user_id=user_id,
                level=level,
                reason=row.get("level_reason") or "Recorded autonomy level",
                source="recorded",
                calibration_score=row.get("calibration_score"),
                manual_override=bool(row.get("manual_override")),
                override_expires_at=row.get("override_expires_at"),
            )
        else:
            calibration = await self._read(OmegaTable.CONFIDENCE_CALIBRATION, user_id, **call_kwargs)
            level, reason, score = earned_autonomy(calibration)
            status = AutonomyStatus(user_id=user_id, level=level, reason=reason, source="earned",
                                    calibration_score=round(score, 3))

        definition = next((lv for lv in levels if lv.get("level") == status.level), None)
        if definition:
            status.name = definition.get("name")
            status.auto_execute_allowed = bool(definition.get("auto_execute_allowed"))
        return status

    async def list_autonomy_levels(self, **call_kwargs) -> List[Dict[str, Any]]:
        return await self._cached_reference(
            OmegaTable.AUTONOMY_LEVELS, order_by="level", ascending=True, **call_kwargs
        )

    async def list_constraints(self, **call_kwargs) -> List[Dict[str, Any]]:
        return await self._cached_reference(
            OmegaTable.CONSTRAINTS, order_by="constraint_type", ascending=True, **call_kwargs
        )

    async def _cached_reference(self, table: OmegaTable, **read_kwargs) -> List[Dict[str, Any]]:
        """Global reference tables change rarely; cache them for reference_ttl_seconds."""
        return await self.reference_cache.get_or_load(
            table.value, lambda: self._read(table, None, **read_kwargs)
        )

    # ------------------------------------------------------------
    # Gated writes
    # ------------------------------------------------------------

    async def propose_improvement(self, user_id: str, payload: Dict[str, Any], kind: str = "improvement",
                                  proposal_id: Optional[str] = None, **call_kwargs) -> ProposalRecord:
        """Append a proposal for Guardian + human review. Does not execute anything.

        Pass back the `proposal_id` from an earlier attempt to retry it; the
        queue then holds at most one row for that id.
        """
        row = self.proposals.prepare(user_id, payload, kind, proposal_id=proposal_id)
        record = await self._call_storage(self.proposals.append, row, write={"proposal_id": row["id"]},
                                          **call_kwargs)
        logger.info(f"Proposal {record.id} queued for review ({record.kind}, user {user_id})")
        return record

    async def record_outcome(self, prediction_id: str, outcome: str, user_id: str,
                             outcome_confidence: Optional[float] = None, notes: Optional[str] = None,
                             **call_kwargs) -> OutcomeRecord:
        """Attach a realized outcome to a recorded prediction.

        Idempotent: repeating the same outcome returns the stored record without writing.
        """
        if not user_id:
            raise MissingUserScopeError("userId is required to record an outcome")
        if not prediction_id:
            raise InvalidInputError("predictionId is required")
        if outcome not in OUTCOMES:
            raise InvalidInputError(f"Unknown outcome '{outcome}'. Expected one of: {', '.join(OUTCOMES)}")

        rows = await self._read(OmegaTable.CONFIDENCE_EVENTS, user_id, filters={"id": prediction_id},
                                limit=1, **call_kwargs)
        if not rows:
            raise NotFoundError(f"Prediction {prediction_id} not found")
        current = rows[0]

        same_confidence = outcome_confidence is None or current.get("outcome_confidence") == outcome_confidence
        if current.get("outcome") == outcome and same_confidence:
            return OutcomeRecord(
                prediction_id=prediction_id,
                outcome=outcome,
                outcome_confidence=current.get("outcome_confidence"),
                confidence_error=current.get("confidence_error"),
                outcome_recorded_at=current.get("outcome_recorded_at"),
                already_recorded=True,
            )
        if current.get("outcome"):
            logger.warning(
                f"Prediction {prediction_id} outcome changing from {current['outcome']} to {outcome}"
            )

        patch = {
            "outcome": outcome,
            "outcome_confidence": outcome_confidence,
            "outcome_notes": notes,
            "outcome_recorded_at": utc_now(),
            "confidence_error": confidence_error(current.get("predicted_confidence"), outcome),
        }
        updated = await self._call_storage(
            self.storage.update, OmegaTable.CONFIDENCE_EVENTS.value, prediction_id, patch,
            write={"prediction_id": prediction_id}, **call_kwargs
        )
        if updated is None:
            raise NotFoundError(f"Prediction {prediction_id} not found")

        return OutcomeRecord(
            prediction_id=prediction_id,
            outcome=outcome,
            outcome_confidence=updated.get("outcome_confidence"),
            confidence_error=updated.get("confidence_error"),
            outcome_recorded_at=updated.get("outcome_recorded_at"),
        )
