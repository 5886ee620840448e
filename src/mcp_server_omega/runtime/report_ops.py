"""
Read-only reports composed from several gateway reads.

Every read goes through OmegaGateway._read, so column choices stay inside the
registry's safe set and user scope is enforced by the same policy as `query`.
simulate_impact is pure and touches no storage at all.
"""

import asyncio
import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from .calibration import average_gap, calibration_status
from .common import iso_utc, utc_now
from .errors import InvalidInputError, MissingUserScopeError, StorageUnavailableError
from .schema import OmegaTable

logger = logging.getLogger("omega.reports")

# risk thresholds, per lookback window
REJECTED_DRAFTS_THRESHOLD = 5
VIOLATIONS_THRESHOLD = 3
FAILED_TRACES_THRESHOLD = 10
AUTONOMY_RISK_THRESHOLD = 2


def _require_user(user_id: Optional[str]) -> None:
    if not user_id:
        raise MissingUserScopeError("userId is required")


def _hours_ago(hours: float) -> str:
    return iso_utc(datetime.now(timezone.utc) - timedelta(hours=hours))


async def get_state(gateway, user_id: str, **call_kwargs) -> Dict[str, Any]:
    """Pending drafts, active goals, recent signals and intents for one user."""
    _require_user(user_id)
    signals, drafts, goals, intents = await asyncio.gather(
        gateway._read(OmegaTable.SIGNALS, user_id, order_by="created_at", limit=20, **call_kwargs),
        gateway._read(OmegaTable.DRAFTS, user_id, filters={"status": "pending_review"},
                      order_by="created_at", limit=50, **call_kwargs),
        gateway._read(OmegaTable.GOALS, user_id, filters={"status": "active"}, limit=50, **call_kwargs),
        gateway._read(OmegaTable.INTENTS, user_id, order_by="created_at", limit=20, **call_kwargs),
    )
    return {
        "userId": user_id,
        "recentSignals": signals,
        "pendingDrafts": drafts,
        "activeGoals": goals,
        "recentIntents": intents,
    }


async def health_report(gateway, user_id: str, **call_kwargs) -> Dict[str, Any]:
    _require_user(user_id)
    since = _hours_ago(24)
    drafts, violations, calibration, autonomy, signals = await asyncio.gather(
        gateway._read(OmegaTable.DRAFTS, user_id, columns=["id", "status"],
                      filters={"status": "pending_review"}, **call_kwargs),
        gateway._read(OmegaTable.CONSTRAINT_VIOLATIONS, user_id, gte={"created_at": since}, **call_kwargs),
        gateway._read(OmegaTable.CONFIDENCE_CALIBRATION, user_id, **call_kwargs),
        gateway._read(OmegaTable.USER_AUTONOMY, user_id, order_by="updated_at", limit=1, **call_kwargs),
        gateway._read(OmegaTable.SIGNALS, user_id, order_by="created_at", limit=10, **call_kwargs),
    )

    avg_gap = average_gap(calibration)
    current = autonomy[0] if autonomy else None
    return {
        "userId": user_id,
        "timestamp": utc_now(),
        "summary": {
            "pendingDraftsCount": len(drafts),
            "violationsLast24h": len(violations),
            "avgCalibrationGap": round(avg_gap, 3) if avg_gap is not None else None,
            "calibrationStatus": calibration_status(avg_gap),
        },
        "autonomy": {
            "level": current.get("current_level"),
            "reason": current.get("level_reason"),
            "calibrationScore": current.get("calibration_score"),
        } if current else None,
        "recentSignals": [
            {
                "id": s.get("id"),
                "source": s.get("source"),
                "type": s.get("signal_type"),
                "processed": s.get("processed"),
                "createdAt": s.get("created_at"),
            }
            for s in signals
        ],
    }


def _is_failed_outcome(row: Dict[str, Any]) -> bool:
    if row.get("outcome_type") == "failure":
        return True
    rating = row.get("user_rating")
    return isinstance(rating, (int, float)) and not isinstance(rating, bool) and rating <= 2


async def _recent_outcomes(gateway, user_id: str, since: str, notes: List[str], **call_kwargs):
    try:
        return await gateway._read(OmegaTable.OUTCOMES, user_id, gte={"measured_at": since}, **call_kwargs)
    except StorageUnavailableError as e:
        logger.warning(f"Outcome query on measured_at failed, retrying on created_at: {e}")
    try:
        rows = await gateway._read(OmegaTable.OUTCOMES, user_id, gte={"created_at": since}, **call_kwargs)
        notes.append("Using created_at instead of measured_at for outcomes")
        return rows
    except StorageUnavailableError as e:
        logger.warning(f"Outcome query failed: {e}")
        notes.append("Could not query outcomes table")
        return []


async def risk_report(gateway, user_id: str, lookback_hours: float = 24, **call_kwargs) -> Dict[str, Any]:
    """Repeated failures, constraint trends and an autonomy recommendation."""
    _require_user(user_id)
    if lookback_hours is None or lookback_hours <= 0:
        lookback_hours = 24
    since = _hours_ago(lookback_hours)
    notes: List[str] = []

    rejected, violations, traces = await asyncio.gather(
        gateway._read(OmegaTable.DRAFTS, user_id, filters={"status": "rejected"},
                      gte={"created_at": since}, **call_kwargs),
        gateway._read(OmegaTable.CONSTRAINT_VIOLATIONS, user_id, gte={"created_at": since}, **call_kwargs),
        gateway._read(OmegaTable.REASONING_TRACES, user_id, filters={"success": False},
                      gte={"created_at": since}, **call_kwargs),
    )
    outcomes = await _recent_outcomes(gateway, user_id, since, notes, **call_kwargs)

    by_draft_type = Counter(d["draft_type"] for d in rejected if d.get("draft_type"))
    by_constraint = Counter(v["constraint_id"] for v in violations if v.get("constraint_id"))

    risks: List[str] = []
    recommendations: List[str] = []
    if len(rejected) > REJECTED_DRAFTS_THRESHOLD:
        risks.append(f"High rejection rate: {len(rejected)} drafts rejected in {lookback_hours}h")
        recommendations.append("Review draft generation prompts and confidence thresholds")
    if len(violations) > VIOLATIONS_THRESHOLD:
        risks.append(f"Constraint violations: {len(violations)} in {lookback_hours}h")
        recommendations.append("Review Guardian constraints and user autonomy levels")
    if len(traces) > FAILED_TRACES_THRESHOLD:
        risks.append(f"Reasoning failures: {len(traces)} failed traces in {lookback_hours}h")
        recommendations.append("Investigate reasoning trace failures for patterns")

    report = {
        "userId": user_id,
        "timestamp": utc_now(),
        "lookbackHours": lookback_hours,
        "metrics": {
            "rejectedDrafts": len(rejected),
            "constraintViolations": len(violations),
            "failedOutcomes": sum(1 for o in outcomes if _is_failed_outcome(o)),
            "failedTraces": len(traces),
        },
        "patterns": {
            "failuresByDraftType": dict(by_draft_type),
            "violationsByConstraint": dict(by_constraint),
        },
        "risks": risks,
        "recommendations": recommendations,
        "autonomyRecommendation": (
            "Consider reducing autonomy level" if len(risks) > AUTONOMY_RISK_THRESHOLD
            else "Current autonomy level appears appropriate"
        ),
    }
    if notes:
        report["dataNotes"] = notes
    return report


async def get_reasoning_chain(gateway, session_id: str, user_id: str, **call_kwargs) -> Dict[str, Any]:
    if not session_id:
        raise InvalidInputError("sessionId is required")
    _require_user(user_id)
    traces = await gateway._read(OmegaTable.REASONING_TRACES, user_id, filters={"session_id": session_id},
                                 order_by="created_at", ascending=True, **call_kwargs)
    return {
        "sessionId": session_id,
        "userId": user_id,
        "traceCount": len(traces),
        "traces": traces,
    }


def simulate_impact(change_description: str, affected_components: Optional[List[str]] = None) -> Dict[str, Any]:
    """Rough scope/risk estimate for a change. Local computation only."""
    if not change_description:
        raise InvalidInputError("changeDescription is required")
    components = list(affected_components or [])
    text = change_description.lower()

    if len(components) > 3:
        scope = "Large"
    elif len(components) > 1:
        scope = "Medium"
    else:
        scope = "Small"

    if "delete" in text or "remove" in text:
        risk = "High"
    elif "modify" in text:
        risk = "Medium"
    else:
        risk = "Low"

    return {
        "changeDescription": change_description,
        "affectedComponents": components,
        "analysis": {"estimatedScope": scope, "riskLevel": risk},
        "recommendation": "Submit via propose_improvement for Guardian + human review",
    }
