
# =============================================================================
# Omega Observer MCP Server v0.3.0
# =============================================================================
# Observer-only window onto the Omega tables. External LLMs may read through
# the access policy and append proposals to the review queue; nothing here
# executes, approves or changes autonomy.
__version__ = "0.3.0"

import os
import logging
import warnings
from typing import Any, Dict, List, Optional, Union

# stdout is the JSON-RPC channel
warnings.filterwarnings("ignore", category=UserWarning, module="urllib3")
os.environ.setdefault("FASTMCP_SHOW_CLI_BANNER", "False")
os.environ.setdefault("FASTMCP_LOG_LEVEL", "WARNING")

from fastmcp import FastMCP

from .runtime.tools import (
    _analyze_calibration_impl,
    _check_autonomy_impl,
    _get_reasoning_chain_impl,
    _get_state_impl,
    _health_report_impl,
    _propose_improvement_impl,
    _query_impl,
    _record_outcome_impl,
    _reference_resource_impl,
    _risk_report_impl,
    _schema_resource_impl,
    _simulate_impact_impl,
)

logger = logging.getLogger("omega")

mcp = FastMCP("Omega Observer")


# ============================================================
# OBSERVATION TOOLS (read-only)
# ============================================================

@mcp.tool()
async def query(
    table: str,
    userId: Optional[str] = None,
    select: Optional[Union[str, List[str]]] = None,
    filters: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    orderBy: Optional[str] = None,
    ascending: bool = False,
) -> str:
    """
    Query an allowlisted Omega table (read-only, safe columns only).
    userId is REQUIRED for every table except pulse_constraints and pulse_autonomy_levels.
    select: comma-separated columns or a list; omit for all safe columns.
    limit defaults to 50 and is capped at 200.
    """
    return await _query_impl(table, userId, select, filters, limit, orderBy, ascending)


@mcp.tool()
async def get_state(userId: str) -> str:
    """Current Omega state for a user: pending drafts, active goals, recent signals and intents."""
    return await _get_state_impl(userId)


@mcp.tool()
async def health_report(userId: str) -> str:
    """Health report: pending drafts, violations in the last 24h, calibration, autonomy, recent signals."""
    return await _health_report_impl(userId)


@mcp.tool()
async def risk_report(userId: str, lookbackHours: float = 24) -> str:
    """Risk report: repeated failures, constraint trends and an autonomy recommendation."""
    return await _risk_report_impl(userId, lookbackHours)


@mcp.tool()
async def analyze_calibration(userId: str, node: Optional[str] = None, predictionType: Optional[str] = None) -> str:
    """Analyze confidence calibration (predicted vs actual) and suggest adjustments."""
    return await _analyze_calibration_impl(userId, node, predictionType)


@mcp.tool()
async def check_autonomy(userId: str) -> str:
    """Current autonomy level (L0-L3) for a user and why. Read-only."""
    return await _check_autonomy_impl(userId)


@mcp.tool()
async def get_reasoning_chain(sessionId: str, userId: str) -> str:
    """All reasoning traces for one session, oldest first (safe columns only)."""
    return await _get_reasoning_chain_impl(sessionId, userId)


@mcp.tool()
async def simulate_impact(changeDescription: str, affectedComponents: Optional[List[str]] = None) -> str:
    """Estimate scope and risk of a change. Local computation only; modifies nothing."""
    return await _simulate_impact_impl(changeDescription, affectedComponents)


# ============================================================
# GATED WRITES (review queue + outcome ledger only)
# ============================================================

@mcp.tool()
async def propose_improvement(
    userId: str,
    improvementType: str,
    targetComponent: str,
    proposedChange: Dict[str, Any],
    expectedImpact: str,
    currentState: Optional[Dict[str, Any]] = None,
    implementation: Optional[str] = None,
    risk: Optional[str] = None,
    proposalId: Optional[str] = None,
) -> str:
    """
    Propose an improvement to Omega. QUEUED FOR HUMAN REVIEW - does not execute.
    improvementType: prompt_adjustment | strategy_update | threshold_change |
                     new_pattern | schema_change | code_change
    proposalId: pass the id from an earlier attempt whose outcome was unknown;
                the queue keeps one row per id.
    """
    return await _propose_improvement_impl(
        userId, improvementType, targetComponent, proposedChange, expectedImpact,
        currentState, implementation, risk, proposalId,
    )


@mcp.tool()
async def record_outcome(
    predictionId: str,
    outcome: str,
    userId: str,
    outcomeConfidence: Optional[float] = None,
    notes: Optional[str] = None,
) -> str:
    """
    Attach the realized outcome to a recorded confidence prediction.
    outcome: success | partial | failure | modified | rejected | timeout
    Repeating the same outcome is a no-op.
    """
    return await _record_outcome_impl(predictionId, outcome, userId, outcomeConfidence, notes)


# ============================================================
# MCP RESOURCES
# ============================================================

@mcp.resource("omega://schema")
def resource_schema() -> str:
    """Static snapshot of every allowlisted table with its safe columns."""
    return _schema_resource_impl()


@mcp.resource("omega://constraints")
async def resource_constraints() -> str:
    """Guardian constraints (global reference data)."""
    return await _reference_resource_impl("constraints")


@mcp.resource("omega://autonomy-levels")
async def resource_autonomy_levels() -> str:
    """Autonomy level definitions L0-L3 (global reference data)."""
    return await _reference_resource_impl("autonomy_levels")
