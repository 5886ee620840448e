"""
Omega Schema Registry
=====================
Static snapshot of every table and view the observer may read.

Each TableDescriptor declares:
    - all_columns: what exists in storage
    - safe_columns: what may leave the gateway (large JSON/text blobs and
      reasoning traces are excluded)
    - is_global: system-wide reference data that is NOT partitioned by user

The registry is built once at import time and is read-only afterwards.
Changing it means shipping a new release; there is no runtime mutation.
"""

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterator, Mapping, Optional, Tuple, Union

from .errors import SchemaError, UnknownTableError


class OmegaTable(str, Enum):
    """Closed set of queryable Omega tables and views."""

    SIGNALS = "pulse_signals"
    INTENTS = "pulse_intents"
    DRAFTS = "pulse_drafts"
    OUTCOMES = "pulse_outcomes"
    STRATEGIES = "pulse_strategies"
    PREFERENCES = "pulse_preferences"
    REASONING_TRACES = "pulse_reasoning_traces"
    COGNITIVE_LIMITS = "pulse_cognitive_limits"
    SIMULATIONS = "pulse_simulations"
    IMPROVEMENTS = "pulse_improvements"
    CONSTRAINTS = "pulse_constraints"
    CONSTRAINT_VIOLATIONS = "pulse_constraint_violations"
    GOALS = "pulse_goals"
    TRAJECTORIES = "pulse_trajectories"
    LIFE_EVENTS = "pulse_life_events"
    DOMAIN_CONNECTIONS = "pulse_domain_connections"
    CONFIDENCE_EVENTS = "pulse_confidence_events"
    USER_AUTONOMY = "pulse_user_autonomy"
    AUTONOMY_LEVELS = "pulse_autonomy_levels"
    CONFIDENCE_CALIBRATION = "pulse_confidence_calibration"
    PROPOSALS = "pulse_proposals"

    @classmethod
    def parse(cls, name: Union[str, "OmegaTable"]) -> Optional["OmegaTable"]:
        """Exact, case-sensitive lookup. Returns None for unknown names."""
        if isinstance(name, cls):
            return name
        try:
            return cls(name)
        except ValueError:
            return None


TableName = Union[str, OmegaTable]


@dataclass(frozen=True)
class TableDescriptor:
    """
    Frozen descriptor for one Omega table or view.

    Invariant: safe_columns ⊆ all_columns (checked at construction).
    """

    name: OmegaTable
    description: str
    all_columns: Tuple[str, ...]
    safe_columns: Tuple[str, ...]
    is_global: bool = False
    is_view: bool = False
    primary_key: str = "id"

    def __post_init__(self):
        unknown = [c for c in self.safe_columns if c not in self.all_columns]
        if unknown:
            raise SchemaError(
                f"{self.name.value}: safe columns not declared in all_columns: {', '.join(unknown)}"
            )
        if not self.is_view and self.primary_key not in self.all_columns:
            raise SchemaError(f"{self.name.value}: primary key '{self.primary_key}' is not a column")

    @property
    def excluded_columns(self) -> Tuple[str, ...]:
        return tuple(c for c in self.all_columns if c not in self.safe_columns)

    def to_dict(self) -> Dict:
        return {
            "description": self.description,
            "columns": list(self.all_columns),
            "safeColumns": list(self.safe_columns),
            "isGlobal": self.is_global,
        }


def _table(name, description, columns, safe, **kwargs) -> TableDescriptor:
    return TableDescriptor(
        name=name,
        description=description,
        all_columns=tuple(columns),
        safe_columns=tuple(safe),
        **kwargs,
    )


# ============================================================
# DESCRIPTORS
# ============================================================

OMEGA_TABLES: Tuple[TableDescriptor, ...] = (
    _table(
        OmegaTable.SIGNALS, "Incoming signals from all sources",
        ["id", "user_id", "source", "signal_type", "payload", "metadata", "processed", "processed_at", "created_at"],
        # payload, metadata: large JSON
        ["id", "user_id", "source", "signal_type", "processed", "processed_at", "created_at"],
    ),
    _table(
        OmegaTable.INTENTS, "Predicted intents from signals",
        ["id", "user_id", "signal_id", "predicted_need", "confidence", "reasoning", "suggested_action", "status", "created_at"],
        ["id", "user_id", "signal_id", "predicted_need", "confidence", "suggested_action", "status", "created_at"],
    ),
    _table(
        OmegaTable.DRAFTS, "Proactively generated drafts",
        ["id", "user_id", "intent_id", "draft_type", "title", "content", "confidence", "status",
         "user_feedback", "executed_at", "created_at"],
        ["id", "user_id", "intent_id", "draft_type", "title", "confidence", "status",
         "user_feedback", "executed_at", "created_at"],
    ),
    _table(
        OmegaTable.OUTCOMES, "Track outcomes after draft execution",
        ["id", "user_id", "draft_id", "outcome_type", "outcome_signal", "user_rating", "user_notes",
         "measured_at", "created_at"],
        ["id", "user_id", "draft_id", "outcome_type", "user_rating", "measured_at", "created_at"],
    ),
    _table(
        OmegaTable.STRATEGIES, "Learned strategies that work",
        ["id", "user_id", "strategy_type", "pattern", "success_count", "failure_count", "confidence",
         "active", "learned_from", "created_at", "updated_at"],
        ["id", "user_id", "strategy_type", "success_count", "failure_count", "confidence",
         "active", "created_at", "updated_at"],
    ),
    _table(
        OmegaTable.PREFERENCES, "User preferences learned over time",
        ["id", "user_id", "preference_type", "preference_value", "confidence", "evidence_count",
         "created_at", "updated_at"],
        ["id", "user_id", "preference_type", "preference_value", "confidence", "evidence_count",
         "created_at", "updated_at"],
    ),
    _table(
        OmegaTable.REASONING_TRACES, "Observer: reasoning traces",
        ["id", "user_id", "session_id", "trace_type", "input_context", "reasoning_steps", "output",
         "duration_ms", "success", "failure_reason", "created_at"],
        ["id", "user_id", "session_id", "trace_type", "duration_ms", "success", "failure_reason", "created_at"],
    ),
    _table(
        OmegaTable.COGNITIVE_LIMITS, "Diagnoser: identified cognitive limits",
        ["id", "user_id", "limit_type", "description", "evidence", "severity", "addressed",
         "improvement_id", "discovered_at"],
        ["id", "user_id", "limit_type", "severity", "addressed", "improvement_id", "discovered_at"],
    ),
    _table(
        OmegaTable.SIMULATIONS, "Simulator: hypothetical scenarios tested",
        ["id", "user_id", "simulation_type", "hypothesis", "input_state", "simulated_actions",
         "predicted_outcomes", "actual_outcome", "accuracy_score", "created_at"],
        ["id", "user_id", "simulation_type", "accuracy_score", "created_at"],
    ),
    _table(
        OmegaTable.IMPROVEMENTS, "Evolver: improvements under Guardian review",
        ["id", "user_id", "improvement_type", "target_component", "current_state", "proposed_change",
         "expected_impact", "simulation_id", "status", "guardian_review", "approved_at", "created_at"],
        ["id", "user_id", "improvement_type", "target_component", "expected_impact", "simulation_id",
         "status", "approved_at", "created_at"],
    ),
    _table(
        OmegaTable.CONSTRAINTS, "Guardian: immutable constraints",
        ["id", "constraint_type", "constraint_name", "description", "rule", "immutable", "escalation_level",
         "min_autonomy_level", "allows_earned_override", "violation_count", "created_at"],
        # rule: large JSON
        ["id", "constraint_type", "constraint_name", "description", "immutable", "escalation_level",
         "min_autonomy_level", "allows_earned_override", "violation_count", "created_at"],
        is_global=True,
    ),
    _table(
        OmegaTable.CONSTRAINT_VIOLATIONS, "Guardian: constraint violations log",
        ["id", "user_id", "constraint_id", "attempted_action", "violation_reason", "blocked",
         "override_requested", "override_granted", "created_at"],
        ["id", "user_id", "constraint_id", "violation_reason", "blocked", "override_requested",
         "override_granted", "created_at"],
    ),
    _table(
        OmegaTable.GOALS, "Long-horizon goals",
        ["id", "user_id", "goal_type", "title", "description", "target_state", "current_state",
         "time_horizon", "priority", "progress", "status", "parent_goal_id", "created_at", "updated_at"],
        ["id", "user_id", "goal_type", "title", "time_horizon", "priority", "progress", "status",
         "parent_goal_id", "created_at", "updated_at"],
    ),
    _table(
        OmegaTable.TRAJECTORIES, "Life trajectory projections",
        ["id", "user_id", "trajectory_type", "time_horizon", "starting_state", "projected_milestones",
         "projected_end_state", "confidence", "assumptions", "risks", "opportunities", "created_at"],
        ["id", "user_id", "trajectory_type", "time_horizon", "confidence", "created_at"],
    ),
    _table(
        OmegaTable.LIFE_EVENTS, "Life events and their impacts",
        ["id", "user_id", "event_type", "title", "description", "impact_assessment", "affected_goals",
         "significance", "occurred_at", "created_at"],
        ["id", "user_id", "event_type", "title", "significance", "occurred_at", "created_at"],
    ),
    _table(
        OmegaTable.DOMAIN_CONNECTIONS, "Cross-domain connections",
        ["id", "user_id", "domain_a", "domain_b", "connection_type", "strength", "description",
         "evidence", "discovered_at"],
        ["id", "user_id", "domain_a", "domain_b", "connection_type", "strength", "discovered_at"],
    ),
    _table(
        OmegaTable.CONFIDENCE_EVENTS, "Confidence ledger: tracks predicted vs actual",
        ["id", "user_id", "session_id", "node", "prediction_type", "prediction_id", "predicted_confidence",
         "context_snapshot", "outcome", "outcome_confidence", "outcome_notes", "outcome_recorded_at",
         "confidence_error", "created_at"],
        ["id", "user_id", "session_id", "node", "prediction_type", "prediction_id", "predicted_confidence",
         "outcome", "outcome_confidence", "outcome_recorded_at", "confidence_error", "created_at"],
    ),
    _table(
        OmegaTable.USER_AUTONOMY, "User autonomy levels",
        ["id", "user_id", "current_level", "level_reason", "calibration_score", "total_predictions",
         "level_history", "manual_override", "override_reason", "override_expires_at",
         "last_evaluated_at", "created_at", "updated_at"],
        # level_history: large JSON array
        ["id", "user_id", "current_level", "level_reason", "calibration_score", "total_predictions",
         "manual_override", "override_reason", "override_expires_at", "last_evaluated_at",
         "created_at", "updated_at"],
    ),
    _table(
        OmegaTable.AUTONOMY_LEVELS, "Autonomy level definitions",
        ["level", "name", "description", "auto_execute_allowed", "requires_confirmation", "example_actions"],
        ["level", "name", "description", "auto_execute_allowed"],
        is_global=True,
        primary_key="level",
    ),
    _table(
        OmegaTable.CONFIDENCE_CALIBRATION, "Aggregated confidence calibration data",
        ["user_id", "node", "prediction_type", "confidence_bucket", "total_predictions", "successes",
         "partials", "failures", "modified", "rejected", "avg_predicted", "actual_success_rate",
         "avg_calibration_error", "calibration_gap"],
        # aggregated, every column is safe
        ["user_id", "node", "prediction_type", "confidence_bucket", "total_predictions", "successes",
         "partials", "failures", "modified", "rejected", "avg_predicted", "actual_success_rate",
         "avg_calibration_error", "calibration_gap"],
        is_view=True,
    ),
    _table(
        OmegaTable.PROPOSALS, "Review queue: proposals awaiting Guardian + human review",
        ["id", "user_id", "kind", "payload", "status", "created_at"],
        ["id", "user_id", "kind", "status", "created_at"],
    ),
)


# ============================================================
# REGISTRY
# ============================================================

class SchemaRegistry:
    """Read-only lookup over a fixed set of descriptors."""

    def __init__(self, descriptors: Tuple[TableDescriptor, ...] = OMEGA_TABLES):
        table_map: Dict[OmegaTable, TableDescriptor] = {}
        for desc in descriptors:
            if desc.name in table_map:
                raise SchemaError(f"Duplicate descriptor for {desc.name.value}")
            table_map[desc.name] = desc
        self._tables: Mapping[OmegaTable, TableDescriptor] = MappingProxyType(table_map)
        self.allowed_tables: FrozenSet[str] = frozenset(t.value for t in table_map)
        self.global_tables: FrozenSet[str] = frozenset(
            t.value for t, d in table_map.items() if d.is_global
        )

    def __iter__(self) -> Iterator[TableDescriptor]:
        return iter(self._tables.values())

    def __len__(self) -> int:
        return len(self._tables)

    def __contains__(self, name) -> bool:
        table = OmegaTable.parse(name)
        return table is not None and table in self._tables

    def get_descriptor(self, name: TableName) -> TableDescriptor:
        table = OmegaTable.parse(name)
        if table is None or table not in self._tables:
            raise UnknownTableError(str(getattr(name, "value", name)))
        return self._tables[table]

    def get_safe_columns(self, name: TableName) -> Tuple[str, ...]:
        return self.get_descriptor(name).safe_columns

    def is_global_table(self, name: TableName) -> bool:
        # Unknown names are never global: absence must not skip user scoping.
        table = OmegaTable.parse(name)
        if table is None or table not in self._tables:
            return False
        return self._tables[table].is_global

    def describe(self) -> Dict:
        """JSON-able snapshot for the omega://schema resource."""
        return {
            "tables": {d.name.value: d.to_dict() for d in self if not d.is_view},
            "views": {d.name.value: d.to_dict() for d in self if d.is_view},
            "allowedTables": sorted(self.allowed_tables),
            "globalTables": sorted(self.global_tables),
        }


REGISTRY = SchemaRegistry()


def get_descriptor(name: TableName) -> TableDescriptor:
    return REGISTRY.get_descriptor(name)


def get_safe_columns(name: TableName) -> Tuple[str, ...]:
    return REGISTRY.get_safe_columns(name)


def is_global_table(name: TableName) -> bool:
    return REGISTRY.is_global_table(name)
