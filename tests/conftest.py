
import os
import tempfile
import time
from pathlib import Path

import pytest

from mcp_server_omega.runtime.config import Settings
from mcp_server_omega.runtime.db import SQLiteBackend, StorageBackend
from mcp_server_omega.runtime.gateway import OmegaGateway
from mcp_server_omega.runtime.tools import OmegaRuntime, set_runtime


class RecordingStorage(StorageBackend):
    """In-memory backend that records every call. Optional delay, error, or hook."""

    def __init__(self, rows=None, delay=0.0, error=None, on_select=None):
        self.rows = rows or []
        self.delay = delay
        self.error = error
        self.on_select = on_select
        self.calls = []

    def select(self, table, columns, filters=None, limit=None, order_by=None, ascending=False, gte=None):
        self.calls.append({
            "table": table, "columns": list(columns), "filters": dict(filters or {}),
            "limit": limit, "order_by": order_by, "gte": dict(gte or {}),
        })
        if self.on_select:
            self.on_select()
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error
        return [dict(r) for r in self.rows]

    def insert(self, table, row):
        raise AssertionError(f"unexpected insert into {table}")

    def update(self, table, row_id, patch, id_column="id"):
        raise AssertionError(f"unexpected update on {table}")


@pytest.fixture
def omega_home():
    """Temporary OMEGA_HOME for one test."""
    with tempfile.TemporaryDirectory() as tmpdir:
        old_home = os.environ.get("OMEGA_HOME")
        os.environ["OMEGA_HOME"] = tmpdir

        home = Path(tmpdir)
        (home / "ledger").mkdir(parents=True, exist_ok=True)
        (home / "config").mkdir(parents=True, exist_ok=True)

        yield home

        if old_home:
            os.environ["OMEGA_HOME"] = old_home
        else:
            del os.environ["OMEGA_HOME"]


@pytest.fixture
def settings(omega_home):
    return Settings(home=omega_home)


@pytest.fixture
def storage(omega_home):
    return SQLiteBackend(omega_home / "omega.db")


@pytest.fixture
def gateway(storage, settings):
    return OmegaGateway(storage, settings=settings)


@pytest.fixture
def runtime(storage, settings):
    rt = OmegaRuntime.from_settings(settings, storage=storage)
    set_runtime(rt)
    yield rt
    set_runtime(None)


@pytest.fixture
def seeded(storage):
    """Two users' worth of Omega rows plus the global reference tables."""
    ids = {}

    for i, source in enumerate(["gmail", "calendar", "slack"]):
        storage.insert("pulse_signals", {
            "id": f"sig-u1-{i}", "user_id": "u1", "source": source, "signal_type": "message",
            "payload": {"body": "private text"}, "processed": False,
            "created_at": f"2026-01-0{i + 1}T00:00:00.000000Z",
        })
    storage.insert("pulse_signals", {
        "id": "sig-u2-0", "user_id": "u2", "source": "gmail", "signal_type": "message",
        "payload": {"body": "other user"}, "processed": True,
    })

    storage.insert("pulse_drafts", {"id": "draft-1", "user_id": "u1", "draft_type": "email",
                                    "title": "Reply to Sam", "content": "Hi Sam...", "status": "pending_review"})
    storage.insert("pulse_drafts", {"id": "draft-2", "user_id": "u1", "draft_type": "task",
                                    "title": "Book dentist", "content": "...", "status": "pending_review"})
    storage.insert("pulse_drafts", {"id": "draft-3", "user_id": "u1", "draft_type": "email",
                                    "title": "Old", "content": "...", "status": "rejected"})
    storage.insert("pulse_goals", {"id": "goal-1", "user_id": "u1", "goal_type": "health",
                                   "title": "Run a 10k", "status": "active", "priority": 1})

    for level, name, auto in [(0, "Observer", False), (1, "Advisor", False),
                              (2, "Assistant", True), (3, "Autonomous", True)]:
        storage.insert("pulse_autonomy_levels", {
            "level": level, "name": name, "description": f"L{level}",
            "auto_execute_allowed": auto, "example_actions": ["..."],
        })
    storage.insert("pulse_constraints", {
        "id": "c-1", "constraint_type": "financial", "constraint_name": "no_payments",
        "description": "Never move money", "rule": {"max_amount": 0}, "immutable": True,
    })

    storage.insert("pulse_confidence_events", {
        "id": "pred-open", "user_id": "u1", "node": "drafter", "prediction_type": "draft_quality",
        "predicted_confidence": 0.9, "context_snapshot": {"prompt": "..."},
    })
    storage.insert("pulse_confidence_events", {
        "id": "pred-done", "user_id": "u1", "node": "drafter", "prediction_type": "draft_quality",
        "predicted_confidence": 0.8, "outcome": "success", "confidence_error": -0.2,
        "outcome_recorded_at": "2026-01-05T00:00:00.000000Z",
    })
    storage.insert("pulse_confidence_events", {
        "id": "pred-u2", "user_id": "u2", "node": "drafter", "prediction_type": "draft_quality",
        "predicted_confidence": 0.6,
    })

    storage.insert("pulse_user_autonomy", {
        "id": "aut-u1", "user_id": "u1", "current_level": 2, "level_reason": "Building trust",
        "calibration_score": 0.82, "manual_override": False, "level_history": [],
        "updated_at": "2026-01-05T00:00:00.000000Z",
    })

    for step, trace_type in enumerate(["perceive", "plan", "act"]):
        storage.insert("pulse_reasoning_traces", {
            "id": f"trace-{step}", "user_id": "u1", "session_id": "sess-1", "trace_type": trace_type,
            "input_context": {"raw": "sensitive"}, "success": True, "duration_ms": 10 * (step + 1),
            "created_at": f"2026-01-01T00:00:0{step}.000000Z",
        })

    ids["signals_u1"] = ["sig-u1-0", "sig-u1-1", "sig-u1-2"]
    return ids


@pytest.fixture
def recording_storage():
    """Factory for RecordingStorage backends."""
    return RecordingStorage
