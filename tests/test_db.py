"""
SQLite backend: schema creation, primitives, calibration view.
"""

import sqlite3

import pytest

from mcp_server_omega.runtime.db import SQLiteBackend
from mcp_server_omega.runtime.errors import StorageUnavailableError
from mcp_server_omega.runtime.schema import REGISTRY


class TestSQLiteBackend:

    def test_creates_every_table_and_the_view(self, storage):
        conn = sqlite3.connect(str(storage.db_path))
        try:
            names = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type IN ('table', 'view')")}
        finally:
            conn.close()
        assert {d.name.value for d in REGISTRY} <= names

    def test_init_is_idempotent(self, storage):
        SQLiteBackend(storage.db_path)

    def test_insert_assigns_id_and_created_at(self, storage):
        row_id = storage.insert("pulse_goals", {"user_id": "u1", "title": "Learn Rust"})
        rows = storage.select("pulse_goals", ["id", "title", "created_at"], {"id": row_id})
        assert rows[0]["title"] == "Learn Rust"
        assert rows[0]["created_at"].endswith("Z")

    def test_json_values_round_trip_as_text(self, storage):
        storage.insert("pulse_signals", {"id": "s1", "user_id": "u1", "payload": {"a": 1}})
        assert storage.select("pulse_signals", ["payload"], {"id": "s1"}) == [{"payload": '{"a": 1}'}]

    def test_select_filters_gte_order_limit(self, storage):
        for i in range(5):
            storage.insert("pulse_goals", {"user_id": "u1", "title": f"g{i}", "priority": i})
        rows = storage.select("pulse_goals", ["title"], {"user_id": "u1"}, limit=2,
                              order_by="priority", ascending=True, gte={"priority": 2})
        assert rows == [{"title": "g2"}, {"title": "g3"}]

    def test_null_filter(self, storage):
        storage.insert("pulse_goals", {"user_id": "u1", "title": "root"})
        storage.insert("pulse_goals", {"user_id": "u1", "title": "child", "parent_goal_id": "x"})
        assert storage.select("pulse_goals", ["title"], {"parent_goal_id": None}) == [{"title": "root"}]

    def test_update_returns_row_or_none(self, storage):
        row_id = storage.insert("pulse_goals", {"user_id": "u1", "title": "a", "status": "active"})
        updated = storage.update("pulse_goals", row_id, {"status": "done"})
        assert updated["status"] == "done"
        assert storage.update("pulse_goals", "missing", {"status": "done"}) is None

    def test_unknown_columns_rejected(self, storage):
        with pytest.raises(ValueError):
            storage.select("pulse_goals", ["id; DROP TABLE pulse_goals"])
        with pytest.raises(ValueError):
            storage.insert("pulse_goals", {"user_id": "u1", "evil": 1})

    def test_driver_errors_are_wrapped(self, storage):
        storage.insert("pulse_goals", {"id": "dup", "user_id": "u1"})
        with pytest.raises(StorageUnavailableError) as exc:
            storage.insert("pulse_goals", {"id": "dup", "user_id": "u1"})
        assert isinstance(exc.value.__cause__, sqlite3.Error)

    def test_calibration_view_buckets(self, storage):
        for conf, outcome in [(0.3, "failure"), (0.6, "partial"), (0.8, "success"), (0.9, "failure"), (0.95, None)]:
            storage.insert("pulse_confidence_events", {
                "user_id": "u1", "node": "n", "prediction_type": "p",
                "predicted_confidence": conf, "outcome": outcome,
            })
        rows = storage.select("pulse_confidence_calibration", ["confidence_bucket", "total_predictions",
                                                               "calibration_gap"], {"user_id": "u1"},
                              order_by="confidence_bucket", ascending=True)
        by_bucket = {r["confidence_bucket"]: r for r in rows}
        assert set(by_bucket) == {"low", "medium", "high", "very_high"}
        assert by_bucket["very_high"]["total_predictions"] == 1
        assert by_bucket["very_high"]["calibration_gap"] == pytest.approx(0.9)
        assert by_bucket["medium"]["calibration_gap"] == pytest.approx(0.1)
