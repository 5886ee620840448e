"""
Access policy evaluator: table allowlist, safe columns, user scope, limit clamp.
"""

import pytest
from pydantic import ValidationError

from mcp_server_omega.runtime.errors import (
    ColumnPolicyViolation,
    MissingUserScopeError,
    UnknownTableError,
)
from mcp_server_omega.runtime.policy import (
    COLUMN_NOT_ALLOWED,
    MAX_QUERY_LIMIT,
    TABLE_NOT_ALLOWED,
    USER_ID_REQUIRED,
    AccessRequest,
    clamp_limit,
    evaluate,
)
from mcp_server_omega.runtime.schema import REGISTRY, get_safe_columns


def _request(**kwargs):
    kwargs.setdefault("limit", 50)
    return AccessRequest(**kwargs)


class TestScenarios:

    def test_unsafe_column_denied_with_exact_columns(self):
        decision = evaluate(_request(table="pulse_signals", requested_columns=["payload"], caller_user_id="u1"))
        assert decision.permitted is False
        assert decision.code == COLUMN_NOT_ALLOWED
        assert decision.invalid_columns == ["payload"]
        assert "payload" in decision.reason

    def test_global_table_needs_no_scope(self):
        decision = evaluate(_request(table="pulse_autonomy_levels", requested_columns=["level", "name"], limit=10))
        assert decision.permitted is True
        assert decision.effective_columns == ["level", "name"]
        assert decision.effective_limit == 10

    def test_non_global_table_without_scope_denied(self):
        decision = evaluate(_request(table="pulse_goals", requested_columns=["title", "status"], limit=10))
        assert decision.permitted is False
        assert decision.code == USER_ID_REQUIRED
        assert "missing required user scope" in decision.reason.lower()


class TestTables:

    @pytest.mark.parametrize("name", ["users", "auth.users", "PULSE_SIGNALS", "", "pulse_signals;drop"])
    def test_unregistered_tables_denied(self, name):
        decision = evaluate(_request(table=name, caller_user_id="u1"))
        assert decision.permitted is False
        assert decision.code == TABLE_NOT_ALLOWED

    def test_global_table_with_scope_still_permitted(self):
        decision = evaluate(_request(table="pulse_constraints", caller_user_id="u1"))
        assert decision.permitted is True

    @pytest.mark.parametrize("user", [None, ""])
    def test_every_non_global_table_requires_scope(self, user):
        for desc in REGISTRY:
            decision = evaluate(_request(table=desc.name.value, caller_user_id=user))
            assert decision.permitted is desc.is_global, desc.name.value


class TestColumns:

    def test_zero_columns_means_all_safe_columns(self):
        decision = evaluate(_request(table="pulse_signals", caller_user_id="u1"))
        assert decision.permitted is True
        assert decision.effective_columns == list(get_safe_columns("pulse_signals"))

    def test_case_sensitive_match(self):
        decision = evaluate(_request(table="pulse_signals", requested_columns=["ID", "source"], caller_user_id="u1"))
        assert decision.permitted is False
        assert decision.invalid_columns == ["ID"]

    def test_invalid_columns_reported_in_request_order(self):
        decision = evaluate(_request(
            table="pulse_drafts",
            requested_columns=["content", "id", "user_feedback", "zzz"],
            caller_user_id="u1",
        ))
        assert decision.invalid_columns == ["content", "zzz"]

    def test_requested_order_preserved(self):
        decision = evaluate(_request(table="pulse_goals", requested_columns=["status", "title"], caller_user_id="u1"))
        assert decision.effective_columns == ["status", "title"]

    def test_unsafe_filter_key_denied(self):
        decision = evaluate(_request(table="pulse_signals", filters={"payload": "x"}, caller_user_id="u1"))
        assert decision.permitted is False
        assert decision.code == COLUMN_NOT_ALLOWED
        assert decision.invalid_columns == ["payload"]

    def test_unsafe_gte_key_denied(self):
        decision = evaluate(_request(table="pulse_reasoning_traces", gte={"reasoning_steps": 1}, caller_user_id="u1"))
        assert decision.invalid_columns == ["reasoning_steps"]

    def test_unsafe_order_by_denied(self):
        decision = evaluate(_request(table="pulse_drafts", order_by="content", caller_user_id="u1"))
        assert decision.permitted is False
        assert decision.invalid_columns == ["content"]

    def test_column_check_runs_before_scope_check(self):
        decision = evaluate(_request(table="pulse_signals", requested_columns=["payload"]))
        assert decision.code == COLUMN_NOT_ALLOWED


class TestLimit:

    @pytest.mark.parametrize("limit", [1, 50, 199, 200, 201, 1000, MAX_QUERY_LIMIT + 1000])
    def test_effective_limit_never_exceeds_ceiling(self, limit):
        decision = evaluate(_request(table="pulse_signals", caller_user_id="u1", limit=limit))
        assert decision.effective_limit <= MAX_QUERY_LIMIT
        assert decision.effective_limit == min(limit, MAX_QUERY_LIMIT)

    def test_clamp_is_idempotent(self):
        over = evaluate(_request(table="pulse_signals", caller_user_id="u1", limit=MAX_QUERY_LIMIT + 1000))
        exact = evaluate(_request(table="pulse_signals", caller_user_id="u1", limit=MAX_QUERY_LIMIT))
        assert over.effective_limit == exact.effective_limit

    def test_configured_ceiling_only_lowers(self):
        assert clamp_limit(150, max_limit=100) == 100
        assert clamp_limit(500, max_limit=10_000) == MAX_QUERY_LIMIT

    def test_default_limit(self):
        assert AccessRequest(table="pulse_signals").limit == 50

    def test_non_positive_limit_is_malformed(self):
        with pytest.raises(ValidationError):
            AccessRequest(table="pulse_signals", limit=0)

    def test_unknown_request_fields_rejected(self):
        with pytest.raises(ValidationError):
            AccessRequest(table="pulse_signals", sql="select *")


class TestRaiseForDenial:

    def test_permitted_does_not_raise(self):
        evaluate(_request(table="pulse_constraints")).raise_for_denial()

    @pytest.mark.parametrize("request_kwargs, error", [
        ({"table": "users", "caller_user_id": "u1"}, UnknownTableError),
        ({"table": "pulse_signals", "requested_columns": ["payload"], "caller_user_id": "u1"}, ColumnPolicyViolation),
        ({"table": "pulse_signals"}, MissingUserScopeError),
    ])
    def test_denials_map_to_errors(self, request_kwargs, error):
        decision = evaluate(_request(**request_kwargs))
        with pytest.raises(error) as exc:
            decision.raise_for_denial()
        assert exc.value.code == decision.code

    def test_to_denial_shape(self):
        denial = evaluate(_request(table="pulse_signals", requested_columns=["payload"], caller_user_id="u1")).to_denial()
        assert denial["code"] == COLUMN_NOT_ALLOWED
        assert denial["invalid_columns"] == ["payload"]
        assert denial["reason"]
