"""Tests for the Router node and its condition language."""

from __future__ import annotations

import pytest

from flowrunner.errors import WorkflowConfigError
from flowrunner.nodes.router import (
    Compare,
    Contains,
    Equals,
    IsDefined,
    Literal,
    compile_router,
    evaluate_condition,
    parse_condition,
    parse_router_config,
    router,
)
from flowrunner.runtime.results import Continue, Halt
from flowrunner.workflow.definition import parse_workflow


class TestParseCondition:
    """Tests for parse_condition()."""

    @pytest.mark.parametrize(
        "expression, expected",
        [
            ('intent === "Billing"', Equals("intent", "billing")),
            ("intent !== 'billing'", Equals("intent", "billing", negate=True)),
            ("allSlotsFilled === true", Equals("all_slots_filled", True)),
            ('slotValues.city === "Paris"', Equals("slot_values.city", "paris")),
            ('workflowId === "wf1"', Equals("workflow_id", "wf1")),
            ('userPrompt.includes("Refund")', Contains("user_prompt", "refund")),
            ('intent.includes("bill")', Contains("intent", "bill")),
            ("memory.length >= 3", Compare("memory", ">=", 3)),
            ("slotValues.email !== undefined", IsDefined("slot_values.email")),
            ("slotValues.email === undefined", IsDefined("slot_values.email", negate=True)),
            ("TRUE", Literal(True)),
            ("false", Literal(False)),
        ],
    )
    def test_supported_forms(self, expression, expected):
        assert parse_condition(expression) == expected

    @pytest.mark.parametrize("expression", ["", "state.foo()", "intent == billing"])
    def test_unsupported_never_matches(self, expression):
        assert parse_condition(expression) == Literal(False)


class TestEvaluateCondition:
    """Tests for evaluate_condition()."""

    def test_equals_is_case_insensitive(self):
        assert evaluate_condition(parse_condition('intent === "billing"'), {"intent": "BILLING"}) is True
        assert evaluate_condition(parse_condition('intent !== "billing"'), {"intent": "support"}) is True

    def test_equals_missing_field(self):
        assert evaluate_condition(parse_condition('intent === "billing"'), {}) is False

    def test_boolean_equals(self):
        condition = parse_condition("allSlotsFilled === true")
        assert evaluate_condition(condition, {"all_slots_filled": True}) is True
        assert evaluate_condition(condition, {"all_slots_filled": False}) is False

    def test_contains(self):
        condition = parse_condition('userPrompt.includes("refund")')
        assert evaluate_condition(condition, {"user_prompt": "I want a REFUND"}) is True

    def test_memory_length(self):
        condition = parse_condition("memory.length > 1")
        assert evaluate_condition(condition, {"memory": [{}, {}]}) is True
        assert evaluate_condition(condition, {}) is False

    def test_is_defined(self):
        defined = parse_condition("slotValues.city !== undefined")
        assert evaluate_condition(defined, {"slot_values": {"city": "Oslo"}}) is True
        assert evaluate_condition(defined, {"slot_values": {"city": "  "}}) is False
        missing = parse_condition("slotValues.city === undefined")
        assert evaluate_condition(missing, {"slot_values": {}}) is True


class TestRouterConfig:
    """Tests for parse_router_config() and compile_router()."""

    def test_priority_sort_is_stable(self):
        compiled = parse_router_config({"routes": [
            {"condition": "true", "target": "late"},
            {"condition": "true", "target": "first", "priority": 0},
            {"condition": "true", "target": "second", "priority": 100},
        ]})
        assert [r.target for r in compiled.routes] == ["first", "late", "second"]

    def test_routes_must_be_list(self):
        with pytest.raises(WorkflowConfigError, match="must be a list"):
            parse_router_config({"routes": {"condition": "true"}})

    def test_route_needs_target(self):
        with pytest.raises(WorkflowConfigError, match="needs a 'target'"):
            parse_router_config({"routes": [{"condition": "true"}]})

    def test_unknown_target(self):
        definition = parse_workflow({
            "entryPoint": "r",
            "nodes": [{"id": "r", "type": "Router", "config": {
                "routes": [{"condition": "true", "target": "ghost"}], "defaultRoute": "also_ghost",
            }}],
        })
        with pytest.raises(WorkflowConfigError, match="also_ghost, ghost"):
            compile_router(definition.nodes[0], definition)

    def test_targets_include_default(self):
        compiled = parse_router_config({"routes": [{"condition": "true", "target": "a"}], "defaultRoute": "b"})
        assert compiled.targets == {"a", "b"}


class TestRouterHandler:
    """Tests for the router() handler."""

    @pytest.mark.asyncio
    async def test_first_match_wins(self, make_ctx, base_state, metrics, sink):
        config = {"routes": [
            {"condition": 'intent === "billing"', "target": "billing"},
            {"condition": 'intent.includes("bill")', "target": "other"},
        ]}
        ctx = make_ctx("route", "Router", config, compiled=parse_router_config(config))
        result = await router({**base_state, "intent": "billing"}, ctx)

        assert result.outcome == Continue("billing")
        assert metrics.get_counter("router_decisions_total", labels={"reason": "match"}) == 1
        assert metrics.get_counter("router_evaluations_total") == 1
        assert sink.statuses("route") == ["STARTED", "COMPLETED"]
        assert sink.events[-1].metadata["selectedRoute"] == "billing"

    @pytest.mark.asyncio
    async def test_evaluate_all_still_takes_first(self, make_ctx, base_state, metrics):
        config = {"evaluateAllConditions": True, "routes": [
            {"condition": "true", "target": "a"},
            {"condition": "true", "target": "b"},
        ]}
        result = await router(base_state, make_ctx("route", "Router", config))
        assert result.outcome == Continue("a")
        assert metrics.get_counter("router_evaluations_total") == 2

    @pytest.mark.asyncio
    async def test_default_route(self, make_ctx, base_state, metrics):
        config = {"routes": [{"condition": "false", "target": "a"}], "defaultRoute": "fallback"}
        result = await router(base_state, make_ctx("route", "Router", config))
        assert result.outcome == Continue("fallback")
        assert metrics.get_counter("router_decisions_total", labels={"reason": "default"}) == 1

    @pytest.mark.asyncio
    async def test_no_match_without_default_halts(self, make_ctx, base_state, metrics, sink):
        config = {"routes": [{"condition": "false", "target": "a"}]}
        result = await router(base_state, make_ctx("route", "Router", config))
        assert result.outcome == Halt(None)
        assert "ERROR" in sink.statuses("route")
        assert metrics.get_counter("router_decisions_total", labels={"reason": "no_match"}) == 1

    @pytest.mark.asyncio
    async def test_no_routes_passes_through(self, make_ctx, base_state):
        result = await router(base_state, make_ctx("route", "Router", {"defaultRoute": "next"}))
        assert result.outcome == Continue("next")

        result = await router(base_state, make_ctx("route", "Router", {}))
        assert result.outcome == Halt(None)
