"""Tests for graph building and end-to-end workflow runs."""

from __future__ import annotations

import pytest

from conftest import FakeLLMClient
from flowrunner.errors import NodeExecutionError, WorkflowConfigError
from flowrunner.runtime.executor import run_graph
from flowrunner.runtime.graph_builder import build_graph, resolve_entry_point, static_successors
from flowrunner.runtime.registry import NodeRegistry, default_registry
from flowrunner.runtime.results import proceed
from flowrunner.runtime.slot_state import SLOT_STATE_KEY
from flowrunner.runtime.state import initial_state, merge_dicts
from flowrunner.workflow.definition import parse_workflow


def _state(user_prompt: str = "") -> dict:
    return initial_state("wf1", "c1", "u1", user_prompt)


class TestRunState:
    """Tests for initial_state() and the state reducers."""

    def test_initial_state(self):
        state = initial_state("wf1", "c1", "u1", "hi", tenant_id="t1")
        assert state["owners_for_progress"] == ["u1"]
        assert state["halted"] is False
        assert state["slot_values"] == {}
        assert state["tenant_id"] == "t1"
        assert initial_state("wf1", "c1", "")["owners_for_progress"] == []

    def test_merge_dicts(self):
        assert merge_dicts({"a": 1}, {"b": 2}) == {"a": 1, "b": 2}
        assert merge_dicts(None, {"a": 1}) == {"a": 1}
        assert merge_dicts({"a": 1}, None) == {"a": 1}


class TestNodeRegistry:
    """Test the NodeRegistry class directly."""

    def test_default_types_and_aliases(self):
        registry = default_registry()
        for name in ("ModelInvoke", "ai_model", "StreamToClient", "Router", "SlotTracker",
                     "IntentClassifier", "Format", "ConversationMemory"):
            assert name in registry
        assert registry.resolve("ai_model") is registry.resolve("ModelInvoke")
        assert registry.resolve("stream_to_client").kind == "terminal"
        assert registry.resolve("Router").compile is not None
        assert "Nope" not in registry

    def test_custom_registration(self):
        async def echo(state, ctx):
            return proceed({"output": state.get("user_prompt")})

        registry = NodeRegistry()
        spec = registry.register("Echo", echo, aliases=("echo",))
        assert registry.resolve("echo") is spec
        assert registry.types() == ["Echo", "echo"]


class TestBuildGraph:
    """Tests for build_graph() validation."""

    def test_entry_point_by_id_then_type(self, routed_workflow):
        definition = parse_workflow(routed_workflow)
        assert resolve_entry_point(definition) == "classify"
        by_id = parse_workflow({**routed_workflow, "entryPoint": "route"})
        assert resolve_entry_point(by_id) == "route"

    def test_unresolvable_entry_point(self, chat_workflow, services):
        with pytest.raises(WorkflowConfigError, match="matches no node"):
            build_graph({**chat_workflow, "entryPoint": "Ghost"}, default_registry(), services)

    def test_unknown_node_type(self, services):
        workflow = {"entryPoint": "a", "nodes": [{"id": "a", "type": "Teleport"}]}
        with pytest.raises(WorkflowConfigError, match="Unknown node type 'Teleport'"):
            build_graph(workflow, default_registry(), services)

    def test_fan_out_from_plain_node_rejected(self, services):
        workflow = {
            "entryPoint": "a",
            "nodes": [
                {"id": "a", "type": "Format", "next": "b"},
                {"id": "b", "type": "StreamToClient"},
                {"id": "c", "type": "StreamToClient"},
            ],
            "edges": [{"from": "a", "to": "c"}],
        }
        with pytest.raises(WorkflowConfigError, match="use a Router"):
            build_graph(workflow, default_registry(), services)

    def test_duplicate_successor_collapsed(self):
        definition = parse_workflow({
            "entryPoint": "a",
            "nodes": [{"id": "a", "type": "Format", "next": "b"}, {"id": "b", "type": "StreamToClient"}],
            "edges": [{"from": "a", "to": "b"}],
        })
        assert static_successors(definition.node("a"), definition) == ["b"]

    def test_unknown_successor(self, services):
        workflow = {"entryPoint": "a", "nodes": [{"id": "a", "type": "Format", "next": "ghost"}]}
        with pytest.raises(WorkflowConfigError, match="unknown node"):
            build_graph(workflow, default_registry(), services)

    def test_reserved_node_id(self, services):
        workflow = {"entryPoint": "output", "nodes": [{"id": "output", "type": "Format"}]}
        with pytest.raises(WorkflowConfigError, match="reserved"):
            build_graph(workflow, default_registry(), services)

    def test_slot_tracker_with_two_successors(self, slot_workflow, services):
        slot_workflow["edges"] = [{"from": "slots", "to": "out"}]
        with pytest.raises(WorkflowConfigError, match="single successor"):
            build_graph(slot_workflow, default_registry(), services)

    def test_router_config_checked_at_build(self, routed_workflow, services):
        routed_workflow["nodes"][1]["config"]["routes"][0]["target"] = "ghost"
        with pytest.raises(WorkflowConfigError, match="ghost"):
            build_graph(routed_workflow, default_registry(), services)


class TestRunGraph:
    """End-to-end runs through run_graph()."""

    @pytest.mark.asyncio
    async def test_chat_workflow(self, chat_workflow, services, llm, sink, metrics, data_client):
        result = await run_graph(chat_workflow, _state("Hi"), None, services)

        assert result.status == "completed"
        assert result.awaiting_input_for is None
        assert result.state["output"] == "Hello there!"
        assert llm.calls[0]["messages"][0] == {"role": "system", "content": "Be brief."}
        assert sink.statuses("out") == ["node_started", "STARTED", "COMPLETED", "node_completed"]
        assert [m.role for m in data_client.memories] == ["user", "assistant"]
        assert metrics.get_counter("workflow_runs_total", labels={"status": "succeeded"}) == 1
        assert metrics.get_counter(
            "node_execution_total", labels={"node_type": "ModelInvoke", "status": "continued"}
        ) == 1

    @pytest.mark.asyncio
    async def test_routed_workflow(self, routed_workflow, services):
        services.llm_client = FakeLLMClient(replies=["billing"])
        result = await run_graph(routed_workflow, _state("I was double charged"), None, services)

        assert result.status == "completed"
        assert result.state["intent"] == "billing"
        assert result.state["output"] == "Billing: I was double charged"

    @pytest.mark.asyncio
    async def test_router_without_match_halts(self, services, sink, metrics):
        workflow = {
            "entryPoint": "route",
            "nodes": [
                {"id": "route", "type": "Router", "config": {
                    "routes": [{"condition": 'intent === "billing"', "target": "out"}],
                }},
                {"id": "out", "type": "StreamToClient"},
            ],
        }
        result = await run_graph(workflow, _state("hello"), None, services)

        assert result.status == "halted"
        assert result.awaiting_input_for is None
        assert sink.statuses("out") == []
        assert metrics.get_counter("workflow_runs_total", labels={"status": "halted"}) == 1

    @pytest.mark.asyncio
    async def test_slot_collection_across_runs(self, slot_workflow, services, conversation, data_client):
        first = await run_graph(slot_workflow, _state("I want to travel"), None, services)
        assert first.status == "halted"
        assert first.awaiting_input_for == "city"
        assert first.state["output"] == "Which city?"
        assert first.state["user_prompt"] == ""
        assert first.state["needs_user_input"] is True

        second = await run_graph(slot_workflow, _state("Oslo"), None, services)
        assert second.awaiting_input_for == "email"
        assert second.state["slot_values"] == {"city": "Oslo"}

        third = await run_graph(slot_workflow, _state("not-an-email"), None, services)
        assert third.awaiting_input_for == "email"
        assert third.state["output"] == "e.g. name@example.com. Your email? (Attempt 1/2)"

        final = await run_graph(slot_workflow, _state("me@example.com"), None, services)
        assert final.status == "completed"
        assert final.state["all_slots_filled"] is True
        assert final.state["output"] == "Trip to Oslo"
        assert SLOT_STATE_KEY not in data_client.conversations["c1"].metadata

    @pytest.mark.asyncio
    async def test_slot_fallback_route_followed(self, slot_workflow, services, conversation):
        slot_workflow["nodes"][0]["config"]["fallbackRoute"] = "help"
        slot_workflow["nodes"].append({"id": "help", "type": "StreamToClient"})
        await run_graph(slot_workflow, _state(), None, services)
        await run_graph(slot_workflow, _state("Oslo"), None, services)
        await run_graph(slot_workflow, _state("bad"), None, services)
        result = await run_graph(slot_workflow, _state("still bad"), None, services)

        assert result.status == "completed"
        assert result.state["current_node_id"] == "help"
        assert result.state["output"] == "I'm having trouble with that format. Let me help you differently."

    @pytest.mark.asyncio
    async def test_slot_retries_exhausted_fails_run(self, slot_workflow, services, conversation, metrics):
        await run_graph(slot_workflow, _state(), None, services)
        await run_graph(slot_workflow, _state("Oslo"), None, services)
        await run_graph(slot_workflow, _state("bad"), None, services)
        with pytest.raises(NodeExecutionError) as exc:
            await run_graph(slot_workflow, _state("still bad"), None, services)
        assert exc.value.node_id == "slots"
        assert metrics.get_counter("workflow_runs_total", labels={"status": "failed"}) == 1

    @pytest.mark.asyncio
    async def test_handler_exception_wrapped(self, services, sink):
        async def explode(state, ctx):
            raise RuntimeError("kaboom")

        registry = NodeRegistry()
        registry.register("Explode", explode)
        workflow = {"entryPoint": "boom", "nodes": [{"id": "boom", "type": "Explode"}]}

        with pytest.raises(NodeExecutionError, match="kaboom") as exc:
            await run_graph(workflow, _state(), registry, services)
        assert exc.value.node_id == "boom"
        assert isinstance(exc.value.__cause__, RuntimeError)
        assert sink.statuses("boom") == ["node_started", "node_error"]

    @pytest.mark.asyncio
    async def test_missing_llm_fails_run(self, chat_workflow, services):
        services.llm_client = None
        with pytest.raises(NodeExecutionError, match="requires a prompt engine and an LLM client"):
            await run_graph(chat_workflow, _state("Hi"), None, services)

    @pytest.mark.asyncio
    async def test_custom_node_sees_cursor(self, services):
        seen: dict = {}

        async def capture(state, ctx):
            seen.update(state)
            return proceed({"output": "done"})

        registry = NodeRegistry()
        registry.register("Capture", capture)
        workflow = {"entryPoint": "cap", "nodes": [{"id": "cap", "type": "Capture", "config": {"k": 1}}]}
        result = await run_graph(workflow, _state(), registry, services)

        assert result.state["output"] == "done"
        assert seen["current_node_id"] == "cap"
        assert seen["current_node_config"] == {"k": 1}
        assert seen["correlation_id"]
