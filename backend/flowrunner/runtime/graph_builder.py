"""Graph builder — compiles a workflow definition into a LangGraph StateGraph."""

from __future__ import annotations

import logging
from typing import Any

from langgraph.graph import END, StateGraph

from flowrunner.errors import NodeExecutionError, WorkflowConfigError
from flowrunner.runtime.context import NodeContext, Services
from flowrunner.runtime.registry import NodeRegistry, NodeSpec
from flowrunner.runtime.results import Continue, Fail, Halt, NodeResult
from flowrunner.runtime.state import RunState
from flowrunner.utils.logger import ctx_node_id
from flowrunner.utils.metrics import record_node_execution
from flowrunner.utils.tracing import get_tracer, traced
from flowrunner.workflow.definition import NodeDef, WorkflowDefinition, parse_workflow

logger = logging.getLogger("flowrunner.runtime.graph_builder")


def resolve_entry_point(definition: WorkflowDefinition) -> str:
    """Match ``entry_point`` against node ids first, then node types."""
    entry = definition.entry_point
    if definition.node(entry) is not None:
        return entry
    for node in definition.nodes:
        if node.type == entry:
            return node.id
    raise WorkflowConfigError(f"Entry point '{entry}' matches no node id or type")


def static_successors(node: NodeDef, definition: WorkflowDefinition) -> list[str]:
    """Distinct successors from ``node.next`` followed by the edge list."""
    targets: list[str] = []
    if node.next:
        targets.append(node.next)
    targets.extend(edge.target for edge in definition.edges if edge.source == node.id)
    successors = list(dict.fromkeys(targets))
    unknown = [t for t in successors if definition.node(t) is None]
    if unknown:
        raise WorkflowConfigError(f"Node '{node.id}' points at unknown node(s): {', '.join(unknown)}")
    return successors


def build_graph(
    definition: WorkflowDefinition | dict[str, Any],
    registry: NodeRegistry,
    services: Services,
) -> StateGraph:
    """Convert a workflow definition into a StateGraph ready for compilation.

    Raises:
        WorkflowConfigError: unknown node type, unresolvable entry point,
            fan-out from a plain node, a node id that collides with a
            state field, or a node config rejected by its compile hook.
    """
    definition = parse_workflow(definition)
    graph = StateGraph(RunState)
    tracer = services.tracer or get_tracer("flowrunner.runtime")

    specs: dict[str, tuple[NodeSpec, Any]] = {}
    for node in definition.nodes:
        if node.id in RunState.__annotations__ or node.id == END:
            raise WorkflowConfigError(f"Node id '{node.id}' is reserved")
        spec = registry.resolve(node.type)
        if spec is None:
            raise WorkflowConfigError(f"Unknown node type '{node.type}' for node '{node.id}'")
        compiled = spec.compile(node, definition) if spec.compile else None
        specs[node.id] = (spec, compiled)
        graph.add_node(node.id, _make_node_fn(node, spec, compiled, services, tracer))

    graph.set_entry_point(resolve_entry_point(definition))

    for node in definition.nodes:
        spec, compiled = specs[node.id]
        if spec.kind == "terminal":
            graph.add_edge(node.id, END)
        elif spec.kind == "router":
            _add_router_routing(graph, node, compiled)
        elif spec.kind == "slot_tracker":
            _add_slot_tracker_routing(graph, node, compiled, definition)
        else:
            _add_static_routing(graph, node, definition)

    logger.debug(
        "Built graph for workflow '%s' with %d node(s)", definition.id, len(definition.nodes)
    )
    return graph


def _make_node_fn(node: NodeDef, spec: NodeSpec, compiled: Any, services: Services, tracer: Any):
    ctx = NodeContext(
        node_id=node.id,
        node_type=node.type,
        config=dict(node.config),
        services=services,
        compiled=compiled,
    )

    async def fn(state: RunState) -> dict[str, Any]:
        cursor = {
            "current_node_id": node.id,
            "current_node_type": node.type,
            "current_node_config": dict(node.config),
        }
        view = {**state, **cursor}
        token = ctx_node_id.set(node.id)
        try:
            await ctx.progress(view, "node_started")
            with traced(tracer, f"node.{node.type}", node_id=node.id, node_type=node.type):
                try:
                    result = await spec.handler(view, ctx)
                except Exception as exc:
                    result = NodeResult(outcome=Fail(exc))
            return await _apply_outcome(result, cursor, node, ctx, services, view)
        finally:
            ctx_node_id.reset(token)

    fn.__name__ = f"node_{node.id}"
    return fn


async def _apply_outcome(
    result: NodeResult,
    cursor: dict[str, Any],
    node: NodeDef,
    ctx: NodeContext,
    services: Services,
    view: dict[str, Any],
) -> dict[str, Any]:
    outcome = result.outcome
    patch = {**result.patch, **cursor}

    if isinstance(outcome, Fail):
        error = outcome.error
        record_node_execution(services.metrics, node.type, "failed")
        await ctx.progress(view, "node_error", message=str(error)[:500],
                           metadata={"errorType": type(error).__name__})
        logger.error("Node '%s' (%s) failed: %s", node.id, node.type, error)
        if isinstance(error, NodeExecutionError):
            raise error
        raise NodeExecutionError(node.id, str(error)) from error

    if isinstance(outcome, Halt):
        patch["halted"] = True
        patch["route_chosen"] = ""
        if outcome.awaiting_key:
            patch["needs_user_input"] = True
            patch["awaiting_input_for"] = outcome.awaiting_key
            patch["user_prompt"] = ""
        record_node_execution(services.metrics, node.type, "halted")
        await ctx.progress(view, "node_paused",
                           metadata={"awaitingInputFor": outcome.awaiting_key})
        return patch

    if isinstance(outcome, Continue):
        patch["route_chosen"] = outcome.next_id or ""
        record_node_execution(services.metrics, node.type, "continued")
        await ctx.progress(view, "node_completed")
        return patch

    raise NodeExecutionError(node.id, f"Unsupported outcome {outcome!r}")


def _add_static_routing(graph: StateGraph, node: NodeDef, definition: WorkflowDefinition) -> None:
    successors = static_successors(node, definition)
    if len(successors) > 1:
        raise WorkflowConfigError(
            f"Node '{node.id}' has {len(successors)} static successors "
            f"({', '.join(successors)}); use a Router to branch"
        )
    target = successors[0] if successors else END

    def route(state: RunState) -> str:
        if state.get("halted"):
            return END
        return target

    graph.add_conditional_edges(node.id, route, {target: target, END: END})


def _add_router_routing(graph: StateGraph, node: NodeDef, compiled: Any) -> None:
    """Follow ``route_chosen``; anything else ends the run."""
    targets: set[str] = set(getattr(compiled, "targets", ()) or ())

    def route(state: RunState) -> str:
        if state.get("halted"):
            return END
        chosen = state.get("route_chosen") or ""
        if chosen in targets:
            return chosen
        if chosen:
            logger.warning("Router '%s' chose unknown target '%s'; ending run", node.id, chosen)
        return END

    destinations: dict[str, str] = {END: END}
    for t in targets:
        destinations[t] = t
    graph.add_conditional_edges(node.id, route, destinations)


def _add_slot_tracker_routing(
    graph: StateGraph, node: NodeDef, compiled: Any, definition: WorkflowDefinition
) -> None:
    """Continue to the single successor once every slot is filled.

    A ``route_chosen`` set by the tracker (its fallback route) wins.
    """
    successors = static_successors(node, definition)
    if len(successors) > 1:
        raise WorkflowConfigError(
            f"SlotTracker '{node.id}' must declare a single successor, got {', '.join(successors)}"
        )
    successor = successors[0] if successors else None
    fallback = getattr(compiled, "fallback_route", None)

    def route(state: RunState) -> str:
        if state.get("halted"):
            return END
        chosen = state.get("route_chosen") or ""
        if fallback and chosen == fallback:
            return fallback
        if state.get("all_slots_filled") and successor:
            return successor
        return END

    destinations: dict[str, str] = {END: END}
    for t in (successor, fallback):
        if t:
            destinations[t] = t
    graph.add_conditional_edges(node.id, route, destinations)
