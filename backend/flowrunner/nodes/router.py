"""Router node: picks the next node from an ordered list of conditions.

Conditions are parsed once, when the graph is built, into a small closed set
of variants.  Supported forms (field names are case-insensitive, compared
values are lowercased)::

    intent === "x"                intent.includes("x")
    allSlotsFilled === true       slotValues.key === "v"
    slotValues.key !== undefined  userPrompt.includes("k")
    userPrompt === "v"            memory.length >= 3
    workflowId === "x"            true / false
"""

from __future__ import annotations

import logging
import operator
import re
from dataclasses import dataclass
from typing import Any, Callable, Union

from flowrunner.errors import WorkflowConfigError
from flowrunner.runtime.context import NodeContext
from flowrunner.runtime.results import NodeResult, halt, proceed
from flowrunner.workflow.definition import NodeDef, WorkflowDefinition

logger = logging.getLogger("flowrunner.nodes.router")

DEFAULT_PRIORITY = 100

# condition field name (lowercase) -> run-state key
_FIELDS = {
    "intent": "intent",
    "allslotsfilled": "all_slots_filled",
    "userprompt": "user_prompt",
    "workflowid": "workflow_id",
}

_COMPARE_OPS: dict[str, Callable[[int, int], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
    "===": operator.eq,
}

_QUOTED = r"""['"]([^'"]+)['"]"""
_FIELD = r"(intent|allslotsfilled|userprompt|workflowid|slotvalues\.(\w+))"
_DEFINED_RE = re.compile(rf"^slotvalues\.(\w+)\s*(===|!==)\s*undefined$", re.IGNORECASE)
_EQUALS_RE = re.compile(rf"^{_FIELD}\s*(===|!==)\s*(?:{_QUOTED}|(true|false))$", re.IGNORECASE)
_CONTAINS_RE = re.compile(rf"^(intent|userprompt)\.includes\(\s*{_QUOTED}\s*\)$", re.IGNORECASE)
_COMPARE_RE = re.compile(r"^memory\.length\s*(>=|<=|===|==|>|<)\s*(\d+)$", re.IGNORECASE)


@dataclass(frozen=True)
class Equals:
    field: str  # run-state key, or "slot_values.<key>"
    value: str | bool
    negate: bool = False


@dataclass(frozen=True)
class Contains:
    field: str
    value: str


@dataclass(frozen=True)
class Compare:
    field: str
    op: str
    number: int


@dataclass(frozen=True)
class Literal:
    value: bool


@dataclass(frozen=True)
class IsDefined:
    field: str
    negate: bool = False


Condition = Union[Equals, Contains, Compare, Literal, IsDefined]


def _field_name(raw: str, slot_key: str | None) -> str:
    if slot_key:
        return f"slot_values.{slot_key}"
    return _FIELDS[raw.lower()]


def parse_condition(expression: str) -> Condition:
    """Parse a condition expression.

    Unsupported expressions log a warning and compile to ``Literal(False)``.
    """
    text = (expression or "").strip()
    lowered = text.lower()
    if lowered in ("true", "false"):
        return Literal(lowered == "true")

    m = _DEFINED_RE.match(text)
    if m:
        return IsDefined(f"slot_values.{m.group(1)}", negate=m.group(2) == "===")

    m = _EQUALS_RE.match(text)
    if m:
        raw_field, slot_key, op, quoted, boolean = m.groups()
        field = _field_name(raw_field, slot_key)
        value: str | bool = quoted.lower() if quoted is not None else boolean.lower() == "true"
        return Equals(field, value, negate=op == "!==")

    m = _CONTAINS_RE.match(text)
    if m:
        return Contains(_FIELDS[m.group(1).lower()], m.group(2).lower())

    m = _COMPARE_RE.match(text)
    if m:
        return Compare("memory", m.group(1), int(m.group(2)))

    logger.warning("Unsupported route condition %r; it will never match", expression)
    return Literal(False)


def _lookup(state: dict[str, Any], field: str) -> Any:
    if field.startswith("slot_values."):
        return (state.get("slot_values") or {}).get(field.split(".", 1)[1])
    return state.get(field)


def evaluate_condition(condition: Condition, state: dict[str, Any]) -> bool:
    if isinstance(condition, Literal):
        return condition.value
    actual = _lookup(state, condition.field)
    if isinstance(condition, Equals):
        if isinstance(condition.value, bool):
            matched = actual is condition.value
        else:
            matched = isinstance(actual, str) and actual.lower() == condition.value
        return matched != condition.negate
    if isinstance(condition, Contains):
        return isinstance(actual, str) and condition.value in actual.lower()
    if isinstance(condition, Compare):
        return _COMPARE_OPS[condition.op](len(actual or []), condition.number)
    if isinstance(condition, IsDefined):
        defined = actual is not None and str(actual).strip() != ""
        return defined != condition.negate
    raise TypeError(f"Unknown condition {condition!r}")


@dataclass(frozen=True)
class Route:
    condition: Condition
    expression: str
    target: str
    description: str | None = None
    priority: int = DEFAULT_PRIORITY


@dataclass(frozen=True)
class CompiledRouter:
    routes: tuple[Route, ...]
    default_route: str | None = None
    evaluate_all: bool = False
    detailed_logging: bool = False

    @property
    def targets(self) -> set[str]:
        targets = {r.target for r in self.routes}
        if self.default_route:
            targets.add(self.default_route)
        return targets


def parse_router_config(config: dict[str, Any]) -> CompiledRouter:
    raw_routes = config.get("routes") or []
    if not isinstance(raw_routes, list):
        raise WorkflowConfigError("Router 'routes' must be a list")

    routes: list[Route] = []
    for i, raw in enumerate(raw_routes):
        if not isinstance(raw, dict) or not raw.get("target"):
            raise WorkflowConfigError(f"Router route #{i} needs a 'target'")
        priority = raw.get("priority")
        routes.append(Route(
            condition=parse_condition(str(raw.get("condition") or "")),
            expression=str(raw.get("condition") or ""),
            target=str(raw["target"]),
            description=raw.get("description"),
            priority=int(priority) if priority is not None else DEFAULT_PRIORITY,
        ))
    # Stable: equal priorities keep declaration order
    routes.sort(key=lambda r: r.priority)

    return CompiledRouter(
        routes=tuple(routes),
        default_route=config.get("defaultRoute") or None,
        evaluate_all=bool(config.get("evaluateAllConditions", False)),
        detailed_logging=bool(config.get("enableDetailedLogging", False)),
    )


def compile_router(node: NodeDef, definition: WorkflowDefinition) -> CompiledRouter:
    compiled = parse_router_config(node.config)
    unknown = sorted(t for t in compiled.targets if definition.node(t) is None)
    if unknown:
        raise WorkflowConfigError(f"Router '{node.id}' targets unknown node(s): {', '.join(unknown)}")
    return compiled


async def router(state: dict[str, Any], ctx: NodeContext) -> NodeResult:
    compiled: CompiledRouter = ctx.compiled or parse_router_config(ctx.config)
    metrics = ctx.services.metrics
    await ctx.progress(state, "STARTED", "Evaluating routes…")

    if not compiled.routes:
        target = compiled.default_route
        logger.info("Router '%s' has no routes; passing through to %s", ctx.node_id, target or "END")
        await ctx.progress(state, "COMPLETED", target or "No routes",
                           {"behavior": "pass_through", "selectedRoute": target})
        if target:
            return proceed(next_id=target)
        return halt()

    selected: Route | None = None
    evaluated = 0
    for route in compiled.routes:
        matched = evaluate_condition(route.condition, state)
        evaluated += 1
        if matched and selected is None:
            selected = route
            logger.info(
                "Router '%s' selected %s (%s)",
                ctx.node_id, route.target, route.description or route.expression,
            )
            if not compiled.evaluate_all:
                break
        elif matched:
            logger.info("Router '%s' also matched %s (ignored)", ctx.node_id, route.target)
        elif compiled.detailed_logging:
            logger.info("Router '%s' condition %r did not match", ctx.node_id, route.expression)

    metrics.increment_counter("router_evaluations_total", evaluated)

    if selected is not None:
        metrics.increment_counter("router_decisions_total", labels={"reason": "match"})
        await ctx.progress(state, "COMPLETED", selected.target, {
            "selectedRoute": selected.target,
            "condition": selected.expression,
            "description": selected.description,
            "evaluatedRoutes": evaluated,
        })
        return proceed(next_id=selected.target)

    if compiled.default_route:
        metrics.increment_counter("router_decisions_total", labels={"reason": "default"})
        logger.info("Router '%s' fell back to default route %s", ctx.node_id, compiled.default_route)
        await ctx.progress(state, "COMPLETED", compiled.default_route, {
            "selectedRoute": compiled.default_route,
            "reason": "default_route",
            "evaluatedRoutes": evaluated,
        })
        return proceed(next_id=compiled.default_route)

    metrics.increment_counter("router_decisions_total", labels={"reason": "no_match"})
    logger.warning("Router '%s' found no match and no default route; ending run", ctx.node_id)
    await ctx.progress(state, "ERROR", "No matching route found and no default route configured",
                       {"evaluatedRoutes": evaluated})
    return halt()
