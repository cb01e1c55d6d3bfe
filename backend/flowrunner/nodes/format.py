"""Format node: renders ``output`` from a template or a fixed layout.

With a ``template`` in the node config the template is interpolated against
the run state (``{{input.city}}``, ``{{output}}``, ``{{slots.email}}``, ...).
Otherwise the previous ``output`` is wrapped according to ``outputFormat``.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from flowrunner.prompt_engine.interpolator import InterpolationContext, interpolate
from flowrunner.runtime.context import NodeContext
from flowrunner.runtime.results import NodeResult, proceed

logger = logging.getLogger("flowrunner.nodes.format")


def template_context(state: dict[str, Any], ctx: NodeContext) -> InterpolationContext:
    return InterpolationContext(
        workflow_id=state.get("workflow_id") or "",
        conversation_id=state.get("conversation_id") or "",
        user_id=state.get("user_id") or "",
        node_id=ctx.node_id,
        node_type=ctx.node_type,
        intent=state.get("intent") or "",
        correlation_id=state.get("correlation_id") or "",
        workflow_state=dict(state),
        slots=dict(state.get("slot_values") or {}),
        extras={
            "input": state.get("input"),
            "output": state.get("output") or "",
            "user_prompt": state.get("user_prompt") or "",
        },
    )


def apply_layout(text: str, output_format: str, state: dict[str, Any], node_id: str) -> str:
    if output_format == "text":
        return text
    if output_format == "markdown":
        return f"## AI Response\n\n{text}"
    if output_format == "json":
        return json.dumps({
            "response": text,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "nodeId": node_id,
            "workflowId": state.get("workflow_id"),
        }, indent=2)
    return text


async def format_node(state: dict[str, Any], ctx: NodeContext) -> NodeResult:
    await ctx.progress(state, "STARTED", "Formatting…")
    config = ctx.config
    original = state.get("output") or ""

    template = config.get("template")
    if template:
        formatted = interpolate(str(template), template_context(state, ctx))
        mode = "template"
    else:
        mode = config.get("outputFormat") or "markdown"
        if mode == "plain":
            mode = "text"
        formatted = apply_layout(original, mode, state, ctx.node_id)

    ctx.services.metrics.increment_counter("format_calls_total", labels={"mode": mode})
    logger.info("Formatted output (%s): %d -> %d chars", mode, len(original), len(formatted))
    await ctx.progress(state, "COMPLETED", "Formatting done", {
        "mode": mode,
        "originalLength": len(original),
        "formattedLength": len(formatted),
    })
    return proceed({"output": formatted})
