"""StreamToClient node: records the run's final response.  Terminal."""

from __future__ import annotations

import logging
from typing import Any

from flowrunner.runtime.context import NodeContext
from flowrunner.runtime.results import NodeResult, proceed

logger = logging.getLogger("flowrunner.nodes.stream_to_client")

PREVIEW_CHARS = 200


async def stream_to_client(state: dict[str, Any], ctx: NodeContext) -> NodeResult:
    workflow_id = state.get("workflow_id", "")
    conversation_id = state.get("conversation_id")
    metrics = ctx.services.metrics

    if not conversation_id:
        logger.warning("StreamToClient without conversation id (workflow=%s)", workflow_id)

    # One final response per conversation
    try:
        existing = await ctx.data_client.list_progress(
            workflow_id,
            conversation_id=conversation_id,
            step_name=ctx.node_id,
            status="COMPLETED",
            limit=1,
        )
    except Exception as exc:
        logger.warning("Duplicate finalization check failed, proceeding: %s", exc)
        existing = []
    if existing:
        logger.info(
            "Final response already sent for conversation %s (%s); skipping",
            conversation_id, existing[0].id,
        )
        metrics.increment_counter("duplicate_finalizations_prevented_total")
        return proceed()

    await ctx.progress(state, "STARTED", "Streaming response to client")

    response = state.get("output") or ""
    if response.strip():
        preview = response[:PREVIEW_CHARS] + ("..." if len(response) > PREVIEW_CHARS else "")
        await ctx.progress(state, "COMPLETED", response, {
            "responseLength": len(response),
            "responsePreview": preview,
            "workflowCompleted": True,
        })
        metrics.increment_counter("final_responses_total")
        logger.info("Final response sent for conversation %s (%d chars)", conversation_id, len(response))
    else:
        logger.warning("No response available to send for conversation %s", conversation_id)
        await ctx.progress(state, "COMPLETED", "No formatted response available to send",
                           {"responseLength": 0, "warning": "empty_response"})
        metrics.increment_counter("empty_responses_total")
    return proceed()
