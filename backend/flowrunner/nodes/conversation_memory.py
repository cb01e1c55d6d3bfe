"""ConversationMemory node: loads recent turns into ``state.memory``."""

from __future__ import annotations

import logging
from typing import Any

from flowrunner.connectors.records import Conversation
from flowrunner.prompt_engine.memory import MemoryLoader
from flowrunner.runtime.context import NodeContext
from flowrunner.runtime.results import NodeResult, proceed

logger = logging.getLogger("flowrunner.nodes.conversation_memory")


async def _ensure_conversation(state: dict[str, Any], ctx: NodeContext) -> None:
    conversation_id = state.get("conversation_id", "")
    try:
        if await ctx.data_client.get_conversation(conversation_id) is None:
            logger.warning("Conversation %s not found; creating it", conversation_id)
            await ctx.data_client.create_conversation(Conversation(
                id=conversation_id,
                user_id=state.get("user_id", ""),
                workflow_id=state.get("workflow_id", ""),
            ))
    except Exception as exc:
        logger.warning("Could not ensure conversation %s exists: %s", conversation_id, exc)


async def conversation_memory(state: dict[str, Any], ctx: NodeContext) -> NodeResult:
    await ctx.progress(state, "STARTED", "Loading memory…")
    await _ensure_conversation(state, ctx)

    loader = ctx.services.memory_loader or MemoryLoader(ctx.data_client, metrics=ctx.services.metrics)
    size = int(ctx.config.get("memorySize") or ctx.services.default_memory_size)
    scrubber = ctx.services.scrubber
    history = [
        {"role": turn["role"], "content": scrubber.scrub(turn["content"])}
        for turn in await loader.load(state.get("conversation_id", ""), size)
    ]

    turns = list(history)
    user_prompt = state.get("user_prompt") or ""
    if user_prompt.strip():
        turns.append({"role": "user", "content": user_prompt})

    ctx.services.metrics.increment_counter("memory_reads_total")
    logger.info("Loaded %d previous turn(s) for %s", len(history), state.get("conversation_id"))
    await ctx.progress(state, "COMPLETED", "Memory ready", {
        "previousMemoryCount": len(history),
        "totalMemoryAfterAdd": len(turns),
    })
    return proceed({"memory": turns})
