"""ModelInvoke node: governed prompt build followed by one model call."""

from __future__ import annotations

import json
import logging
import math
import re
import time
from typing import Any

from flowrunner.connectors.records import MemoryRecord
from flowrunner.errors import NodeExecutionError
from flowrunner.prompt_engine.engine import PromptBuildConfig
from flowrunner.prompt_engine.models import ModelCapability, get_model
from flowrunner.runtime.context import NodeContext
from flowrunner.runtime.results import Fail, NodeResult, proceed

logger = logging.getLogger("flowrunner.nodes.model_invoke")

DEFAULT_STEP_PROMPT = "Process the user input according to your capabilities."
DEFAULT_TEMPERATURE = 0.7
MAX_SAVED_OUTPUT_CHARS = 50_000
_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def format_output(raw: str, output_format: str) -> str:
    """Normalize model output: pretty-printed JSON when possible, else trimmed text."""
    if output_format == "json":
        for candidate in (raw, *_JSON_OBJECT_RE.findall(raw)[:1]):
            try:
                return json.dumps(json.loads(candidate), indent=2)
            except (json.JSONDecodeError, TypeError):
                continue
        return raw
    return raw.strip()


def _memory_content(text: str) -> str:
    if len(text) > MAX_SAVED_OUTPUT_CHARS:
        return f"{text[:MAX_SAVED_OUTPUT_CHARS]}... [truncated]"
    return text


async def model_invoke(state: dict[str, Any], ctx: NodeContext) -> NodeResult:
    config = ctx.config
    user_prompt = state.get("user_prompt") or ""

    if config.get("skipIfUserPrompt") and user_prompt.strip():
        logger.info("ModelInvoke(%s): skipIfUserPrompt set and a reply is present; skipping", ctx.node_id)
        await ctx.progress(state, "STREAMING", "Continuing workflow…",
                           {"skipped": True, "reason": "skipIfUserPrompt"})
        return proceed()

    if ctx.prompt_engine is None or ctx.llm_client is None:
        return NodeResult(outcome=Fail(NodeExecutionError(
            ctx.node_id, "ModelInvoke requires a prompt engine and an LLM client",
        )))

    metrics = ctx.services.metrics
    request_id = f"{state.get('workflow_id')}-{state.get('conversation_id')}-{int(time.time() * 1000)}"
    await ctx.progress(state, "STARTED", "Generating answer…", {"requestId": request_id})

    output_format = config.get("outputFormat") or "text"
    use_memory = bool(config.get("useMemory", True))
    model = get_model(config.get("modelId") or ctx.services.default_model)
    max_tokens = config.get("maxTokens")
    temperature = float(config.get("temperature", DEFAULT_TEMPERATURE))
    streaming = bool(config.get("streaming", False))

    t0 = time.monotonic()
    try:
        built = await ctx.prompt_engine.build_prompt(PromptBuildConfig(
            workflow_state=state,
            model=model,
            tenant_id=state.get("tenant_id"),
            use_memory=use_memory,
            memory_size=int(config.get("memorySize") or ctx.services.default_memory_size),
            step_prompt=config.get("systemPrompt") or DEFAULT_STEP_PROMPT,
            output_format=output_format,
            reserved_output_tokens=max_tokens,
            correlation_id=state.get("correlation_id"),
        ))
        messages = [m.as_dict() for m in built.messages]
        logger.info(
            "Prompt ready for %s: version=%s tokens=%s cost=%s",
            model.id, built.metadata.get("base_prompt_version"),
            built.metadata.get("total_tokens"), built.metadata.get("cost_estimate"),
        )

        if streaming:
            raw = await _stream(state, ctx, messages, model, temperature, max_tokens, request_id)
        else:
            raw = await ctx.llm_client.invoke(
                messages,
                model=model.id,
                temperature=temperature,
                max_tokens=max_tokens,
                json_mode=output_format == "json" and model.supports_json_mode,
            )
        formatted = format_output(raw, output_format)
    except Exception as exc:
        metrics.increment_counter("model_invoke_errors_total", labels={"model": model.id})
        logger.error("ModelInvoke(%s) failed: %s", ctx.node_id, exc)
        await ctx.progress(state, "ERROR", f"Failed: {exc}", {"requestId": request_id, "modelId": model.id})
        raise

    duration_ms = (time.monotonic() - t0) * 1000
    metrics.increment_counter("model_invocations_total", labels={"model": model.id})
    metrics.observe_histogram("model_invoke_ms", duration_ms, labels={"model": model.id})

    if use_memory:
        await _save_memory(state, ctx, user_prompt, formatted)

    await ctx.progress(state, "COMPLETED", formatted, {
        "requestId": request_id,
        "modelId": model.id,
        "outputFormat": output_format,
        "streamingUsed": streaming,
        "durationMs": round(duration_ms, 2),
        "basePromptVersion": built.metadata.get("base_prompt_version"),
        "totalTokens": built.metadata.get("total_tokens"),
        "estimatedCostUSD": built.metadata.get("cost_estimate"),
        "truncationApplied": built.metadata.get("was_truncated"),
    })
    return proceed({"output": formatted})


async def _stream(
    state: dict[str, Any],
    ctx: NodeContext,
    messages: list[dict[str, str]],
    model: ModelCapability,
    temperature: float,
    max_tokens: int | None,
    request_id: str,
) -> str:
    parts: list[str] = []
    async for chunk in ctx.llm_client.stream(
        messages,
        model=model.id,
        temperature=temperature,
        max_tokens=max_tokens,
        cancel_token=ctx.services.cancel_token,
    ):
        if not chunk:
            continue
        parts.append(chunk)
        await ctx.progress(state, "STREAMING", chunk, {
            "requestId": request_id,
            "chunkNumber": len(parts),
            "tokensInChunk": math.ceil(len(chunk) / 4),
        })
    logger.info("Stream finished for %s: %d chunk(s)", model.id, len(parts))
    return "".join(parts)


async def _save_memory(state: dict[str, Any], ctx: NodeContext, user_prompt: str, output: str) -> None:
    conversation_id = state.get("conversation_id", "")
    workflow_id = state.get("workflow_id", "")
    try:
        if user_prompt.strip():
            await ctx.data_client.create_memory(MemoryRecord(
                conversation_id=conversation_id, workflow_id=workflow_id, role="user", content=user_prompt,
            ))
        if output.strip():
            await ctx.data_client.create_memory(MemoryRecord(
                conversation_id=conversation_id, workflow_id=workflow_id,
                role="assistant", content=_memory_content(output),
            ))
    except Exception as exc:
        logger.warning("Failed to save memory for %s: %s", conversation_id, exc)
    finally:
        if ctx.services.memory_loader is not None:
            ctx.services.memory_loader.invalidate(conversation_id)
