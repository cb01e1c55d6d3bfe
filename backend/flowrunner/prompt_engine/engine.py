"""Prompt engine — composes the governed pipeline into a single build.

Order of operations for :meth:`PromptEngine.build_prompt`:

 1. circuit-breaker check (open circuit aborts the build)
 2. output-format gate (versioned base prompts are only used for ``json``)
 3. active-pointer resolution
 4. integrity verification of the resolved version
 5. content retrieval
 6. interpolation of base and step prompts
 7. PII scrub of base, step, memory and user input
 8. memory load
 9. segment assembly
10. token estimate
11. budget enforcement
12. memory truncation to the available input tokens
13. message formatting
"""

from __future__ import annotations

import logging
import math
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from flowrunner.errors import PromptEngineError
from flowrunner.prompt_engine.circuit_breaker import CircuitBreaker
from flowrunner.prompt_engine.content_store import ContentStore
from flowrunner.prompt_engine.interpolator import InterpolationContext, interpolate
from flowrunner.prompt_engine.memory import MemoryLoader
from flowrunner.prompt_engine.messages import Message, format_messages
from flowrunner.prompt_engine.models import ModelCapability
from flowrunner.prompt_engine.pointer_resolver import PointerResolver, is_emergency_fallback
from flowrunner.prompt_engine.security import PIIScrubber
from flowrunner.prompt_engine.token_budget import TokenBudgetEnforcer
from flowrunner.prompt_engine.truncation import truncate_to_token_budget
from flowrunner.utils.logger import ctx_correlation_id
from flowrunner.utils.metrics import MetricsCollector, record_prompt_build
from flowrunner.utils.tracing import get_tracer, traced

logger = logging.getLogger("flowrunner.prompt_engine.engine")

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."
DEFAULT_RESERVED_OUTPUT_TOKENS = 2000
DEFAULT_MEMORY_SIZE = 10
SEGMENT_OVERHEAD_TOKENS = 10
OUTPUT_FORMATS = ("text", "markdown", "json")


@dataclass
class PromptBuildConfig:
    """Inputs for one build.

    ``workflow_state`` is the run state (``conversation_id``, ``user_id``,
    ``user_prompt``, ``current_node_config``, ...).
    """

    workflow_state: dict[str, Any]
    model: ModelCapability
    tenant_id: str | None = None
    use_memory: bool = False
    memory_size: int = DEFAULT_MEMORY_SIZE
    step_prompt: str | None = None
    output_format: str | None = None
    reserved_output_tokens: int | None = None
    correlation_id: str | None = None


@dataclass
class PromptBuildResult:
    messages: list[Message]
    metadata: dict[str, Any] = field(default_factory=dict)


def estimate_segment_tokens(segments: list[dict[str, Any]], model: ModelCapability) -> int:
    """Provider chars-per-token estimate plus a fixed per-message overhead."""
    total_chars = sum(len(s["content"]) for s in segments)
    return math.ceil(total_chars / model.chars_per_token) + SEGMENT_OVERHEAD_TOKENS * len(segments)


def assemble_segments(
    base_prompt: str, step_prompt: str, memory_turns: list[dict[str, Any]], user_input: str
) -> list[dict[str, Any]]:
    """One system segment, then memory oldest to newest, then the user input."""
    system = step_prompt.strip() or base_prompt.strip() or DEFAULT_SYSTEM_PROMPT
    segments: list[dict[str, Any]] = [{"role": "system", "content": system}]
    segments.extend({"role": t["role"], "content": t["content"]} for t in memory_turns)
    if user_input.strip():
        segments.append({"role": "user", "content": user_input.strip()})
    return segments


def validate_config(config: PromptBuildConfig) -> list[str]:
    errors: list[str] = []
    state = config.workflow_state or {}
    if not state.get("conversation_id"):
        errors.append("workflow_state.conversation_id is required")
    if not state.get("user_id"):
        errors.append("workflow_state.user_id is required")
    if config.model is None:
        errors.append("model is required")
    else:
        if not config.model.id:
            errors.append("model.id is required")
        if not config.model.context_window:
            errors.append("model.context_window is required")
    if not 0 <= config.memory_size <= 100:
        errors.append("memory_size must be between 0 and 100")
    return errors


class PromptEngine:
    def __init__(
        self,
        pointer_resolver: PointerResolver,
        content_store: ContentStore,
        memory_loader: MemoryLoader,
        circuit_breaker: CircuitBreaker,
        budget: TokenBudgetEnforcer | None = None,
        scrubber: PIIScrubber | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self.metrics = metrics or MetricsCollector()
        self.pointer_resolver = pointer_resolver
        self.content_store = content_store
        self.memory_loader = memory_loader
        self.circuit_breaker = circuit_breaker
        self.budget = budget or TokenBudgetEnforcer(metrics=self.metrics)
        self.scrubber = scrubber or PIIScrubber(metrics=self.metrics)
        self._tracer = get_tracer("flowrunner.prompt_engine")

    async def build_prompt(self, config: PromptBuildConfig) -> PromptBuildResult:
        """Build the messages for one model call.

        Raises:
            PromptEngineError: ``INVALID_CONFIG``, ``CIRCUIT_BREAKER_OPEN``,
                ``INTEGRITY_VIOLATION``, budget and interpolation codes as
                raised by the stages; any other failure is wrapped as
                ``PROMPT_BUILD_FAILED``.
        """
        errors = validate_config(config)
        if errors:
            raise PromptEngineError("INVALID_CONFIG", f"Invalid prompt config: {', '.join(errors)}",
                                    {"errors": errors})

        state = config.workflow_state
        correlation_id = config.correlation_id or ctx_correlation_id.get() or str(uuid.uuid4())
        t0 = time.monotonic()

        with traced(
            self._tracer, "prompt.build",
            model_id=config.model.id,
            workflow_id=state.get("workflow_id"),
            conversation_id=state.get("conversation_id"),
            correlation_id=correlation_id,
        ):
            try:
                result = await self._build(config, correlation_id, t0)
            except PromptEngineError:
                self.metrics.increment_counter("prompt_builds_total", labels={"status": "failed"})
                raise
            except Exception as exc:
                self.metrics.increment_counter("prompt_builds_total", labels={"status": "failed"})
                logger.error("Prompt build failed: model=%s error=%s", config.model.id, exc)
                raise PromptEngineError(
                    "PROMPT_BUILD_FAILED",
                    f"Prompt build failed: {exc}",
                    {
                        "workflow_id": state.get("workflow_id"),
                        "conversation_id": state.get("conversation_id"),
                        "model_id": config.model.id,
                        "original_error": str(exc),
                    },
                ) from exc

        self.metrics.increment_counter("prompt_builds_total", labels={"status": "succeeded"})
        return result

    async def _build(self, config: PromptBuildConfig, correlation_id: str, t0: float) -> PromptBuildResult:
        state = config.workflow_state
        model = config.model

        # 1. Circuit breaker
        health = await self.circuit_breaker.check_health(model.id)
        if not health.healthy:
            raise PromptEngineError(
                "CIRCUIT_BREAKER_OPEN",
                f"Model circuit breaker open: {health.reason}",
                {"model_id": model.id, "reason": health.reason},
            )

        # 2. Output-format gate
        output_format = self._resolve_output_format(config)
        use_base_prompt = output_format == "json"
        skip_reason = None if use_base_prompt else f"outputFormat={output_format}, base prompts only used for JSON"

        # 3-5. Versioned base prompt
        base_version_id: str | None = None
        base_content = ""
        integrity_verified = True
        cache_hit = False
        if use_base_prompt:
            version = await self.pointer_resolver.resolve_active_prompt(
                state.get("workflow_id") or None, model.id, config.tenant_id,
            )
            cache_hit = self.pointer_resolver.last_resolution_was_cache_hit
            base_version_id = version.id
            if is_emergency_fallback(version):
                base_content = version.content or ""
            else:
                integrity_verified = await self.content_store.verify_integrity(version)
                if not integrity_verified:
                    raise PromptEngineError(
                        "INTEGRITY_VIOLATION", "Content integrity violation detected",
                        {"version_id": version.id},
                    )
                base_content = await self.content_store.get_content(version)
        logger.info(
            "Base prompt selection: output_format=%s use_base=%s version=%s",
            output_format, use_base_prompt, base_version_id,
        )

        # 6. Interpolation
        ctx = self._interpolation_context(config, correlation_id)
        interpolated_base = interpolate(base_content, ctx) if base_content else ""
        step_prompt = (config.step_prompt or "").strip()
        interpolated_step = interpolate(step_prompt, ctx) if step_prompt else ""

        # 7-8. PII scrub and memory
        memory_turns: list[dict[str, Any]] = []
        pii_in_memory = False
        if config.use_memory:
            raw_memory = await self.memory_loader.load(state["conversation_id"], config.memory_size)
            pii_in_memory = any(self.scrubber.detect_pii(t["content"]).has_pii for t in raw_memory)
            memory_turns = [{**t, "content": self.scrubber.scrub(t["content"])} for t in raw_memory]
        user_input = state.get("user_prompt") or ""
        pii_detected = (
            pii_in_memory
            or self.scrubber.detect_pii(interpolated_base).has_pii
            or self.scrubber.detect_pii(interpolated_step).has_pii
            or self.scrubber.detect_pii(user_input).has_pii
        )
        scrubbed_base = self.scrubber.scrub(interpolated_base)
        scrubbed_step = self.scrubber.scrub(interpolated_step)
        scrubbed_user = self.scrubber.scrub(user_input)

        # 9-11. Assembly, estimate, budget
        segments = assemble_segments(scrubbed_base, scrubbed_step, memory_turns, scrubbed_user)
        estimated_tokens = estimate_segment_tokens(segments, model)
        reserved = config.reserved_output_tokens or model.reserved_output_tokens or DEFAULT_RESERVED_OUTPUT_TOKENS
        budget = self.budget.enforce(model, reserved, estimated_tokens)

        # 12. Truncation
        truncation = truncate_to_token_budget(memory_turns, budget.available_input_tokens)
        final_segments = assemble_segments(scrubbed_base, scrubbed_step, truncation.preserved, scrubbed_user)

        # 13. Formatting
        messages = format_messages(final_segments)

        final_tokens = estimate_segment_tokens(final_segments, model)
        build_ms = (time.monotonic() - t0) * 1000
        metadata = {
            "total_tokens": final_tokens,
            "context_window": model.context_window,
            "utilization_percent": round(final_tokens / model.context_window * 100),
            "was_truncated": truncation.truncated,
            "removed_segments": len(truncation.dropped),
            "segment_counts": {
                "system": sum(1 for s in final_segments if s["role"] == "system"),
                "memory": len(truncation.preserved),
                "user": 1 if scrubbed_user.strip() else 0,
            },
            "build_time_ms": round(build_ms, 2),
            "correlation_id": correlation_id,
            "base_prompt_version": base_version_id or "none",
            "cache_hit": cache_hit,
            "pii_detected": pii_detected,
            "integrity_verified": integrity_verified,
            "cost_estimate": budget.estimated_cost,
            "circuit_breaker_state": "closed",
            "should_use_base_prompt": use_base_prompt,
            "base_prompt_skip_reason": skip_reason,
        }
        record_prompt_build(self.metrics, build_ms, truncation.truncated, pii_detected)
        logger.info(
            "Prompt built: messages=%d tokens=%d utilization=%d%% truncated=%s version=%s cost=$%.4f",
            len(messages), final_tokens, metadata["utilization_percent"],
            truncation.truncated, metadata["base_prompt_version"], budget.estimated_cost,
        )
        return PromptBuildResult(messages=messages, metadata=metadata)

    @staticmethod
    def _resolve_output_format(config: PromptBuildConfig) -> str:
        node_config = config.workflow_state.get("current_node_config") or {}
        fmt = config.output_format or node_config.get("outputFormat") or "text"
        if fmt not in OUTPUT_FORMATS:
            logger.warning("Unknown output format %r, treating as text", fmt)
            return "text"
        return fmt

    @staticmethod
    def _interpolation_context(config: PromptBuildConfig, correlation_id: str) -> InterpolationContext:
        state = config.workflow_state
        node_config = state.get("current_node_config") or {}
        extras: dict[str, Any] = {}
        for key in ("tone", "style"):
            value = node_config.get(key)
            if isinstance(value, str) and value.strip():
                extras[key] = value.strip()
        return InterpolationContext(
            workflow_id=state.get("workflow_id") or "",
            conversation_id=state.get("conversation_id") or "",
            user_id=state.get("user_id") or "",
            node_id=state.get("current_node_id") or "",
            node_type=state.get("current_node_type") or "",
            intent=state.get("intent") or "",
            correlation_id=correlation_id,
            timestamp=datetime.now(timezone.utc).isoformat(),
            workflow_state=dict(state),
            slots=dict(state.get("slot_values") or {}),
            model=config.model.as_template_dict(),
            extras=extras,
        )
