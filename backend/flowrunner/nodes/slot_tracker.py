"""SlotTracker node: collects structured values from the user across turns.

Each run consumes at most one answer (``user_prompt``) for the slot being
collected, then either halts awaiting the next slot or, once every required
slot is filled, hands the values to the next node as ``input``.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from flowrunner.connectors.records import MemoryRecord
from flowrunner.errors import NodeExecutionError, WorkflowConfigError
from flowrunner.runtime.context import NodeContext
from flowrunner.runtime.results import Fail, NodeResult, halt, proceed
from flowrunner.runtime.slot_state import clear_slot_state, save_slot_state
from flowrunner.workflow.definition import NodeDef, WorkflowDefinition

logger = logging.getLogger("flowrunner.nodes.slot_tracker")

DEFAULT_MAX_RETRIES = 3
DEFAULT_MAX_TOTAL_ATTEMPTS = 10


@dataclass(frozen=True)
class SlotSpec:
    key: str
    prompt: str
    required: bool = True
    pattern: re.Pattern[str] | None = None
    validation_hint: str | None = None
    max_retries: int = DEFAULT_MAX_RETRIES

    def accepts(self, value: str) -> bool:
        return self.pattern is None or self.pattern.search(value) is not None

    @property
    def question(self) -> str:
        if self.validation_hint:
            return f"{self.prompt} ({self.validation_hint})"
        return self.prompt


@dataclass(frozen=True)
class CompiledSlotTracker:
    slots: tuple[SlotSpec, ...]
    allow_partial: bool = False
    persist_to_state: bool = True
    max_total_attempts: int = DEFAULT_MAX_TOTAL_ATTEMPTS
    fallback_route: str | None = None

    def slot(self, key: str) -> SlotSpec | None:
        return next((s for s in self.slots if s.key == key), None)


def _compile_pattern(key: str, pattern: str | None) -> re.Pattern[str] | None:
    if not pattern:
        return None
    try:
        return re.compile(pattern)
    except re.error as exc:
        # A malformed pattern accepts any input
        logger.error("Invalid validation pattern for slot '%s' (%r): %s", key, pattern, exc)
        return None


def parse_slot_tracker_config(config: dict[str, Any]) -> CompiledSlotTracker:
    raw_slots = config.get("slots")
    if not isinstance(raw_slots, list) or not raw_slots:
        raise WorkflowConfigError("SlotTracker requires slots configuration")

    slots: list[SlotSpec] = []
    for i, raw in enumerate(raw_slots):
        if not isinstance(raw, dict) or not raw.get("key") or not raw.get("prompt"):
            raise WorkflowConfigError(f"SlotTracker slot #{i} needs 'key' and 'prompt'")
        key = str(raw["key"])
        slots.append(SlotSpec(
            key=key,
            prompt=str(raw["prompt"]),
            required=bool(raw.get("required", True)),
            pattern=_compile_pattern(key, raw.get("validation")),
            validation_hint=raw.get("validationHint") or None,
            max_retries=int(raw.get("maxRetries") or DEFAULT_MAX_RETRIES),
        ))

    return CompiledSlotTracker(
        slots=tuple(slots),
        allow_partial=bool(config.get("allowPartial", False)),
        persist_to_state=bool(config.get("persistToState", True)),
        max_total_attempts=int(config.get("maxTotalAttempts") or DEFAULT_MAX_TOTAL_ATTEMPTS),
        fallback_route=config.get("fallbackRoute") or None,
    )


def compile_slot_tracker(node: NodeDef, definition: WorkflowDefinition) -> CompiledSlotTracker:
    compiled = parse_slot_tracker_config(node.config)
    if compiled.fallback_route and definition.node(compiled.fallback_route) is None:
        raise WorkflowConfigError(
            f"SlotTracker '{node.id}' fallback route '{compiled.fallback_route}' is not a node"
        )
    return compiled


def _persisted(values: dict[str, str], attempts: dict[str, int], current_key: str) -> dict[str, Any]:
    return {
        "slotValues": values,
        "slotAttempts": attempts,
        "currentSlotKey": current_key,
        "allSlotsFilled": False,
    }


async def slot_tracker(state: dict[str, Any], ctx: NodeContext) -> NodeResult:
    compiled: CompiledSlotTracker = ctx.compiled or parse_slot_tracker_config(ctx.config)
    metrics = ctx.services.metrics
    conversation_id = state.get("conversation_id", "")
    current_key = state.get("current_slot_key") or ""
    user_input = (state.get("user_prompt") or "").strip()

    await ctx.progress(state, "STARTED", "Collecting required info…")

    values: dict[str, str] = dict(state.get("slot_values") or {})
    attempts: dict[str, int] = dict(state.get("slot_attempts") or {})

    # Consume the pending answer for the slot being collected
    slot = compiled.slot(current_key) if current_key and user_input else None
    if slot is not None:
        attempts[slot.key] = attempts.get(slot.key, 0) + 1
        slot_attempts = attempts[slot.key]
        total_attempts = sum(attempts.values())

        if not slot.accepts(user_input):
            hint = slot.validation_hint or f"Input doesn't match required format for {slot.key}"
            metrics.increment_counter("slot_validation_failures_total")

            if slot_attempts >= slot.max_retries or total_attempts >= compiled.max_total_attempts:
                logger.warning(
                    "Slot '%s' exceeded attempts (slot=%d/%d, total=%d/%d)",
                    slot.key, slot_attempts, slot.max_retries, total_attempts, compiled.max_total_attempts,
                )
                message = f"Validation failed for slot '{slot.key}' after {slot_attempts} attempts"
                await ctx.progress(state, "ERROR", message, {
                    "reason": "max_attempts_exceeded",
                    "slotKey": slot.key,
                    "fallbackRoute": compiled.fallback_route,
                })
                if not compiled.fallback_route:
                    return NodeResult(outcome=Fail(NodeExecutionError(ctx.node_id, message)))
                await clear_slot_state(ctx.data_client, conversation_id)
                return proceed({
                    "slot_attempts": attempts,
                    "all_slots_filled": False,
                    "user_prompt": "",
                    "output": "I'm having trouble with that format. Let me help you differently.",
                }, next_id=compiled.fallback_route)

            retry_message = f"{hint}. {slot.prompt} (Attempt {slot_attempts}/{slot.max_retries})"
            await save_slot_state(ctx.data_client, conversation_id, _persisted(values, attempts, slot.key))
            await ctx.progress(state, "AWAITING_INPUT", retry_message, {
                "role": "assistant",
                "slotKey": slot.key,
                "attempts": slot_attempts,
                "maxRetries": slot.max_retries,
            })
            logger.info("Slot '%s' rejected input, re-prompting (attempt %d)", slot.key, slot_attempts)
            return halt({
                "slot_values": values,
                "slot_attempts": attempts,
                "current_slot_key": slot.key,
                "all_slots_filled": False,
                "output": retry_message,
            }, awaiting_key=slot.key)

        values[slot.key] = user_input
        metrics.increment_counter("slots_captured_total")
        logger.info("Captured slot '%s' after %d attempt(s)", slot.key, slot_attempts)

    unfilled = [s for s in compiled.slots if s.required and not (values.get(s.key) or "").strip()]
    if unfilled and not compiled.allow_partial:
        next_slot = unfilled[0]
        await save_slot_state(ctx.data_client, conversation_id, _persisted(values, attempts, next_slot.key))
        await ctx.progress(state, "AWAITING_INPUT", next_slot.question, {
            "role": "assistant",
            "nextSlotKey": next_slot.key,
            "remainingSlots": len(unfilled),
            "filledSlots": len(values),
            "totalSlots": len(compiled.slots),
        })
        metrics.increment_counter("slot_prompts_total")
        logger.info("Prompting for slot '%s' (%d remaining)", next_slot.key, len(unfilled))
        return halt({
            "slot_values": values,
            "slot_attempts": attempts,
            "current_slot_key": next_slot.key,
            "all_slots_filled": False,
            "output": next_slot.question,
        }, awaiting_key=next_slot.key)

    # Every required slot is filled
    filled = len(values)
    required = sum(1 for s in compiled.slots if s.required)
    payload = json.dumps(values)

    if compiled.persist_to_state and filled:
        try:
            await ctx.data_client.create_memory(MemoryRecord(
                conversation_id=conversation_id,
                workflow_id=state.get("workflow_id", ""),
                role="assistant",
                content=f"Slot collection completed: {json.dumps(values, indent=2)}",
            ))
        except Exception as exc:
            logger.error("Failed to persist %d slot value(s): %s", filled, exc)

    await ctx.progress(state, "COMPLETED", f"Slots filled: {filled}/{required}", {
        "filledSlots": filled,
        "requiredSlots": required,
        "collectedSlotKeys": list(values),
    })
    await clear_slot_state(ctx.data_client, conversation_id)
    metrics.increment_counter("slot_collections_completed_total")

    if compiled.allow_partial and filled < len(compiled.slots):
        summary = (f"Collected {filled} of {len(compiled.slots)} requested details. "
                   "Proceeding with available information.")
    else:
        summary = f"All required information collected successfully. {filled} details captured."

    return proceed({
        "slot_values": values,
        "slot_attempts": attempts,
        "current_slot_key": "",
        "awaiting_input_for": None,
        "all_slots_filled": True,
        "input": dict(values),
        "user_prompt": f"SYNTHESIZE\n{payload}",
        "output": summary,
    })
