"""LangGraph state schema for workflow runs."""

from __future__ import annotations

import operator
from typing import Annotated, Any, TypedDict


def merge_dicts(left: dict[str, Any] | None, right: dict[str, Any] | None) -> dict[str, Any]:
    """Reducer: shallow-merge a node's patch into the accumulated map."""
    return {**(left or {}), **(right or {})}


class RunState(TypedDict, total=False):
    """Single state object carried through a run.

    Handlers return partial patches; ``memory`` patches are appended and the
    slot maps are merged rather than replaced.
    """

    # Run context
    workflow_id: str
    conversation_id: str
    user_id: str
    tenant_id: str | None
    correlation_id: str
    request_id: str | None
    owners_for_progress: list[str]

    # Conversation
    user_prompt: str
    memory: Annotated[list[dict[str, Any]], operator.add]
    intent: str

    # Cursor, set by the executor before each handler runs
    current_node_id: str
    current_node_type: str
    current_node_config: dict[str, Any]

    # Routing key, read by Router and SlotTracker conditional edges
    route_chosen: str

    # Slot collection (persisted between runs for halt/resume)
    slot_values: Annotated[dict[str, str], merge_dicts]
    slot_attempts: Annotated[dict[str, int], merge_dicts]
    current_slot_key: str
    all_slots_filled: bool

    # Halt signal
    halted: bool
    needs_user_input: bool
    awaiting_input_for: str | None

    # Inter-node payloads
    input: dict[str, Any] | None
    output: str | None

    # Error context
    error: dict[str, Any] | None


def initial_state(
    workflow_id: str,
    conversation_id: str,
    user_id: str,
    user_prompt: str = "",
    **extra: Any,
) -> RunState:
    """A fresh state with every routing and halt field reset."""
    state: RunState = {
        "workflow_id": workflow_id,
        "conversation_id": conversation_id,
        "user_id": user_id,
        "user_prompt": user_prompt,
        "owners_for_progress": [user_id] if user_id else [],
        "memory": [],
        "intent": "",
        "route_chosen": "",
        "slot_values": {},
        "slot_attempts": {},
        "current_slot_key": "",
        "all_slots_filled": False,
        "halted": False,
        "needs_user_input": False,
        "awaiting_input_for": None,
        "input": None,
        "output": None,
        "error": None,
    }
    state.update(extra)  # type: ignore[typeddict-item]
    return state
