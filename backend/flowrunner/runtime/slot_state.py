"""Slot-collection state persisted in ``Conversation.metadata["slotState"]``.

Slot values survive between runs so that a halted SlotTracker can resume
once the user answers.  The stored shape is::

    {"slotValues": {...}, "slotAttempts": {...}, "currentSlotKey": "...",
     "allSlotsFilled": false, "updatedAt": "<iso8601>"}
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

from flowrunner.connectors.data_client import DataClient
from flowrunner.connectors.records import utcnow

logger = logging.getLogger("flowrunner.runtime.slot_state")

SLOT_STATE_KEY = "slotState"


async def load_slot_state(data_client: DataClient, conversation_id: str) -> dict[str, Any]:
    """Return the persisted slot state, or ``{}`` when absent or unreadable."""
    try:
        conversation = await data_client.get_conversation(conversation_id)
    except Exception as exc:
        logger.error("Failed to load slot state for %s: %s", conversation_id, exc)
        return {}
    if conversation is None or not conversation.metadata:
        return {}
    stored = conversation.metadata.get(SLOT_STATE_KEY)
    return dict(stored) if isinstance(stored, dict) else {}


async def save_slot_state(data_client: DataClient, conversation_id: str, slot_state: dict[str, Any]) -> None:
    """Shallow-merge ``slot_state`` into the stored namespace.

    Raises:
        KeyError: when the conversation does not exist.
    """
    conversation = await data_client.get_conversation(conversation_id)
    if conversation is None:
        raise KeyError(f"Conversation {conversation_id} not found")

    metadata = dict(conversation.metadata or {})
    existing = metadata.get(SLOT_STATE_KEY) if isinstance(metadata.get(SLOT_STATE_KEY), dict) else {}
    metadata[SLOT_STATE_KEY] = {**existing, **slot_state, "updatedAt": utcnow().isoformat()}
    await data_client.update_conversation(replace(conversation, metadata=metadata, updated_at=utcnow()))
    logger.info(
        "Saved slot state for %s (slots=%d, current=%s)",
        conversation_id, len(slot_state.get("slotValues") or {}), slot_state.get("currentSlotKey"),
    )


async def clear_slot_state(data_client: DataClient, conversation_id: str) -> None:
    """Drop the slot namespace; failures are logged only."""
    try:
        conversation = await data_client.get_conversation(conversation_id)
        if conversation is None or SLOT_STATE_KEY not in (conversation.metadata or {}):
            return
        metadata = {k: v for k, v in conversation.metadata.items() if k != SLOT_STATE_KEY}
        await data_client.update_conversation(replace(conversation, metadata=metadata, updated_at=utcnow()))
        logger.info("Cleared slot state for %s", conversation_id)
    except Exception as exc:
        logger.error("Failed to clear slot state for %s: %s", conversation_id, exc)


def slot_state_patch(stored: dict[str, Any]) -> dict[str, Any]:
    """Map a stored slot namespace onto run-state fields."""
    return {
        "slot_values": dict(stored.get("slotValues") or {}),
        "slot_attempts": dict(stored.get("slotAttempts") or {}),
        "current_slot_key": stored.get("currentSlotKey") or "",
        "all_slots_filled": bool(stored.get("allSlotsFilled", False)),
    }
