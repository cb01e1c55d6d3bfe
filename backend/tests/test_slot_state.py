"""Tests for persisted slot-collection state."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from flowrunner.runtime.slot_state import (
    SLOT_STATE_KEY,
    clear_slot_state,
    load_slot_state,
    save_slot_state,
    slot_state_patch,
)


class TestSlotState:
    """Tests for load/save/clear of the slot namespace."""

    @pytest.mark.asyncio
    async def test_save_and_load(self, data_client, conversation):
        await save_slot_state(data_client, "c1", {"slotValues": {"city": "Oslo"}, "currentSlotKey": "email"})
        stored = await load_slot_state(data_client, "c1")
        assert stored["slotValues"] == {"city": "Oslo"}
        assert stored["currentSlotKey"] == "email"
        assert "updatedAt" in stored

    @pytest.mark.asyncio
    async def test_save_merges_and_keeps_other_metadata(self, data_client, conversation):
        conversation.metadata["theme"] = "dark"
        await save_slot_state(data_client, "c1", {"slotValues": {"city": "Oslo"}, "currentSlotKey": "email"})
        await save_slot_state(data_client, "c1", {"currentSlotKey": ""})
        metadata = data_client.conversations["c1"].metadata
        assert metadata["theme"] == "dark"
        assert metadata[SLOT_STATE_KEY]["slotValues"] == {"city": "Oslo"}
        assert metadata[SLOT_STATE_KEY]["currentSlotKey"] == ""

    @pytest.mark.asyncio
    async def test_save_missing_conversation(self, data_client):
        with pytest.raises(KeyError):
            await save_slot_state(data_client, "nope", {"slotValues": {}})

    @pytest.mark.asyncio
    async def test_load_absent_or_broken(self, data_client, conversation):
        assert await load_slot_state(data_client, "c1") == {}
        assert await load_slot_state(data_client, "nope") == {}
        broken = AsyncMock()
        broken.get_conversation.side_effect = RuntimeError("db down")
        assert await load_slot_state(broken, "c1") == {}

    @pytest.mark.asyncio
    async def test_clear(self, data_client, conversation):
        await save_slot_state(data_client, "c1", {"slotValues": {"city": "Oslo"}})
        await clear_slot_state(data_client, "c1")
        assert SLOT_STATE_KEY not in data_client.conversations["c1"].metadata

    @pytest.mark.asyncio
    async def test_clear_is_best_effort(self):
        broken = AsyncMock()
        broken.get_conversation.side_effect = RuntimeError("db down")
        await clear_slot_state(broken, "c1")

    def test_patch_maps_to_run_state(self):
        patch = slot_state_patch({
            "slotValues": {"city": "Oslo"},
            "slotAttempts": {"email": 1},
            "currentSlotKey": "email",
            "allSlotsFilled": False,
        })
        assert patch == {
            "slot_values": {"city": "Oslo"},
            "slot_attempts": {"email": 1},
            "current_slot_key": "email",
            "all_slots_filled": False,
        }
        assert slot_state_patch({})["current_slot_key"] == ""
