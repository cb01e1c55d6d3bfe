"""Tests for the SQLAlchemy-backed data client."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from flowrunner.config import Settings
from flowrunner.connectors.records import (
    ActivePromptPointer,
    AuditLogEntry,
    CircuitBreakerState,
    Conversation,
    MemoryRecord,
    ProgressRecord,
    PromptVersion,
)
from flowrunner.connectors.sql_data_client import SqlDataClient
from flowrunner.db.engine import init_db, make_engine, make_session_factory

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def sql_client(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'flow.db'}"
    engine = make_engine(Settings(FLOW_DB_URL=url))
    await init_db(engine)
    # Idempotent
    await init_db(engine)
    yield SqlDataClient(make_session_factory(engine))
    await engine.dispose()


class TestConversations:
    """Tests for conversation and memory persistence."""

    @pytest.mark.asyncio
    async def test_round_trip_with_metadata(self, sql_client):
        await sql_client.create_conversation(Conversation("c1", user_id="u1", metadata={"slotState": {"a": 1}}))
        loaded = await sql_client.get_conversation("c1")
        assert loaded.user_id == "u1"
        assert loaded.metadata == {"slotState": {"a": 1}}
        assert loaded.created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_update(self, sql_client):
        conv = await sql_client.create_conversation(Conversation("c1"))
        conv.metadata = {"k": "v"}
        await sql_client.update_conversation(conv)
        assert (await sql_client.get_conversation("c1")).metadata == {"k": "v"}

    @pytest.mark.asyncio
    async def test_update_missing(self, sql_client):
        with pytest.raises(KeyError):
            await sql_client.update_conversation(Conversation("nope"))

    @pytest.mark.asyncio
    async def test_missing_is_none(self, sql_client):
        assert await sql_client.get_conversation("nope") is None

    @pytest.mark.asyncio
    async def test_memories_ordered_by_time(self, sql_client):
        await sql_client.create_memory(MemoryRecord("c1", "assistant", "second", timestamp=T0 + timedelta(seconds=5)))
        await sql_client.create_memory(MemoryRecord("c1", "user", "first", timestamp=T0))
        await sql_client.create_memory(MemoryRecord("c2", "user", "other", timestamp=T0))
        memories = await sql_client.list_memories("c1")
        assert [m.content for m in memories] == ["first", "second"]


class TestPromptGovernance:
    """Tests for prompt versions, pointers, breaker state and audit logs."""

    @pytest.mark.asyncio
    async def test_version_by_hash(self, sql_client):
        version = await sql_client.create_prompt_version(PromptVersion("h1", "gpt-4o", content="body", size_bytes=4))
        assert (await sql_client.get_prompt_version(version.id)).content == "body"
        found = await sql_client.find_prompt_versions_by_hash("h1")
        assert [v.id for v in found] == [version.id]
        assert await sql_client.find_prompt_versions_by_hash("h2") == []

    @pytest.mark.asyncio
    async def test_latest_pointer_per_scope_and_tenant(self, sql_client):
        await sql_client.create_pointer(ActivePromptPointer("gpt-4o", "v1", pointer_version=1))
        await sql_client.create_pointer(ActivePromptPointer("gpt-4o", "v2", pointer_version=2))
        await sql_client.create_pointer(ActivePromptPointer("gpt-4o", "v3", tenant_id="t1", pointer_version=5))

        global_ptrs = await sql_client.list_pointers("gpt-4o", "GLOBAL", None)
        assert [p.active_version_id for p in global_ptrs] == ["v2"]
        tenant_ptrs = await sql_client.list_pointers("gpt-4o", "GLOBAL", "t1")
        assert [p.active_version_id for p in tenant_ptrs] == ["v3"]

    @pytest.mark.asyncio
    async def test_update_pointer(self, sql_client):
        pointer = await sql_client.create_pointer(ActivePromptPointer("gpt-4o", "v1"))
        pointer.active_version_id = "v2"
        pointer.pointer_version = 2
        await sql_client.update_pointer(pointer)
        latest = await sql_client.list_pointers("gpt-4o", "GLOBAL", None)
        assert latest[0].active_version_id == "v2"

    @pytest.mark.asyncio
    async def test_breaker_upsert(self, sql_client):
        await sql_client.update_breaker_state(CircuitBreakerState("gpt-4o", disabled=True, reason="ops"))
        state = await sql_client.get_breaker_state("gpt-4o")
        assert state.disabled is True
        assert state.reason == "ops"

        state.disabled = False
        await sql_client.update_breaker_state(state)
        assert [s.disabled for s in await sql_client.list_breaker_states()] == [False]

    @pytest.mark.asyncio
    async def test_audit_logs_since(self, sql_client):
        await sql_client.create_audit_log(AuditLogEntry("gpt-4o", "CREATE", timestamp=T0 - timedelta(hours=1)))
        await sql_client.create_audit_log(AuditLogEntry("gpt-4o", "DEPLOY", details={"v": 2}, timestamp=T0))
        await sql_client.create_audit_log(AuditLogEntry("other", "DEPLOY", timestamp=T0))
        entries = await sql_client.list_audit_logs("gpt-4o", since=T0 - timedelta(minutes=5))
        assert [e.operation for e in entries] == ["DEPLOY"]
        assert entries[0].details == {"v": 2}


class TestProgress:
    """Tests for progress rows."""

    @pytest.mark.asyncio
    async def test_filters(self, sql_client):
        for i, (step, status) in enumerate([("a", "STARTED"), ("out", "STARTED"), ("out", "COMPLETED")]):
            await sql_client.create_progress(ProgressRecord(
                "wf1", "u1", event_time=T0 + timedelta(seconds=i), conversation_id="c1",
                step_name=step, status=status, metadata={"i": i},
            ))

        assert len(await sql_client.list_progress("wf1")) == 3
        done = await sql_client.list_progress("wf1", step_name="out", status="COMPLETED", limit=1)
        assert [r.metadata for r in done] == [{"i": 2}]
        assert await sql_client.list_progress("wf1", conversation_id="c2") == []
