"""SQLAlchemy-backed ``DataClient``.

Each call runs in its own session and commits on success.  JSON payloads are
stored as TEXT; SQLite hands datetimes back naive, so they are re-tagged as
UTC on the way out.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flowrunner.connectors.records import (
    ActivePromptPointer,
    AuditLogEntry,
    CircuitBreakerState,
    Conversation,
    MemoryRecord,
    ProgressRecord,
    PromptVersion,
    utcnow,
)
from flowrunner.db.models import (
    AuditLogRow,
    CircuitBreakerRow,
    ConversationRow,
    MemoryRow,
    PromptPointerRow,
    PromptVersionRow,
    WorkflowProgressRow,
)

logger = logging.getLogger("flowrunner.connectors.sql_data_client")


def _dumps(value: dict[str, Any] | None) -> str | None:
    return json.dumps(value, default=str) if value else None


def _loads(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed JSON column value")
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _conversation(row: ConversationRow) -> Conversation:
    return Conversation(
        id=row.id, user_id=row.user_id, workflow_id=row.workflow_id,
        metadata=_loads(row.metadata_json),
        created_at=_aware(row.created_at), updated_at=_aware(row.updated_at),
    )


def _memory(row: MemoryRow) -> MemoryRecord:
    return MemoryRecord(
        id=row.id, conversation_id=row.conversation_id, workflow_id=row.workflow_id,
        role=row.role, content=row.content, timestamp=_aware(row.timestamp),
    )


def _version(row: PromptVersionRow) -> PromptVersion:
    return PromptVersion(
        id=row.id, content_hash=row.content_hash, model_id=row.model_id,
        content=row.content, storage_key=row.storage_key,
        workflow_id=row.workflow_id, tenant_id=row.tenant_id, size_bytes=row.size_bytes,
        metadata=_loads(row.metadata_json), created_by=row.created_by,
        created_at=_aware(row.created_at),
    )


def _pointer(row: PromptPointerRow) -> ActivePromptPointer:
    return ActivePromptPointer(
        id=row.id, tenant_id=row.tenant_id, scope=row.scope, model_id=row.model_id,
        active_version_id=row.active_version_id, pointer_version=row.pointer_version,
        updated_by=row.updated_by, updated_at=_aware(row.updated_at),
    )


def _breaker(row: CircuitBreakerRow) -> CircuitBreakerState:
    return CircuitBreakerState(
        model_id=row.model_id, disabled=row.disabled, reason=row.reason,
        error_threshold=row.error_threshold, time_window=row.time_window,
        min_requests=row.min_requests, last_tripped=_aware(row.last_tripped),
        updated_by=row.updated_by, updated_at=_aware(row.updated_at),
    )


def _audit(row: AuditLogRow) -> AuditLogEntry:
    return AuditLogEntry(
        id=row.id, model_id=row.model_id, operation=row.operation, reason=row.reason,
        actor=row.actor, details=_loads(row.details_json), timestamp=_aware(row.timestamp),
    )


def _progress(row: WorkflowProgressRow) -> ProgressRecord:
    return ProgressRecord(
        id=row.id, workflow_id=row.workflow_id, owner=row.owner, event_time=_aware(row.event_time),
        conversation_id=row.conversation_id, step_name=row.step_name, status=row.status,
        message=row.message, metadata=_loads(row.metadata_json),
    )


class SqlDataClient:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ── Conversations & memory ─────────────────────────────────

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        async with self._session_factory() as db:
            row = await db.get(ConversationRow, conversation_id)
            return _conversation(row) if row else None

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        async with self._session_factory() as db:
            row = ConversationRow(
                id=conversation.id, user_id=conversation.user_id, workflow_id=conversation.workflow_id,
                metadata_json=_dumps(conversation.metadata),
                created_at=conversation.created_at, updated_at=conversation.updated_at,
            )
            db.add(row)
            await db.commit()
            return _conversation(row)

    async def update_conversation(self, conversation: Conversation) -> Conversation:
        async with self._session_factory() as db:
            row = await db.get(ConversationRow, conversation.id)
            if row is None:
                raise KeyError(f"Conversation {conversation.id} not found")
            row.user_id = conversation.user_id
            row.workflow_id = conversation.workflow_id
            row.metadata_json = _dumps(conversation.metadata)
            row.updated_at = utcnow()
            await db.commit()
            return _conversation(row)

    async def list_memories(self, conversation_id: str) -> list[MemoryRecord]:
        async with self._session_factory() as db:
            stmt = (
                select(MemoryRow)
                .where(MemoryRow.conversation_id == conversation_id)
                .order_by(MemoryRow.timestamp)
            )
            return [_memory(r) for r in (await db.execute(stmt)).scalars()]

    async def create_memory(self, record: MemoryRecord) -> MemoryRecord:
        async with self._session_factory() as db:
            row = MemoryRow(
                id=record.id, conversation_id=record.conversation_id, workflow_id=record.workflow_id,
                role=record.role, content=record.content, timestamp=record.timestamp,
            )
            db.add(row)
            await db.commit()
            return _memory(row)

    # ── Prompt versions & pointers ─────────────────────────────

    async def get_prompt_version(self, version_id: str) -> PromptVersion | None:
        async with self._session_factory() as db:
            row = await db.get(PromptVersionRow, version_id)
            return _version(row) if row else None

    async def find_prompt_versions_by_hash(self, content_hash: str, limit: int = 1) -> list[PromptVersion]:
        async with self._session_factory() as db:
            stmt = select(PromptVersionRow).where(PromptVersionRow.content_hash == content_hash).limit(limit)
            return [_version(r) for r in (await db.execute(stmt)).scalars()]

    async def create_prompt_version(self, version: PromptVersion) -> PromptVersion:
        async with self._session_factory() as db:
            row = PromptVersionRow(
                id=version.id, content_hash=version.content_hash, model_id=version.model_id,
                content=version.content, storage_key=version.storage_key,
                workflow_id=version.workflow_id, tenant_id=version.tenant_id,
                size_bytes=version.size_bytes, metadata_json=_dumps(version.metadata),
                created_by=version.created_by, created_at=version.created_at,
            )
            db.add(row)
            await db.commit()
            return _version(row)

    async def list_pointers(
        self, model_id: str, scope: str, tenant_id: str | None, limit: int = 1
    ) -> list[ActivePromptPointer]:
        async with self._session_factory() as db:
            stmt = select(PromptPointerRow).where(
                PromptPointerRow.model_id == model_id,
                PromptPointerRow.scope == scope,
            )
            if tenant_id is None:
                stmt = stmt.where(PromptPointerRow.tenant_id.is_(None))
            else:
                stmt = stmt.where(PromptPointerRow.tenant_id == tenant_id)
            stmt = stmt.order_by(PromptPointerRow.pointer_version.desc()).limit(limit)
            return [_pointer(r) for r in (await db.execute(stmt)).scalars()]

    async def create_pointer(self, pointer: ActivePromptPointer) -> ActivePromptPointer:
        async with self._session_factory() as db:
            row = PromptPointerRow(
                id=pointer.id, tenant_id=pointer.tenant_id, scope=pointer.scope,
                model_id=pointer.model_id, active_version_id=pointer.active_version_id,
                pointer_version=pointer.pointer_version, updated_by=pointer.updated_by,
                updated_at=pointer.updated_at,
            )
            db.add(row)
            await db.commit()
            return _pointer(row)

    async def update_pointer(self, pointer: ActivePromptPointer) -> ActivePromptPointer:
        async with self._session_factory() as db:
            row = await db.get(PromptPointerRow, pointer.id)
            if row is None:
                raise KeyError(f"Pointer {pointer.id} not found")
            row.active_version_id = pointer.active_version_id
            row.pointer_version = pointer.pointer_version
            row.updated_by = pointer.updated_by
            row.updated_at = utcnow()
            await db.commit()
            return _pointer(row)

    # ── Circuit breaker & audit ────────────────────────────────

    async def get_breaker_state(self, model_id: str) -> CircuitBreakerState | None:
        async with self._session_factory() as db:
            row = await db.get(CircuitBreakerRow, model_id)
            return _breaker(row) if row else None

    async def create_breaker_state(self, state: CircuitBreakerState) -> CircuitBreakerState:
        async with self._session_factory() as db:
            row = CircuitBreakerRow(model_id=state.model_id)
            self._apply_breaker(row, state)
            db.add(row)
            await db.commit()
            return _breaker(row)

    async def update_breaker_state(self, state: CircuitBreakerState) -> CircuitBreakerState:
        # Last write wins; a missing row is created.
        async with self._session_factory() as db:
            row = await db.get(CircuitBreakerRow, state.model_id)
            if row is None:
                row = CircuitBreakerRow(model_id=state.model_id)
                db.add(row)
            self._apply_breaker(row, state)
            row.updated_at = utcnow()
            await db.commit()
            return _breaker(row)

    @staticmethod
    def _apply_breaker(row: CircuitBreakerRow, state: CircuitBreakerState) -> None:
        row.disabled = state.disabled
        row.reason = state.reason
        row.error_threshold = state.error_threshold
        row.time_window = state.time_window
        row.min_requests = state.min_requests
        row.last_tripped = state.last_tripped
        row.updated_by = state.updated_by
        row.updated_at = state.updated_at

    async def list_breaker_states(self) -> list[CircuitBreakerState]:
        async with self._session_factory() as db:
            return [_breaker(r) for r in (await db.execute(select(CircuitBreakerRow))).scalars()]

    async def create_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry:
        async with self._session_factory() as db:
            row = AuditLogRow(
                id=entry.id, model_id=entry.model_id, operation=entry.operation,
                reason=entry.reason, actor=entry.actor, details_json=_dumps(entry.details),
                timestamp=entry.timestamp,
            )
            db.add(row)
            await db.commit()
            return _audit(row)

    async def list_audit_logs(self, model_id: str, since: datetime) -> list[AuditLogEntry]:
        async with self._session_factory() as db:
            stmt = (
                select(AuditLogRow)
                .where(AuditLogRow.model_id == model_id, AuditLogRow.timestamp >= since)
                .order_by(AuditLogRow.timestamp)
            )
            return [_audit(r) for r in (await db.execute(stmt)).scalars()]

    # ── Progress ───────────────────────────────────────────────

    async def create_progress(self, record: ProgressRecord) -> ProgressRecord:
        async with self._session_factory() as db:
            row = WorkflowProgressRow(
                id=record.id, workflow_id=record.workflow_id, owner=record.owner,
                conversation_id=record.conversation_id, step_name=record.step_name,
                status=record.status, message=record.message,
                metadata_json=_dumps(record.metadata), event_time=record.event_time,
            )
            db.add(row)
            await db.commit()
            return _progress(row)

    async def list_progress(
        self,
        workflow_id: str,
        conversation_id: str | None = None,
        step_name: str | None = None,
        status: str | None = None,
        limit: int | None = None,
    ) -> list[ProgressRecord]:
        async with self._session_factory() as db:
            stmt = select(WorkflowProgressRow).where(WorkflowProgressRow.workflow_id == workflow_id)
            if conversation_id is not None:
                stmt = stmt.where(WorkflowProgressRow.conversation_id == conversation_id)
            if step_name is not None:
                stmt = stmt.where(WorkflowProgressRow.step_name == step_name)
            if status is not None:
                stmt = stmt.where(WorkflowProgressRow.status == status)
            stmt = stmt.order_by(WorkflowProgressRow.event_time)
            if limit is not None:
                stmt = stmt.limit(limit)
            return [_progress(r) for r in (await db.execute(stmt)).scalars()]
