"""Data-access collaborator: protocol plus an in-process implementation.

Every subsystem that persists anything (slot state, memory, prompt versions,
pointers, circuit-breaker state, audit log, progress) goes through a
``DataClient``.  ``InMemoryDataClient`` backs tests and local runs;
:mod:`flowrunner.connectors.sql_data_client` is the SQLAlchemy-backed one.
"""

from __future__ import annotations

import asyncio
import copy
from datetime import datetime
from typing import Protocol, runtime_checkable

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


@runtime_checkable
class DataClient(Protocol):
    # ── Conversations & memory ─────────────────────────────────
    async def get_conversation(self, conversation_id: str) -> Conversation | None: ...
    async def create_conversation(self, conversation: Conversation) -> Conversation: ...
    async def update_conversation(self, conversation: Conversation) -> Conversation: ...
    async def list_memories(self, conversation_id: str) -> list[MemoryRecord]: ...
    async def create_memory(self, record: MemoryRecord) -> MemoryRecord: ...

    # ── Prompt versions & pointers ─────────────────────────────
    async def get_prompt_version(self, version_id: str) -> PromptVersion | None: ...
    async def find_prompt_versions_by_hash(self, content_hash: str, limit: int = 1) -> list[PromptVersion]: ...
    async def create_prompt_version(self, version: PromptVersion) -> PromptVersion: ...
    async def list_pointers(
        self, model_id: str, scope: str, tenant_id: str | None, limit: int = 1
    ) -> list[ActivePromptPointer]: ...
    async def create_pointer(self, pointer: ActivePromptPointer) -> ActivePromptPointer: ...
    async def update_pointer(self, pointer: ActivePromptPointer) -> ActivePromptPointer: ...

    # ── Circuit breaker & audit ────────────────────────────────
    async def get_breaker_state(self, model_id: str) -> CircuitBreakerState | None: ...
    async def create_breaker_state(self, state: CircuitBreakerState) -> CircuitBreakerState: ...
    async def update_breaker_state(self, state: CircuitBreakerState) -> CircuitBreakerState: ...
    async def list_breaker_states(self) -> list[CircuitBreakerState]: ...
    async def create_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry: ...
    async def list_audit_logs(self, model_id: str, since: datetime) -> list[AuditLogEntry]: ...

    # ── Progress ───────────────────────────────────────────────
    async def create_progress(self, record: ProgressRecord) -> ProgressRecord: ...
    async def list_progress(
        self,
        workflow_id: str,
        conversation_id: str | None = None,
        step_name: str | None = None,
        status: str | None = None,
        limit: int | None = None,
    ) -> list[ProgressRecord]: ...


class InMemoryDataClient:
    """Dict-backed ``DataClient``.  Records are copied on the way in and out."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self.conversations: dict[str, Conversation] = {}
        self.memories: list[MemoryRecord] = []
        self.prompt_versions: dict[str, PromptVersion] = {}
        self.pointers: dict[str, ActivePromptPointer] = {}
        self.breaker_states: dict[str, CircuitBreakerState] = {}
        self.audit_logs: list[AuditLogEntry] = []
        self.progress: list[ProgressRecord] = []

    # ── Conversations & memory ─────────────────────────────────

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        return copy.deepcopy(self.conversations.get(conversation_id))

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        async with self._lock:
            if conversation.id in self.conversations:
                raise ValueError(f"Conversation {conversation.id} already exists")
            self.conversations[conversation.id] = copy.deepcopy(conversation)
        return copy.deepcopy(conversation)

    async def update_conversation(self, conversation: Conversation) -> Conversation:
        async with self._lock:
            if conversation.id not in self.conversations:
                raise KeyError(f"Conversation {conversation.id} not found")
            conversation.updated_at = utcnow()
            self.conversations[conversation.id] = copy.deepcopy(conversation)
        return copy.deepcopy(conversation)

    async def list_memories(self, conversation_id: str) -> list[MemoryRecord]:
        return [copy.deepcopy(m) for m in self.memories if m.conversation_id == conversation_id]

    async def create_memory(self, record: MemoryRecord) -> MemoryRecord:
        self.memories.append(copy.deepcopy(record))
        return copy.deepcopy(record)

    # ── Prompt versions & pointers ─────────────────────────────

    async def get_prompt_version(self, version_id: str) -> PromptVersion | None:
        return copy.deepcopy(self.prompt_versions.get(version_id))

    async def find_prompt_versions_by_hash(self, content_hash: str, limit: int = 1) -> list[PromptVersion]:
        found = [v for v in self.prompt_versions.values() if v.content_hash == content_hash]
        return [copy.deepcopy(v) for v in found[:limit]]

    async def create_prompt_version(self, version: PromptVersion) -> PromptVersion:
        async with self._lock:
            if version.id in self.prompt_versions:
                raise ValueError(f"Prompt version {version.id} already exists")
            self.prompt_versions[version.id] = copy.deepcopy(version)
        return copy.deepcopy(version)

    async def list_pointers(
        self, model_id: str, scope: str, tenant_id: str | None, limit: int = 1
    ) -> list[ActivePromptPointer]:
        found = [
            p for p in self.pointers.values()
            if p.model_id == model_id and p.scope == scope and p.tenant_id == tenant_id
        ]
        found.sort(key=lambda p: p.pointer_version, reverse=True)
        return [copy.deepcopy(p) for p in found[:limit]]

    async def create_pointer(self, pointer: ActivePromptPointer) -> ActivePromptPointer:
        self.pointers[pointer.id] = copy.deepcopy(pointer)
        return copy.deepcopy(pointer)

    async def update_pointer(self, pointer: ActivePromptPointer) -> ActivePromptPointer:
        async with self._lock:
            if pointer.id not in self.pointers:
                raise KeyError(f"Pointer {pointer.id} not found")
            pointer.updated_at = utcnow()
            self.pointers[pointer.id] = copy.deepcopy(pointer)
        return copy.deepcopy(pointer)

    # ── Circuit breaker & audit ────────────────────────────────

    async def get_breaker_state(self, model_id: str) -> CircuitBreakerState | None:
        return copy.deepcopy(self.breaker_states.get(model_id))

    async def create_breaker_state(self, state: CircuitBreakerState) -> CircuitBreakerState:
        self.breaker_states[state.model_id] = copy.deepcopy(state)
        return copy.deepcopy(state)

    async def update_breaker_state(self, state: CircuitBreakerState) -> CircuitBreakerState:
        # Last write wins.
        state.updated_at = utcnow()
        self.breaker_states[state.model_id] = copy.deepcopy(state)
        return copy.deepcopy(state)

    async def list_breaker_states(self) -> list[CircuitBreakerState]:
        return [copy.deepcopy(s) for s in self.breaker_states.values()]

    async def create_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry:
        self.audit_logs.append(copy.deepcopy(entry))
        return copy.deepcopy(entry)

    async def list_audit_logs(self, model_id: str, since: datetime) -> list[AuditLogEntry]:
        return [
            copy.deepcopy(e) for e in self.audit_logs
            if e.model_id == model_id and e.timestamp >= since
        ]

    # ── Progress ───────────────────────────────────────────────

    async def create_progress(self, record: ProgressRecord) -> ProgressRecord:
        self.progress.append(copy.deepcopy(record))
        return copy.deepcopy(record)

    async def list_progress(
        self,
        workflow_id: str,
        conversation_id: str | None = None,
        step_name: str | None = None,
        status: str | None = None,
        limit: int | None = None,
    ) -> list[ProgressRecord]:
        found = [
            r for r in self.progress
            if r.workflow_id == workflow_id
            and (conversation_id is None or r.conversation_id == conversation_id)
            and (step_name is None or r.step_name == step_name)
            and (status is None or r.status == status)
        ]
        if limit is not None:
            found = found[:limit]
        return [copy.deepcopy(r) for r in found]
