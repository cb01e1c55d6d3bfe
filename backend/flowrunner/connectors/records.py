"""Plain records exchanged with the data-access collaborator."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


GLOBAL_SCOPE = "GLOBAL"


@dataclass
class Conversation:
    id: str
    user_id: str = ""
    workflow_id: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class MemoryRecord:
    conversation_id: str
    role: str  # user | assistant | system | tool
    content: str
    workflow_id: str = ""
    timestamp: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)


@dataclass
class PromptVersion:
    """Immutable, content-addressed prompt body.

    Exactly one of ``content`` (inline) or ``storage_key`` (overflow blob) is set
    for stored versions.
    """

    content_hash: str
    model_id: str
    content: str | None = None
    storage_key: str | None = None
    workflow_id: str | None = None
    tenant_id: str | None = None
    size_bytes: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    created_by: str = "SYSTEM"
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)


@dataclass
class ActivePromptPointer:
    model_id: str
    active_version_id: str
    scope: str = GLOBAL_SCOPE  # workflow id or "GLOBAL"
    tenant_id: str | None = None
    pointer_version: int = 1
    updated_by: str = "SYSTEM"
    updated_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)


@dataclass
class CircuitBreakerState:
    model_id: str
    disabled: bool = False
    reason: str | None = None
    error_threshold: float = 0.05
    time_window: int = 300  # seconds
    min_requests: int = 10
    last_tripped: datetime | None = None
    updated_by: str = "SYSTEM"
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class AuditLogEntry:
    model_id: str
    operation: str  # CREATE | DEPLOY | ROLLBACK | UPDATE | CIRCUIT_OPEN | CIRCUIT_CLOSE
    reason: str = ""
    actor: str = "SYSTEM"
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)


@dataclass
class ProgressRecord:
    workflow_id: str
    owner: str
    event_time: datetime
    conversation_id: str | None = None
    step_name: str | None = None
    status: str | None = None
    message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
