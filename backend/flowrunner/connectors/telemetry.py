"""Progress/telemetry sinks.

A sink receives fire-and-forget :class:`ProgressEvent` records.  Callers go
through :func:`emit`, which swallows sink failures: a broken progress channel
never breaks a run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from flowrunner.connectors.data_client import DataClient
from flowrunner.connectors.records import ProgressRecord, utcnow
from flowrunner.prompt_engine.security import PIIScrubber
from flowrunner.utils.redaction import redact_for_logs

logger = logging.getLogger("flowrunner.connectors.telemetry")

STREAMING_STATUSES = frozenset({"STREAMING", "token"})


@dataclass
class ProgressEvent:
    workflow_id: str
    status: str  # STARTED | STREAMING | COMPLETED | ERROR | node_started | ...
    step_name: str | None = None
    message: str | None = None
    conversation_id: str | None = None
    request_id: str | None = None
    owners: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    event_time: datetime | None = None


@runtime_checkable
class TelemetrySink(Protocol):
    async def record(self, event: ProgressEvent) -> None: ...


class NullTelemetrySink:
    async def record(self, event: ProgressEvent) -> None:
        return None


class LoggingTelemetrySink:
    """Writes events to the log with sensitive keys and PII redacted."""

    def __init__(self, scrubber: PIIScrubber | None = None, level: int = logging.INFO):
        self.scrubber = scrubber or PIIScrubber()
        self.level = level

    async def record(self, event: ProgressEvent) -> None:
        logger.log(
            self.level,
            "progress workflow=%s step=%s status=%s message=%s metadata=%s",
            event.workflow_id,
            event.step_name,
            event.status,
            self.scrubber.scrub_for_logs(event.message or ""),
            redact_for_logs(event.metadata, scrubber=self.scrubber),
        )


class DataClientProgressSink:
    """Persists one progress row per distinct owner.

    ``event_time`` is always set and the metadata carries the conversation
    and request ids.  With ``persist=False`` per-chunk streaming events are
    dropped.
    """

    def __init__(self, data_client: DataClient, persist_streaming: bool = True):
        self.data_client = data_client
        self.persist_streaming = persist_streaming

    async def record(self, event: ProgressEvent) -> None:
        if not self.persist_streaming and event.status in STREAMING_STATUSES:
            return

        owners = list(dict.fromkeys(o.strip() for o in event.owners if isinstance(o, str) and o.strip()))
        if not owners:
            logger.warning(
                "No valid owners for progress event workflow=%s step=%s status=%s",
                event.workflow_id, event.step_name, event.status,
            )
            return

        event_time = event.event_time or utcnow()
        metadata = {
            **event.metadata,
            "conversationId": event.conversation_id,
            "requestId": event.request_id or event.metadata.get("requestId"),
        }
        for owner in owners:
            try:
                await self.data_client.create_progress(
                    ProgressRecord(
                        workflow_id=event.workflow_id,
                        owner=owner,
                        event_time=event_time,
                        conversation_id=event.conversation_id,
                        step_name=event.step_name,
                        status=event.status,
                        message=event.message,
                        metadata=metadata,
                    )
                )
            except Exception as exc:
                logger.error(
                    "Failed to write progress for owner %s (workflow=%s status=%s): %s",
                    owner, event.workflow_id, event.status, exc,
                )


class CompositeTelemetrySink:
    def __init__(self, *sinks: TelemetrySink):
        self.sinks = sinks

    async def record(self, event: ProgressEvent) -> None:
        for sink in self.sinks:
            await emit(sink, event)


async def emit(sink: TelemetrySink | None, event: ProgressEvent) -> None:
    """Send *event* to *sink*; failures are logged, never raised."""
    if sink is None:
        return
    try:
        await sink.record(event)
    except Exception as exc:
        logger.warning("Telemetry sink failed for %s/%s: %s", event.workflow_id, event.status, exc)
