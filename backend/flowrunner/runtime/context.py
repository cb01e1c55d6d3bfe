"""Per-node execution context and the shared services behind it."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from flowrunner.connectors.data_client import DataClient
from flowrunner.connectors.llm_client import CancellationToken
from flowrunner.connectors.telemetry import NullTelemetrySink, ProgressEvent, TelemetrySink, emit
from flowrunner.prompt_engine.engine import PromptEngine
from flowrunner.prompt_engine.memory import MemoryLoader
from flowrunner.prompt_engine.security import PIIScrubber
from flowrunner.utils.metrics import MetricsCollector


@dataclass
class Services:
    """Collaborators shared by every node of a run.

    ``llm_client`` is anything with ``invoke(...)`` and ``stream(...)``
    coroutines shaped like :class:`flowrunner.connectors.llm_client.LLMClient`.
    """

    data_client: DataClient
    prompt_engine: PromptEngine | None = None
    llm_client: Any = None
    memory_loader: MemoryLoader | None = None
    telemetry: TelemetrySink = field(default_factory=NullTelemetrySink)
    metrics: MetricsCollector = field(default_factory=MetricsCollector)
    scrubber: PIIScrubber = field(default_factory=PIIScrubber)
    default_model: str = "us.anthropic.claude-3-7-sonnet-20250219-v1:0"
    default_memory_size: int = 10
    tracer: Any = None
    # Per-run; set by run_graph(cancel_token=...)
    cancel_token: CancellationToken | None = None


@dataclass
class NodeContext:
    node_id: str
    node_type: str
    config: dict[str, Any]
    services: Services
    # Whatever the registry's compile hook returned for this node
    compiled: Any = None

    @property
    def data_client(self) -> DataClient:
        return self.services.data_client

    @property
    def prompt_engine(self) -> PromptEngine | None:
        return self.services.prompt_engine

    @property
    def llm_client(self) -> Any:
        return self.services.llm_client

    @property
    def telemetry(self) -> TelemetrySink:
        return self.services.telemetry

    async def progress(
        self,
        state: dict[str, Any],
        status: str,
        message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Best-effort progress event stamped with this node and the run ids."""
        await emit(
            self.services.telemetry,
            ProgressEvent(
                workflow_id=state.get("workflow_id", ""),
                status=status,
                step_name=self.node_id,
                message=message,
                conversation_id=state.get("conversation_id"),
                request_id=state.get("request_id"),
                owners=list(state.get("owners_for_progress") or []),
                metadata={"nodeType": self.node_type, **(metadata or {})},
            ),
        )
