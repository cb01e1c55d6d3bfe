"""Run a workflow once and wire default runtime services."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Any

from flowrunner.config import Settings
from flowrunner.connectors.blob_store import BlobStore, LocalFileBlobStore
from flowrunner.connectors.data_client import DataClient
from flowrunner.connectors.llm_client import CancellationToken, LLMClient
from flowrunner.connectors.records import new_id
from flowrunner.connectors.telemetry import (
    CompositeTelemetrySink,
    DataClientProgressSink,
    LoggingTelemetrySink,
    TelemetrySink,
)
from flowrunner.prompt_engine.cache import TTLCache
from flowrunner.prompt_engine.circuit_breaker import BreakerDefaults, CircuitBreaker
from flowrunner.prompt_engine.content_store import ContentStore
from flowrunner.prompt_engine.engine import PromptEngine
from flowrunner.prompt_engine.memory import MemoryLoader
from flowrunner.prompt_engine.pointer_resolver import PointerResolver
from flowrunner.prompt_engine.security import PIIScrubber
from flowrunner.prompt_engine.token_budget import TokenBudgetEnforcer
from flowrunner.runtime.context import Services
from flowrunner.runtime.graph_builder import build_graph
from flowrunner.runtime.registry import NodeRegistry, default_registry
from flowrunner.runtime.slot_state import load_slot_state, slot_state_patch
from flowrunner.runtime.state import RunState
from flowrunner.utils.logger import ctx_conversation_id, ctx_correlation_id, ctx_workflow_id
from flowrunner.utils.metrics import MetricsCollector, record_workflow_result
from flowrunner.workflow.definition import WorkflowDefinition, parse_workflow

logger = logging.getLogger("flowrunner.runtime.executor")

DEFAULT_RECURSION_LIMIT = 50


@dataclass
class RunResult:
    status: str  # completed | halted
    state: dict[str, Any]
    awaiting_input_for: str | None = None


async def run_graph(
    definition: WorkflowDefinition | dict[str, Any],
    initial_state: RunState | dict[str, Any],
    registry: NodeRegistry | None,
    services: Services,
    recursion_limit: int = DEFAULT_RECURSION_LIMIT,
    cancel_token: CancellationToken | None = None,
) -> RunResult:
    """Execute ``definition`` once from its entry point.

    Persisted slot state for the conversation is merged into the initial
    state first.  Failures are counted and re-raised.  ``cancel_token``
    aborts an in-flight streamed model call.
    """
    definition = parse_workflow(definition)
    registry = registry or default_registry()
    if cancel_token is not None:
        services = replace(services, cancel_token=cancel_token)
    state: dict[str, Any] = dict(initial_state)
    state.setdefault("workflow_id", definition.id)
    state.setdefault("correlation_id", new_id())

    tokens = (
        ctx_workflow_id.set(state.get("workflow_id")),
        ctx_conversation_id.set(state.get("conversation_id")),
        ctx_correlation_id.set(state.get("correlation_id")),
    )
    t0 = time.monotonic()
    try:
        conversation_id = state.get("conversation_id")
        if conversation_id:
            stored = await load_slot_state(services.data_client, conversation_id)
            if stored:
                logger.info(
                    "Rehydrated %d slot value(s) for conversation %s",
                    len(stored.get("slotValues") or {}), conversation_id,
                )
                state.update(slot_state_patch(stored))

        compiled = build_graph(definition, registry, services).compile()
        final = await compiled.ainvoke(state, config={"recursion_limit": recursion_limit})
    except Exception as exc:
        record_workflow_result(services.metrics, "failed", time.monotonic() - t0)
        logger.error("Workflow '%s' failed: %s", definition.id, exc)
        raise
    finally:
        ctx_correlation_id.reset(tokens[2])
        ctx_conversation_id.reset(tokens[1])
        ctx_workflow_id.reset(tokens[0])

    halted = bool(final.get("halted"))
    record_workflow_result(services.metrics, "halted" if halted else "succeeded", time.monotonic() - t0)
    result = RunResult(
        status="halted" if halted else "completed",
        state=dict(final),
        awaiting_input_for=final.get("awaiting_input_for") if halted else None,
    )
    logger.info(
        "Workflow '%s' %s (awaiting=%s)", definition.id, result.status, result.awaiting_input_for
    )
    return result


def build_runtime(
    settings: Settings,
    data_client: DataClient | None = None,
    blob_store: BlobStore | None = None,
    llm_client: Any = None,
    telemetry: TelemetrySink | None = None,
    metrics: MetricsCollector | None = None,
) -> Services:
    """Wire the default services from ``settings``.

    Without an explicit ``data_client`` a :class:`SqlDataClient` on
    ``FLOW_DB_URL`` is used; call :func:`flowrunner.db.engine.init_db`
    before the first run.  The LLM client is only built when an API key is
    configured.
    """
    metrics = metrics or MetricsCollector()
    if data_client is None:
        from flowrunner.connectors.sql_data_client import SqlDataClient
        from flowrunner.db.engine import make_engine, make_session_factory

        data_client = SqlDataClient(make_session_factory(make_engine(settings)))
    blob_store = blob_store or LocalFileBlobStore(settings.BLOB_STORE_DIR)
    scrubber = PIIScrubber(metrics=metrics)

    if llm_client is None and settings.LLM_API_KEY:
        llm_client = LLMClient(settings)

    if telemetry is None:
        telemetry = CompositeTelemetrySink(
            LoggingTelemetrySink(scrubber),
            DataClientProgressSink(data_client, persist_streaming=settings.PROGRESS_PERSIST_STREAMING),
        )

    memory_loader = MemoryLoader(
        data_client,
        cache=TTLCache(settings.MEMORY_CACHE_TTL_SECONDS, settings.MEMORY_CACHE_MAX_SIZE),
        metrics=metrics,
    )
    prompt_engine = PromptEngine(
        pointer_resolver=PointerResolver(
            data_client,
            cache=TTLCache(settings.POINTER_CACHE_TTL_SECONDS, settings.POINTER_CACHE_MAX_SIZE),
            metrics=metrics,
        ),
        content_store=ContentStore(
            data_client, blob_store, inline_max_bytes=settings.PROMPT_INLINE_MAX_BYTES, metrics=metrics
        ),
        memory_loader=memory_loader,
        circuit_breaker=CircuitBreaker(
            data_client,
            defaults=BreakerDefaults(
                error_threshold=settings.CIRCUIT_ERROR_THRESHOLD,
                time_window=settings.CIRCUIT_TIME_WINDOW_SECONDS,
                min_requests=settings.CIRCUIT_MIN_REQUESTS,
            ),
            metrics=metrics,
        ),
        budget=TokenBudgetEnforcer(metrics=metrics),
        scrubber=scrubber,
        metrics=metrics,
    )
    return Services(
        data_client=data_client,
        prompt_engine=prompt_engine,
        llm_client=llm_client,
        memory_loader=memory_loader,
        telemetry=telemetry,
        metrics=metrics,
        scrubber=scrubber,
        default_model=settings.LLM_DEFAULT_MODEL,
        default_memory_size=settings.DEFAULT_MEMORY_SIZE,
    )
