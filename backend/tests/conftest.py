"""Shared fixtures for backend tests."""

from __future__ import annotations

import pytest

from flowrunner.connectors.blob_store import InMemoryBlobStore
from flowrunner.connectors.data_client import InMemoryDataClient
from flowrunner.connectors.records import Conversation
from flowrunner.connectors.telemetry import ProgressEvent
from flowrunner.prompt_engine.cache import TTLCache
from flowrunner.prompt_engine.circuit_breaker import CircuitBreaker
from flowrunner.prompt_engine.content_store import ContentStore
from flowrunner.prompt_engine.engine import PromptEngine
from flowrunner.prompt_engine.memory import MemoryLoader
from flowrunner.prompt_engine.pointer_resolver import PointerResolver
from flowrunner.prompt_engine.security import PIIScrubber
from flowrunner.prompt_engine.token_budget import TokenBudgetEnforcer
from flowrunner.runtime.context import NodeContext, Services
from flowrunner.utils.metrics import MetricsCollector


# ── Fakes ───────────────────────────────────────────────────────


class FakeLLMClient:
    """Records calls and answers from a queue of canned replies."""

    def __init__(self, replies: list[str] | None = None, chunks: list[str] | None = None):
        self.replies = list(replies or [])
        self.chunks = list(chunks or [])
        self.calls: list[dict] = []
        self.stream_calls: list[dict] = []

    async def invoke(self, messages, model, temperature=0.7, max_tokens=None, json_mode=False):
        self.calls.append({
            "messages": messages,
            "model": model,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "json_mode": json_mode,
        })
        if not self.replies:
            return "ok"
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply

    async def stream(self, messages, model, temperature=0.7, max_tokens=None, cancel_token=None):
        self.stream_calls.append({"messages": messages, "model": model, "cancel_token": cancel_token})
        for chunk in self.chunks:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            yield chunk


class RecordingSink:
    """Telemetry sink that keeps every event."""

    def __init__(self):
        self.events: list[ProgressEvent] = []

    async def record(self, event: ProgressEvent) -> None:
        self.events.append(event)

    def statuses(self, step_name: str | None = None) -> list[str]:
        return [e.status for e in self.events if step_name is None or e.step_name == step_name]


# ── Collaborators ───────────────────────────────────────────────


@pytest.fixture
def data_client() -> InMemoryDataClient:
    return InMemoryDataClient()


@pytest.fixture
def blob_store() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def llm() -> FakeLLMClient:
    return FakeLLMClient(replies=["Hello there!"])


@pytest.fixture
def prompt_engine(data_client, blob_store, metrics) -> PromptEngine:
    return PromptEngine(
        pointer_resolver=PointerResolver(data_client, metrics=metrics),
        content_store=ContentStore(data_client, blob_store, metrics=metrics),
        memory_loader=MemoryLoader(data_client, metrics=metrics),
        circuit_breaker=CircuitBreaker(data_client, metrics=metrics),
        budget=TokenBudgetEnforcer(metrics=metrics),
        scrubber=PIIScrubber(metrics=metrics),
        metrics=metrics,
    )


@pytest.fixture
def services(data_client, prompt_engine, llm, sink, metrics) -> Services:
    return Services(
        data_client=data_client,
        prompt_engine=prompt_engine,
        llm_client=llm,
        memory_loader=prompt_engine.memory_loader,
        telemetry=sink,
        metrics=metrics,
        scrubber=PIIScrubber(metrics=metrics),
    )


@pytest.fixture
def make_ctx(services):
    """Build a NodeContext for calling a handler directly."""

    def _make(node_id: str = "n1", node_type: str = "Test", config: dict | None = None, compiled=None):
        return NodeContext(
            node_id=node_id,
            node_type=node_type,
            config=dict(config or {}),
            services=services,
            compiled=compiled,
        )

    return _make


@pytest.fixture
def conversation(data_client):
    """A stored conversation ``c1`` owned by ``u1``."""
    conv = Conversation(id="c1", user_id="u1", workflow_id="wf1")
    data_client.conversations[conv.id] = conv
    return conv


@pytest.fixture
def base_state() -> dict:
    return {
        "workflow_id": "wf1",
        "conversation_id": "c1",
        "user_id": "u1",
        "owners_for_progress": ["u1"],
        "user_prompt": "",
        "memory": [],
        "slot_values": {},
        "slot_attempts": {},
        "current_slot_key": "",
        "all_slots_filled": False,
        "halted": False,
    }


class ManualClock:
    """Monotonic clock stepped by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def ttl_cache(clock) -> TTLCache:
    return TTLCache(ttl_seconds=60, max_size=3, clock=clock)


# ── Workflow documents ──────────────────────────────────────────


@pytest.fixture
def chat_workflow() -> dict:
    """ModelInvoke → StreamToClient."""
    return {
        "id": "wf1",
        "name": "Chat",
        "entryPoint": "ai",
        "nodes": [
            {"id": "ai", "type": "ModelInvoke", "config": {"systemPrompt": "Be brief."}, "next": "out"},
            {"id": "out", "type": "StreamToClient"},
        ],
    }


@pytest.fixture
def routed_workflow() -> dict:
    """IntentClassifier → Router → one of two Format branches → StreamToClient."""
    return {
        "id": "wf1",
        "entryPoint": "IntentClassifier",
        "nodes": [
            {"id": "classify", "type": "IntentClassifier",
             "config": {"intents": ["billing", "support"], "fallbackIntent": "support"},
             "next": "route"},
            {"id": "route", "type": "Router", "config": {
                "routes": [
                    {"condition": 'intent === "billing"', "target": "billing_fmt", "priority": 1},
                    {"condition": 'intent === "support"', "target": "support_fmt", "priority": 2},
                ],
            }},
            {"id": "billing_fmt", "type": "Format", "config": {"template": "Billing: {{user_prompt}}"},
             "next": "out"},
            {"id": "support_fmt", "type": "Format", "config": {"template": "Support: {{user_prompt}}"},
             "next": "out"},
            {"id": "out", "type": "StreamToClient"},
        ],
    }


@pytest.fixture
def slot_workflow() -> dict:
    """SlotTracker (city, email) → Format → StreamToClient."""
    return {
        "id": "wf1",
        "entryPoint": "slots",
        "nodes": [
            {"id": "slots", "type": "SlotTracker", "config": {
                "slots": [
                    {"key": "city", "prompt": "Which city?"},
                    {"key": "email", "prompt": "Your email?", "validation": r"^[^@\s]+@[^@\s]+$",
                     "validationHint": "e.g. name@example.com", "maxRetries": 2},
                ],
            }, "next": "fmt"},
            {"id": "fmt", "type": "Format", "config": {"template": "Trip to {{input.city}}"}, "next": "out"},
            {"id": "out", "type": "StreamToClient"},
        ],
    }
