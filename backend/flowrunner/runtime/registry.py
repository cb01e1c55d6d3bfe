"""Node registry — maps node type names and aliases to handlers.

A handler is ``async def handler(state, ctx) -> NodeResult``.  ``kind``
tells the graph builder how to wire the node's outgoing edges; the optional
``compile`` hook validates a node's config once at build time and its return
value is handed to the handler as ``ctx.compiled``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Literal

if TYPE_CHECKING:
    from flowrunner.runtime.context import NodeContext
    from flowrunner.runtime.results import NodeResult
    from flowrunner.workflow.definition import NodeDef, WorkflowDefinition

NodeKind = Literal["plain", "router", "slot_tracker", "terminal"]
NodeHandler = Callable[[dict[str, Any], "NodeContext"], Awaitable["NodeResult"]]
CompileHook = Callable[["NodeDef", "WorkflowDefinition"], Any]


@dataclass(frozen=True)
class NodeSpec:
    type_name: str
    handler: NodeHandler
    kind: NodeKind = "plain"
    compile: CompileHook | None = None


class NodeRegistry:
    def __init__(self):
        self._specs: dict[str, NodeSpec] = {}

    def register(
        self,
        type_name: str,
        handler: NodeHandler,
        *,
        aliases: tuple[str, ...] = (),
        kind: NodeKind = "plain",
        compile: CompileHook | None = None,
    ) -> NodeSpec:
        spec = NodeSpec(type_name=type_name, handler=handler, kind=kind, compile=compile)
        for name in (type_name, *aliases):
            self._specs[name] = spec
        return spec

    def resolve(self, type_name: str) -> NodeSpec | None:
        return self._specs.get(type_name)

    def __contains__(self, type_name: object) -> bool:
        return type_name in self._specs

    def types(self) -> list[str]:
        return sorted(self._specs)


def default_registry() -> NodeRegistry:
    """A fresh registry holding the built-in node types."""
    from flowrunner.nodes import (
        conversation_memory,
        format,
        intent_classifier,
        model_invoke,
        router,
        slot_tracker,
        stream_to_client,
    )

    registry = NodeRegistry()
    registry.register("ModelInvoke", model_invoke.model_invoke, aliases=("ai_model",))
    registry.register(
        "StreamToClient", stream_to_client.stream_to_client,
        aliases=("stream_to_client",), kind="terminal",
    )
    registry.register(
        "ConversationMemory", conversation_memory.conversation_memory,
        aliases=("conversation_memory",),
    )
    registry.register("Format", format.format_node, aliases=("format",))
    registry.register(
        "Router", router.router,
        aliases=("router",), kind="router", compile=router.compile_router,
    )
    registry.register(
        "SlotTracker", slot_tracker.slot_tracker,
        aliases=("slot_tracker",), kind="slot_tracker", compile=slot_tracker.compile_slot_tracker,
    )
    registry.register(
        "IntentClassifier", intent_classifier.intent_classifier,
        aliases=("intent_classifier",),
    )
    return registry
