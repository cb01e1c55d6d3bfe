"""Exception hierarchy shared by the graph runtime and the prompt engine."""

from __future__ import annotations

from typing import Any


class FlowRunnerError(Exception):
    pass


class WorkflowConfigError(FlowRunnerError):
    """Broken workflow definition (unknown node type, missing entry, bad config).

    Fatal and never retried.
    """


class NodeExecutionError(FlowRunnerError):
    """A node handler failed; carries the failing node id."""

    def __init__(self, node_id: str, message: str):
        super().__init__(f"Node '{node_id}' failed: {message}")
        self.node_id = node_id


class PromptEngineError(FlowRunnerError):
    """Typed prompt-engine failure.

    ``code`` is a stable machine-readable identifier such as
    ``CIRCUIT_BREAKER_OPEN`` or ``INTEGRITY_VIOLATION``.
    """

    def __init__(self, code: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class TokenBudgetError(PromptEngineError):
    pass


class InterpolationError(PromptEngineError):
    pass


class LLMCallError(FlowRunnerError):
    pass


class LLMCancelledError(LLMCallError):
    """The model call was cancelled; any partial output is discarded."""
