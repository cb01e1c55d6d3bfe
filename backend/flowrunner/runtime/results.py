"""Explicit node outcomes.

Every handler returns a :class:`NodeResult`: a partial state patch plus one
outcome that tells the executor what happens next.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union


@dataclass(frozen=True)
class Continue:
    """Proceed.  ``next_id`` names the chosen route for routing nodes."""

    next_id: str | None = None


@dataclass(frozen=True)
class Halt:
    """Stop the run cleanly.

    With ``awaiting_key`` the run is waiting for user input for that key and
    the consumed ``user_prompt`` is cleared; without it the run simply ends
    (e.g. a router with no matching route).
    """

    awaiting_key: str | None = None


@dataclass(frozen=True)
class Fail:
    error: BaseException


Outcome = Union[Continue, Halt, Fail]


@dataclass
class NodeResult:
    patch: dict[str, Any] = field(default_factory=dict)
    outcome: Outcome = field(default_factory=Continue)


def proceed(patch: dict[str, Any] | None = None, next_id: str | None = None) -> NodeResult:
    return NodeResult(patch or {}, Continue(next_id))


def halt(patch: dict[str, Any] | None = None, awaiting_key: str | None = None) -> NodeResult:
    return NodeResult(patch or {}, Halt(awaiting_key))
