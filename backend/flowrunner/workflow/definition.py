"""Workflow definition schema — parsed once per run, never mutated."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from flowrunner.errors import WorkflowConfigError


class NodeDef(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    config: dict[str, Any] = Field(default_factory=dict)
    next: str | None = None


class EdgeDef(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    source: str = Field(alias="from")
    target: str = Field(alias="to")


class WorkflowDefinition(BaseModel):
    """Nodes in declaration order plus the static edge list.

    Node ``config`` keeps the camelCase keys written by the workflow builder
    (``systemPrompt``, ``outputFormat``, ``defaultRoute``, ...).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = ""
    name: str = ""
    entry_point: str = Field(alias="entryPoint")
    nodes: list[NodeDef]
    edges: list[EdgeDef] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_node_ids(self) -> "WorkflowDefinition":
        seen: set[str] = set()
        for node in self.nodes:
            if node.id in seen:
                raise ValueError(f"Duplicate node id: {node.id}")
            seen.add(node.id)
        return self

    def node(self, node_id: str) -> NodeDef | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    @property
    def node_ids(self) -> set[str]:
        return {n.id for n in self.nodes}


def parse_workflow(data: dict[str, Any] | WorkflowDefinition) -> WorkflowDefinition:
    """Validate a plain dict into a :class:`WorkflowDefinition`.

    Raises:
        WorkflowConfigError: when the structure is invalid.
    """
    if isinstance(data, WorkflowDefinition):
        return data
    try:
        return WorkflowDefinition.model_validate(data)
    except ValidationError as exc:
        raise WorkflowConfigError(f"Invalid workflow definition: {exc}") from exc
