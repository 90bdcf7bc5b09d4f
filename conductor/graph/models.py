"""
Export schema for dependency graphs.

External dashboards and CLIs read the exported plan but never write it. The
schema is versioned through ``schema_version`` and serialized by alias, so
edges carry ``from`` and ``to`` keys.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from conductor.models.domain import EdgeKind, WorkflowPhase

GRAPH_SCHEMA_VERSION = "1.0"


class GraphNode(BaseModel):
    """A work unit as it appears in the exported plan."""

    id: str
    status: WorkflowPhase
    weight: float
    depth: int
    metadata: dict[str, Any] = Field(default_factory=dict)


class GraphEdge(BaseModel):
    """A dependency edge as it appears in the exported plan."""

    model_config = ConfigDict(populate_by_name=True)

    source: str = Field(alias="from")
    target: str = Field(alias="to")
    kind: EdgeKind
    blocking: bool


class GraphExportMetadata(BaseModel):
    """Summary figures for the exported plan."""

    total_units: int
    parallelizable: int = Field(description="Units that share a depth level with at least one other unit")
    critical_path_length: float
    bottleneck_count: int


class GraphExport(BaseModel):
    """Versioned, JSON-serializable snapshot of a dependency graph."""

    model_config = ConfigDict(populate_by_name=True)

    schema_version: Literal["1.0"] = GRAPH_SCHEMA_VERSION
    nodes: list[GraphNode]
    edges: list[GraphEdge]
    critical_path: list[str]
    bottlenecks: list[str]
    parallel_groups: list[list[str]]
    metadata: GraphExportMetadata

    def to_dict(self) -> dict[str, Any]:
        """Return the export as plain JSON-compatible data."""
        return self.model_dump(mode="json", by_alias=True)

    def to_json(self, indent: int | None = 2) -> str:
        return self.model_dump_json(by_alias=True, indent=indent)
