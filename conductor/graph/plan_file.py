"""
YAML plan files.

A plan file declares work units and, optionally, extra edges::

    units:
      - id: "1-1"
        metadata: {title: "Project skeleton", epic: "1"}
      - id: "1-2"
        dependencies: ["1-1"]
        weight: 2
      - id: "1-3"
        dependencies: ["1-1"]
        soft_dependencies: ["1-2"]
    edges:
      - {from: "1-2", to: "1-3", kind: soft}
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from conductor.exceptions import ConfigurationError
from conductor.graph.dependency_graph import DependencyGraph
from conductor.models.domain import DependencyEdge, EdgeKind, WorkflowPhase, WorkUnit

log = structlog.get_logger(__name__)


class UnitEntry(BaseModel):
    """One ``units`` entry of a plan file."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    dependencies: list[str] = Field(default_factory=list)
    soft_dependencies: list[str] = Field(default_factory=list)
    status: WorkflowPhase = WorkflowPhase.NOT_STARTED
    weight: float = Field(default=1.0, ge=0.0)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_unit(self) -> WorkUnit:
        return WorkUnit(
            id=self.id,
            dependencies=frozenset(self.dependencies),
            soft_dependencies=frozenset(self.soft_dependencies),
            status=self.status,
            weight=self.weight,
            metadata=self.metadata,
        )


class EdgeEntry(BaseModel):
    """One ``edges`` entry of a plan file."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    source: str = Field(alias="from")
    target: str = Field(alias="to")
    kind: EdgeKind = EdgeKind.HARD

    def to_edge(self) -> DependencyEdge:
        return DependencyEdge(self.source, self.target, self.kind)


class PlanDocument(BaseModel):
    """Top-level structure of a plan file."""

    units: list[UnitEntry]
    edges: list[EdgeEntry] = Field(default_factory=list)

    def work_units(self) -> list[WorkUnit]:
        return [entry.to_unit() for entry in self.units]

    def dependency_edges(self) -> list[DependencyEdge]:
        return [entry.to_edge() for entry in self.edges]

    def build_graph(self) -> DependencyGraph:
        return DependencyGraph.build(self.work_units(), self.dependency_edges())


def load_plan(path: str | Path) -> PlanDocument:
    """Read and validate a YAML plan file.

    Args:
        path: Location of the plan file

    Returns:
        The validated plan document. Call ``build_graph`` on it to obtain a
        DependencyGraph.

    Raises:
        ConfigurationError: If the file is missing, is not valid YAML, or
            does not match the plan structure.
    """
    plan_path = Path(path)
    if not plan_path.exists():
        raise ConfigurationError(f"Plan file not found: {plan_path}")

    try:
        content = plan_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read plan file: {plan_path}") from e

    try:
        raw = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML syntax in {plan_path}: {e}") from e

    if not isinstance(raw, dict) or "units" not in raw:
        raise ConfigurationError(f"Plan file {plan_path} must be a mapping with a 'units' list")

    try:
        document = PlanDocument.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid plan file {plan_path}: {e}") from e

    log.info("plan_loaded", path=str(plan_path), units=len(document.units), edges=len(document.edges))
    return document
