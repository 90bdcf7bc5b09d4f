"""
Domain models for the orchestration core.

This module contains the data classes and enums that represent work units,
their dependency edges, the per-unit workflow lifecycle, checkpoints, and the
isolated worktrees lanes execute in.

In-memory graph inputs (``WorkUnit``, ``DependencyEdge``) are frozen
dataclasses. Records that are persisted through the state store
(``WorkflowState``, ``Checkpoint``, ``Worktree``) are Pydantic models so they
round-trip through JSON without hand-written converters.

Example:
    Declaring work units for a dependency graph::

        units = [
            WorkUnit(id="1-1"),
            WorkUnit(id="1-2", dependencies=frozenset({"1-1"})),
            WorkUnit(id="1-3", dependencies=frozenset({"1-1"}), weight=2.0),
        ]
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


class WorkflowPhase(str, Enum):
    """Lifecycle states of a workflow.

    The legal transitions are::

        NOT_STARTED -> IN_PROGRESS
        IN_PROGRESS -> REVIEW
        IN_PROGRESS -> COMPLETE
        REVIEW      -> IN_PROGRESS

    COMPLETE is terminal.
    """

    NOT_STARTED = "not_started"
    """Unit is declared but no lane has started it."""

    IN_PROGRESS = "in_progress"
    """A lane is actively executing steps for the unit."""

    REVIEW = "review"
    """Work is done and under review; review may send it back to IN_PROGRESS."""

    COMPLETE = "complete"
    """Unit finished. No further mutation is permitted."""

    @property
    def is_terminal(self) -> bool:
        return self is WorkflowPhase.COMPLETE


class EdgeKind(str, Enum):
    """Kinds of dependency edges.

    Hard edges gate scheduling and participate in cycle detection and critical
    path analysis. Soft edges are advisory ordering hints and are excluded
    from every computation.
    """

    HARD = "hard"
    SOFT = "soft"


@dataclass(frozen=True)
class WorkUnit:
    """A single schedulable item, such as a story.

    Attributes:
        id: Unique identifier of the unit
        dependencies: Ids of units that must be COMPLETE before this unit starts
        soft_dependencies: Ids of units this unit would prefer to follow
        status: Lifecycle status recorded when the unit was declared
        weight: Effort estimate used by critical path analysis
        metadata: Free-form attributes (title, epic, complexity) carried into
            the graph export
    """

    id: str
    dependencies: frozenset[str] = field(default_factory=frozenset)
    soft_dependencies: frozenset[str] = field(default_factory=frozenset)
    status: WorkflowPhase = WorkflowPhase.NOT_STARTED
    weight: float = 1.0
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


@dataclass(frozen=True)
class DependencyEdge:
    """Directed dependency edge: ``source`` must finish before ``target``.

    Attributes:
        source: Prerequisite unit id
        target: Dependent unit id
        kind: HARD edges block scheduling; SOFT edges are advisory
    """

    source: str
    target: str
    kind: EdgeKind = EdgeKind.HARD

    @property
    def blocking(self) -> bool:
        return self.kind is EdgeKind.HARD


class WorkflowState(BaseModel):
    """Persisted lifecycle record for one schedulable unit.

    Created at NOT_STARTED and mutated only through
    ``WorkflowStateMachine.transition`` and ``rollback``.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    current_state: WorkflowPhase = WorkflowPhase.NOT_STARTED
    started_at: datetime | None = None
    completed_at: datetime | None = None
    step_pointer: int = Field(default=0, ge=0)
    updated_at: datetime = Field(default_factory=utc_now)
    rolled_back_at: datetime | None = None


class CheckpointSnapshot(BaseModel):
    """The workflow fields captured by a checkpoint."""

    model_config = ConfigDict(frozen=True)

    current_state: WorkflowPhase
    step_pointer: int
    started_at: datetime | None = None
    completed_at: datetime | None = None


class Checkpoint(BaseModel):
    """Immutable point-in-time snapshot of a workflow, used only for rollback.

    Checkpoints are owned by the caller that requested them and are never
    stored implicitly.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    workflow_id: str
    timestamp: datetime
    state_snapshot: CheckpointSnapshot


class WorktreeStatus(str, Enum):
    """Lifecycle of an isolated working copy."""

    ACTIVE = "active"
    DESTROYED = "destroyed"


class Worktree(BaseModel):
    """A branch-scoped working copy owned by one work unit.

    A unit owns at most one ACTIVE worktree at a time.
    """

    unit_id: str
    path: str
    branch: str
    base_branch: str
    status: WorktreeStatus = WorktreeStatus.ACTIVE
    created_at: datetime = Field(default_factory=utc_now)
    destroyed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status is WorktreeStatus.ACTIVE
