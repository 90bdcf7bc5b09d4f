"""Data models for work units, workflow lifecycle, decisions and escalations."""

from conductor.models.decisions import (
    ChoiceValue,
    Decision,
    DecisionSource,
    Escalation,
    EscalationMetrics,
    EscalationStatus,
    FlagValue,
    StructuredValue,
    TextValue,
)
from conductor.models.domain import (
    Checkpoint,
    DependencyEdge,
    EdgeKind,
    WorkflowPhase,
    WorkflowState,
    WorkUnit,
    Worktree,
    WorktreeStatus,
)

__all__ = [
    "Checkpoint",
    "ChoiceValue",
    "Decision",
    "DecisionSource",
    "DependencyEdge",
    "EdgeKind",
    "Escalation",
    "EscalationMetrics",
    "EscalationStatus",
    "FlagValue",
    "StructuredValue",
    "TextValue",
    "WorkUnit",
    "WorkflowPhase",
    "WorkflowState",
    "Worktree",
    "WorktreeStatus",
]
