"""Custom exception hierarchy for the conductor orchestration core.

This module defines a structured exception hierarchy that separates
structural defects (cycles, illegal transitions, worktree conflicts) from
control-flow signals (pending escalations) and from failures of external
collaborators (git, the reasoning provider).

Exception Hierarchy:
    ConductorError (base)
    ├── ConfigurationError
    ├── GraphError
    │   ├── GraphValidationError
    │   └── GraphCycleError
    ├── WorkflowError
    │   ├── InvalidTransitionError
    │   ├── DependencyUnmetError
    │   ├── EscalationPendingError
    │   ├── EscalationCancelledError
    │   ├── EscalationNotFoundError
    │   └── EscalationNotPendingError
    ├── WorktreeConflictError
    ├── PersistenceError
    └── ExternalCallError
        └── TransientExternalError

Propagation Policy:
    - Structural errors (GraphCycleError, InvalidTransitionError,
      WorktreeConflictError) surface immediately and are never retried.
    - TransientExternalError is the only error type retried with backoff.
    - PersistenceError is never swallowed. The state store guarantees that a
      failed write leaves the previous committed value intact, so callers
      can always retry.
    - EscalationPendingError is informational: the caller should wait for
      resolution rather than treat it as a failure.

Example Usage:
    >>> from conductor.exceptions import GraphCycleError
    >>> try:
    ...     graph = DependencyGraph.build(units)
    ... except GraphCycleError as e:
    ...     print(" -> ".join(e.cycle))
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from conductor.models.decisions import Escalation


class ConductorError(Exception):
    """Base exception for all conductor errors.

    All custom exceptions in the orchestration core inherit from this base
    class, allowing callers to catch every conductor-specific error with a
    single except clause.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(ConductorError):
    """Configuration-related errors.

    Raised when configuration or plan files are invalid, missing, or contain
    incompatible settings.

    Examples:
        - Configuration file not found
        - Invalid YAML syntax
        - Plan file without a ``units`` list
    """

    pass


# =============================================================================
# Dependency Graph Errors
# =============================================================================


class GraphError(ConductorError):
    """Base class for dependency graph construction errors."""

    pass


class GraphValidationError(GraphError):
    """Work-unit declarations are inconsistent.

    Raised for duplicate unit ids, references to undeclared units, and
    negative effort weights.
    """

    pass


class GraphCycleError(GraphError):
    """The hard-dependency subgraph contains a cycle.

    Attributes:
        cycle: Every node on the detected cycle, in cycle order. The edge from
            the last node back to the first closes the cycle.
    """

    def __init__(self, cycle: Iterable[str]) -> None:
        """Initialize exception.

        Args:
            cycle: Node ids on the cycle, in traversal order
        """
        self.cycle = list(cycle)
        path = " -> ".join([*self.cycle, self.cycle[0]]) if self.cycle else ""
        super().__init__(f"Circular hard dependency detected: {path}")


# =============================================================================
# Workflow Errors
# =============================================================================


class WorkflowError(ConductorError):
    """Workflow execution errors.

    Raised when a workflow lifecycle operation cannot proceed.
    """

    pass


class InvalidTransitionError(WorkflowError):
    """A state transition outside the legal transition table was requested.

    The workflow state is left unchanged.

    Attributes:
        workflow_id: Workflow whose transition was refused
        current: State the workflow is in
        requested: State that was requested
    """

    def __init__(self, workflow_id: str, current: str, requested: str) -> None:
        """Initialize exception.

        Args:
            workflow_id: Workflow whose transition was refused
            current: Current state value
            requested: Requested state value
        """
        self.workflow_id = workflow_id
        self.current = current
        self.requested = requested
        super().__init__(f"Invalid transition for workflow {workflow_id}: {current} -> {requested}")


class DependencyUnmetError(WorkflowError):
    """A unit was about to start before all of its hard dependencies completed.

    This indicates a scheduler defect, not a normal runtime condition.

    Attributes:
        unit_id: Unit that was about to start
        unmet: Hard dependencies that are not complete
    """

    def __init__(self, unit_id: str, unmet: Iterable[str]) -> None:
        """Initialize exception.

        Args:
            unit_id: Unit that was about to start
            unmet: Hard dependency ids that are not complete
        """
        self.unit_id = unit_id
        self.unmet = sorted(unmet)
        super().__init__(f"Unit {unit_id} started with incomplete hard dependencies: {', '.join(self.unmet)}")


class EscalationPendingError(WorkflowError):
    """The workflow owns an escalation that still awaits a human decision.

    This is a control-flow signal rather than a bug. The caller should wait
    for resolution (for example with ``DecisionGate.wait_for_resolution``)
    and retry the step afterwards.

    Attributes:
        escalation: The pending escalation record
    """

    def __init__(self, escalation: Escalation) -> None:
        """Initialize exception.

        Args:
            escalation: The pending escalation record
        """
        self.escalation = escalation
        super().__init__(
            f"Workflow {escalation.owner_workflow_id} is waiting on escalation {escalation.id} "
            f"(step {escalation.step}): {escalation.question}"
        )


class EscalationCancelledError(WorkflowError):
    """The escalation blocking a step was cancelled by an operator.

    The owning lane is abandoned. Rolling back or terminating the workflow is
    left to the caller.

    Attributes:
        escalation: The cancelled escalation record
    """

    def __init__(self, escalation: Escalation) -> None:
        """Initialize exception.

        Args:
            escalation: The cancelled escalation record
        """
        self.escalation = escalation
        super().__init__(f"Escalation {escalation.id} for workflow {escalation.owner_workflow_id} was cancelled")


class EscalationNotFoundError(WorkflowError):
    """No escalation exists with the requested id."""

    def __init__(self, escalation_id: str) -> None:
        self.escalation_id = escalation_id
        super().__init__(f"Escalation not found: {escalation_id}")


class EscalationNotPendingError(WorkflowError):
    """Resolve or cancel was attempted on an escalation that is no longer pending."""

    def __init__(self, escalation_id: str, status: str) -> None:
        self.escalation_id = escalation_id
        self.status = status
        super().__init__(f"Escalation {escalation_id} is not pending (status: {status})")


# =============================================================================
# Worktree, Persistence and External Errors
# =============================================================================


class WorktreeConflictError(ConductorError):
    """The work unit already owns an active worktree or a leftover branch.

    The caller must destroy the existing worktree, merge or delete the kept
    branch, or choose a new identity.

    Attributes:
        unit_id: Work unit that already owns a worktree
        path: Path of the existing worktree
        branch: Branch of the existing worktree
    """

    def __init__(self, unit_id: str, path: str, branch: str, message: str | None = None) -> None:
        """Initialize exception.

        Args:
            unit_id: Work unit that already owns a worktree
            path: Path of the existing worktree
            branch: Branch of the existing worktree
            message: Overrides the default active-worktree message
        """
        self.unit_id = unit_id
        self.path = path
        self.branch = branch
        super().__init__(
            message
            or (
                f"Active worktree already exists for unit {unit_id} (path: {path}, branch: {branch})\n"
                f"Suggestion: destroy it first or run: git worktree remove {path}"
            )
        )


class PersistenceError(ConductorError):
    """Writing or reading committed state failed.

    A failed write never leaves a partially written value behind, so the
    operation is always safe to retry.

    Attributes:
        key: State store key involved in the failure
    """

    def __init__(self, message: str, key: str | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            key: State store key involved in the failure
        """
        self.key = key
        full_message = f"{message} (key: {key})" if key else message
        super().__init__(full_message)
        self.message = message


class ExternalCallError(ConductorError):
    """A call to an external collaborator failed.

    Covers the version-control subprocess and the reasoning provider.

    Attributes:
        target: The command line or service that failed
        stderr: Captured error output, if any
        returncode: Process exit code or HTTP status, if any
    """

    def __init__(
        self,
        message: str,
        target: str | None = None,
        stderr: str | None = None,
        returncode: int | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            target: The command line or service that failed
            stderr: Captured error output
            returncode: Process exit code or HTTP status code
        """
        self.target = target
        self.stderr = stderr
        self.returncode = returncode

        parts = [message]
        if target:
            parts.append(f"target: {target}")
        if returncode is not None:
            parts.append(f"code: {returncode}")

        full_message = message if len(parts) == 1 else f"{message} ({', '.join(parts[1:])})"
        super().__init__(full_message)
        # Preserve original message
        self.message = message


class TransientExternalError(ExternalCallError):
    """An external call failed for a reason expected to clear on retry.

    Lock contention on the git index is the canonical example.
    """

    pass
