"""Tests for the conductor exception hierarchy."""

import pytest

from conductor.exceptions import (
    ConductorError,
    ConfigurationError,
    DependencyUnmetError,
    EscalationCancelledError,
    EscalationNotFoundError,
    EscalationNotPendingError,
    EscalationPendingError,
    ExternalCallError,
    GraphCycleError,
    GraphError,
    GraphValidationError,
    InvalidTransitionError,
    PersistenceError,
    TransientExternalError,
    WorkflowError,
    WorktreeConflictError,
)
from conductor.models.decisions import Escalation


@pytest.fixture
def escalation():
    return Escalation(id="esc-1", owner_workflow_id="1-3", step=2, question="Which database?", confidence=0.6)


class TestHierarchy:
    """Tests for inheritance relationships."""

    @pytest.mark.parametrize(
        "exc_type,parent",
        [
            (ConfigurationError, ConductorError),
            (GraphValidationError, GraphError),
            (GraphCycleError, GraphError),
            (InvalidTransitionError, WorkflowError),
            (DependencyUnmetError, WorkflowError),
            (EscalationPendingError, WorkflowError),
            (EscalationCancelledError, WorkflowError),
            (EscalationNotFoundError, WorkflowError),
            (EscalationNotPendingError, WorkflowError),
            (WorktreeConflictError, ConductorError),
            (PersistenceError, ConductorError),
            (TransientExternalError, ExternalCallError),
            (ExternalCallError, ConductorError),
        ],
    )
    def test_subclass(self, exc_type, parent):
        """Test that each error sits under its documented parent."""
        assert issubclass(exc_type, parent)
        assert issubclass(exc_type, ConductorError)


class TestMessages:
    """Tests for error attributes and messages."""

    def test_message_attribute(self):
        """Test that the base error keeps its message."""
        error = ConfigurationError("bad config")

        assert error.message == "bad config"
        assert str(error) == "bad config"

    def test_cycle_error(self):
        """Test that the cycle is stored and rendered closed."""
        error = GraphCycleError(["A", "B", "C"])

        assert error.cycle == ["A", "B", "C"]
        assert "A -> B -> C -> A" in str(error)

    def test_invalid_transition(self):
        """Test the transition attributes."""
        error = InvalidTransitionError("1-3", "not_started", "complete")

        assert (error.workflow_id, error.current, error.requested) == ("1-3", "not_started", "complete")
        assert "not_started -> complete" in str(error)

    def test_dependency_unmet_sorts(self):
        """Test that unmet dependencies are reported sorted."""
        error = DependencyUnmetError("D", {"C", "B"})

        assert error.unmet == ["B", "C"]
        assert "B, C" in str(error)

    def test_escalation_pending_carries_record(self, escalation):
        """Test that the pending escalation is attached to the signal."""
        error = EscalationPendingError(escalation)

        assert error.escalation is escalation
        assert "esc-1" in str(error)
        assert "step 2" in str(error)

    def test_escalation_cancelled(self, escalation):
        """Test the cancelled escalation message."""
        assert "was cancelled" in str(EscalationCancelledError(escalation))

    def test_worktree_conflict_suggests_remedy(self):
        """Test that the conflict error names the existing worktree."""
        error = WorktreeConflictError("story-1", "/repo/wt/unit-story-1", "story/story-1")

        assert error.path == "/repo/wt/unit-story-1"
        assert "git worktree remove /repo/wt/unit-story-1" in str(error)

    def test_persistence_error_keeps_plain_message(self):
        """Test that the key is appended to str() but not to message."""
        error = PersistenceError("write failed", key="workflows/a")

        assert error.message == "write failed"
        assert str(error) == "write failed (key: workflows/a)"

    def test_external_call_error_details(self):
        """Test that target and return code are included in str()."""
        error = ExternalCallError("git command failed", target="git worktree add", stderr="fatal", returncode=128)

        assert error.message == "git command failed"
        assert error.stderr == "fatal"
        assert str(error) == "git command failed (target: git worktree add, code: 128)"

    def test_not_pending(self):
        """Test the not-pending error."""
        error = EscalationNotPendingError("esc-1", "resolved")

        assert error.status == "resolved"
        assert "not pending" in str(error)
