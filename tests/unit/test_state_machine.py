"""Tests for the workflow state machine."""

import pytest
import pytest_asyncio

from conductor.engine.hooks import HookRegistry
from conductor.engine.state_machine import LEGAL_TRANSITIONS, WorkflowStateMachine, load_workflow_state
from conductor.exceptions import (
    EscalationCancelledError,
    EscalationPendingError,
    InvalidTransitionError,
    PersistenceError,
)
from conductor.models.decisions import TextValue
from conductor.models.domain import WorkflowPhase


@pytest_asyncio.fixture
async def machine(store):
    return await WorkflowStateMachine.open("1-3", store)


async def _machine_in(store, phase: WorkflowPhase, workflow_id: str = "w") -> WorkflowStateMachine:
    machine = await WorkflowStateMachine.open(workflow_id, store)
    path = {
        WorkflowPhase.NOT_STARTED: [],
        WorkflowPhase.IN_PROGRESS: [WorkflowPhase.IN_PROGRESS],
        WorkflowPhase.REVIEW: [WorkflowPhase.IN_PROGRESS, WorkflowPhase.REVIEW],
        WorkflowPhase.COMPLETE: [WorkflowPhase.IN_PROGRESS, WorkflowPhase.COMPLETE],
    }[phase]
    for step in path:
        await machine.transition(step)
    return machine


async def _noop(machine):
    return None


class TestOpen:
    """Tests for opening workflows."""

    @pytest.mark.asyncio
    async def test_open_creates_not_started(self, store):
        """Test that a new workflow is persisted at NOT_STARTED."""
        machine = await WorkflowStateMachine.open("1-3", store)

        assert machine.current_state == WorkflowPhase.NOT_STARTED
        assert machine.step_pointer == 0
        assert (await load_workflow_state(store, "1-3")).current_state == WorkflowPhase.NOT_STARTED

    @pytest.mark.asyncio
    async def test_open_resumes_persisted_state(self, store, machine):
        """Test that reopening sees the persisted state."""
        await machine.transition(WorkflowPhase.IN_PROGRESS)

        reopened = await WorkflowStateMachine.open("1-3", store)

        assert reopened.current_state == WorkflowPhase.IN_PROGRESS
        assert reopened.state.started_at == machine.state.started_at


class TestTransitions:
    """Tests for the transition table."""

    @pytest.mark.asyncio
    async def test_not_started_to_complete_rejected(self, store, machine):
        """Test that skipping IN_PROGRESS fails and leaves the state unchanged."""
        with pytest.raises(InvalidTransitionError) as exc_info:
            await machine.transition(WorkflowPhase.COMPLETE)

        assert exc_info.value.current == "not_started"
        assert exc_info.value.requested == "complete"
        assert machine.current_state == WorkflowPhase.NOT_STARTED
        assert (await load_workflow_state(store, "1-3")).current_state == WorkflowPhase.NOT_STARTED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("current", list(WorkflowPhase))
    @pytest.mark.parametrize("requested", list(WorkflowPhase))
    async def test_transition_table(self, store, current, requested):
        """Test every (current, requested) pair against the legal table."""
        machine = await _machine_in(store, current)

        if requested in LEGAL_TRANSITIONS[current]:
            state = await machine.transition(requested)
            assert state.current_state == requested
        else:
            with pytest.raises(InvalidTransitionError):
                await machine.transition(requested)
            assert machine.current_state == current

    @pytest.mark.asyncio
    async def test_timestamps(self, machine):
        """Test that started_at is set once and completed_at on completion."""
        await machine.transition(WorkflowPhase.IN_PROGRESS)
        started = machine.state.started_at
        await machine.transition(WorkflowPhase.REVIEW)
        await machine.transition(WorkflowPhase.IN_PROGRESS)
        await machine.transition(WorkflowPhase.COMPLETE)

        assert machine.state.started_at == started
        assert machine.state.completed_at is not None

    @pytest.mark.asyncio
    async def test_persist_failure_leaves_memory_unchanged(self, store, machine, monkeypatch):
        """Test that a failed write does not advance the in-memory state."""

        async def failing_persist(key, value):
            raise PersistenceError("disk full", key=key)

        monkeypatch.setattr(store, "persist", failing_persist)

        with pytest.raises(PersistenceError):
            await machine.transition(WorkflowPhase.IN_PROGRESS)

        assert machine.current_state == WorkflowPhase.NOT_STARTED


class TestCheckpoints:
    """Tests for checkpoints and rollback."""

    @pytest.mark.asyncio
    async def test_rollback_restores_snapshot(self, store):
        """Test that rollback restores state and step pointer."""
        machine = await _machine_in(store, WorkflowPhase.IN_PROGRESS)
        checkpoint = machine.create_checkpoint()
        await machine.run_step("one", _noop)
        await machine.transition(WorkflowPhase.REVIEW)

        restored = await machine.rollback(checkpoint)

        assert restored.current_state == WorkflowPhase.IN_PROGRESS
        assert restored.step_pointer == 0
        assert restored.rolled_back_at is not None
        assert (await load_workflow_state(store, "w")).step_pointer == 0

    @pytest.mark.asyncio
    async def test_rollback_from_complete_rejected(self, store):
        """Test that a completed workflow cannot be rolled back."""
        machine = await _machine_in(store, WorkflowPhase.IN_PROGRESS)
        checkpoint = machine.create_checkpoint()
        await machine.transition(WorkflowPhase.COMPLETE)

        with pytest.raises(InvalidTransitionError):
            await machine.rollback(checkpoint)
        assert machine.current_state == WorkflowPhase.COMPLETE

    @pytest.mark.asyncio
    async def test_rollback_foreign_checkpoint(self, store):
        """Test that checkpoints cannot be applied across workflows."""
        first = await _machine_in(store, WorkflowPhase.IN_PROGRESS, "a")
        second = await _machine_in(store, WorkflowPhase.IN_PROGRESS, "b")

        with pytest.raises(ValueError, match="belongs to workflow a"):
            await second.rollback(first.create_checkpoint())

    @pytest.mark.asyncio
    async def test_rollback_destroys_worktrees_created_after_checkpoint(self, store, worktrees):
        """Test that rollback cleans up a worktree created after the checkpoint."""
        machine = await WorkflowStateMachine.open("story-1", store, worktrees=worktrees)
        await machine.transition(WorkflowPhase.IN_PROGRESS)
        checkpoint = machine.create_checkpoint()
        await worktrees.create("story-1")

        await machine.rollback(checkpoint)

        assert await worktrees.list_active() == []

    @pytest.mark.asyncio
    async def test_rollback_keeps_older_worktrees(self, store, worktrees):
        """Test that a worktree created before the checkpoint survives rollback."""
        machine = await WorkflowStateMachine.open("story-1", store, worktrees=worktrees)
        await worktrees.create("story-1")
        await machine.transition(WorkflowPhase.IN_PROGRESS)
        checkpoint = machine.create_checkpoint()

        await machine.rollback(checkpoint)

        assert [w.unit_id for w in await worktrees.list_active()] == ["story-1"]


class TestSteps:
    """Tests for step execution."""

    @pytest.mark.asyncio
    async def test_run_step_advances_pointer_and_runs_hooks(self, store):
        """Test hooks around a step and the persisted step pointer."""
        pre, post = HookRegistry("pre"), HookRegistry("post")
        events = []
        pre.register(lambda step, state: events.append(("pre", step, state.step_pointer)))
        post.register(lambda step, state: events.append(("post", step, state.step_pointer)))
        machine = await WorkflowStateMachine.open("w", store, pre_step_hooks=pre, post_step_hooks=post)
        await machine.transition(WorkflowPhase.IN_PROGRESS)

        async def handler(m):
            events.append(("handler", m.id))
            return 42

        assert await machine.run_step("implement", handler) == 42
        assert events == [("pre", "implement", 0), ("handler", "w"), ("post", "implement", 1)]
        assert (await load_workflow_state(store, "w")).step_pointer == 1

    @pytest.mark.asyncio
    async def test_failing_step_keeps_pointer(self, store):
        """Test that a raising handler does not advance the pointer."""
        machine = await _machine_in(store, WorkflowPhase.IN_PROGRESS)

        async def handler(m):
            raise RuntimeError("tests failed")

        with pytest.raises(RuntimeError):
            await machine.run_step("test", handler)
        assert machine.step_pointer == 0

    @pytest.mark.asyncio
    async def test_step_requires_in_progress(self, machine):
        """Test that steps only run while IN_PROGRESS."""
        with pytest.raises(InvalidTransitionError) as exc_info:
            await machine.run_step("implement", _noop)

        assert exc_info.value.requested == "step:implement"

    @pytest.mark.asyncio
    async def test_run_steps_resumes_at_pointer(self, store):
        """Test that a reopened workflow skips completed steps."""
        machine = await _machine_in(store, WorkflowPhase.IN_PROGRESS)
        ran = []

        def step(name):
            async def handler(m):
                ran.append(name)
                if name == "b" and len(ran) == 2:
                    raise RuntimeError("crash")

            return (name, handler)

        steps = [step("a"), step("b"), step("c")]
        with pytest.raises(RuntimeError):
            await machine.run_steps(steps)

        reopened = await WorkflowStateMachine.open("w", store)
        await reopened.run_steps(steps)

        assert ran == ["a", "b", "b", "c"]
        assert reopened.step_pointer == 3


class TestEscalationBlocking:
    """Tests for the interaction with pending escalations."""

    @pytest.mark.asyncio
    async def test_pending_escalation_blocks_progress_until_resolved(self, store, make_gate):
        """Test that transitions and steps are refused while an escalation is pending."""
        gate = make_gate()
        machine = await WorkflowStateMachine.open("1-3", store, gate=gate)
        await machine.transition(WorkflowPhase.IN_PROGRESS)

        with pytest.raises(EscalationPendingError) as exc_info:
            await machine.decide("Which database?", {"category": "architecture"})

        with pytest.raises(EscalationPendingError):
            await machine.transition(WorkflowPhase.COMPLETE)
        with pytest.raises(EscalationPendingError):
            await machine.run_step("next", _noop)
        assert machine.current_state == WorkflowPhase.IN_PROGRESS

        await gate.resolve(exc_info.value.escalation.id, "postgres")

        decision = await machine.decide("Which database?", {"category": "architecture"})
        assert decision.value == TextValue(text="postgres")
        await machine.transition(WorkflowPhase.COMPLETE)
        assert machine.current_state == WorkflowPhase.COMPLETE

    @pytest.mark.asyncio
    async def test_decide_without_gate(self, machine):
        """Test that decide requires a gate."""
        with pytest.raises(RuntimeError, match="no decision gate"):
            await machine.decide("q")

    @pytest.mark.asyncio
    async def test_question_is_asked_again_after_rollback(self, store, make_gate):
        """Test that a cancellation from before the last rollback does not abandon the next attempt."""
        gate = make_gate()
        machine = await WorkflowStateMachine.open("1-3", store, gate=gate)
        checkpoint = machine.create_checkpoint()
        await machine.transition(WorkflowPhase.IN_PROGRESS)

        with pytest.raises(EscalationPendingError) as first:
            await machine.decide("Ship it?", kind="flag")
        await gate.cancel(first.value.escalation.id)
        with pytest.raises(EscalationCancelledError):
            await machine.decide("Ship it?", kind="flag")

        await machine.rollback(checkpoint)
        retry = await WorkflowStateMachine.open("1-3", store, gate=gate)
        await retry.transition(WorkflowPhase.IN_PROGRESS)

        with pytest.raises(EscalationPendingError) as second:
            await retry.decide("Ship it?", kind="flag")

        assert second.value.escalation.id != first.value.escalation.id
        assert len(await gate.list_escalations()) == 2
