"""Tests for the dependency-aware lane scheduler."""

import asyncio

import pytest

from conductor.engine.scheduler import Lane, LaneOutcome, Scheduler
from conductor.engine.state_machine import WorkflowStateMachine, load_workflow_state
from conductor.exceptions import DependencyUnmetError
from conductor.graph.dependency_graph import DependencyGraph
from conductor.models.decisions import EscalationStatus, FlagValue, TextValue
from conductor.models.domain import WorkflowPhase, WorkflowState, WorkUnit


@pytest.fixture
def gate(make_gate):
    """Gate without knowledge or reasoning, so every question escalates."""
    return make_gate()


@pytest.fixture
def scheduler(store, gate, worktrees):
    return Scheduler(store, gate, worktrees, max_parallel=3, poll_interval=0.01)


async def _eventually(predicate, timeout: float = 5.0) -> None:
    async def _poll():
        while not await predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout=timeout)


async def _phase(store, unit_id):
    state = await load_workflow_state(store, unit_id)
    return state.current_state if state else None


class TestOrdering:
    """Tests for dependency order and concurrency."""

    @pytest.mark.asyncio
    async def test_runs_diamond_in_dependency_order(self, scheduler, store, worktrees, git_runner, diamond_units):
        """Test that every unit starts only after its hard dependencies completed."""
        graph = DependencyGraph.build(diamond_units)
        started = []

        async def work(lane: Lane) -> None:
            for dependency in graph.hard_dependencies(lane.unit_id):
                assert await _phase(store, dependency) == WorkflowPhase.COMPLETE
            assert lane.machine.current_state == WorkflowPhase.IN_PROGRESS
            assert lane.worktree.path in git_runner.worktrees
            started.append(lane.unit_id)

        report = await scheduler.plan(graph, work)

        assert report.succeeded
        assert sorted(report.completed) == ["A", "B", "C", "D"]
        assert started[0] == "A"
        assert started[-1] == "D"
        for unit_id in "ABCD":
            assert await _phase(store, unit_id) == WorkflowPhase.COMPLETE
        assert await worktrees.list_active() == []

    @pytest.mark.asyncio
    async def test_max_parallel_is_respected(self, scheduler):
        """Test that no more than max_parallel lanes run at once."""
        graph = DependencyGraph.build([WorkUnit(id=f"u{i}") for i in range(5)])
        running = 0
        peak = 0

        async def work(lane: Lane) -> None:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.02)
            running -= 1

        report = await scheduler.plan(graph, work, max_parallel=2)

        assert len(report.completed) == 5
        assert peak == 2

    @pytest.mark.asyncio
    async def test_critical_path_units_start_first(self, store, gate, worktrees):
        """Test that among ready units the critical path is launched first."""
        scheduler = Scheduler(store, gate, worktrees, max_parallel=1, poll_interval=0.01)
        graph = DependencyGraph.build([WorkUnit(id="P", weight=1.0), WorkUnit(id="Q", weight=3.0)])
        started = []

        async def work(lane: Lane) -> None:
            started.append(lane.unit_id)

        await scheduler.plan(graph, work)

        assert started == ["Q", "P"]

    @pytest.mark.asyncio
    async def test_completed_units_are_skipped(self, scheduler, store):
        """Test that units already COMPLETE in the store are not run again."""
        machine = await WorkflowStateMachine.open("A", store)
        await machine.transition(WorkflowPhase.IN_PROGRESS)
        await machine.transition(WorkflowPhase.COMPLETE)
        graph = DependencyGraph.build([WorkUnit(id="A"), WorkUnit(id="B", dependencies=frozenset({"A"}))])
        started = []

        async def work(lane: Lane) -> None:
            started.append(lane.unit_id)

        report = await scheduler.plan(graph, work)

        assert report.skipped == ["A"]
        assert report.completed == ["B"]
        assert started == ["B"]

    @pytest.mark.asyncio
    async def test_dependency_check_rereads_store(self, store, gate, worktrees):
        """Test that a dependency no longer COMPLETE in the store stops the plan."""
        machine = await WorkflowStateMachine.open("A", store)
        await machine.transition(WorkflowPhase.IN_PROGRESS)
        await machine.transition(WorkflowPhase.COMPLETE)
        scheduler = Scheduler(store, gate, worktrees, max_parallel=1, poll_interval=0.01)
        graph = DependencyGraph.build(
            [WorkUnit(id="A"), WorkUnit(id="B", dependencies=frozenset({"A"})), WorkUnit(id="X")]
        )

        async def work(lane: Lane) -> None:
            if lane.unit_id == "X":
                await store.persist("workflows/A", WorkflowState(id="A", current_state=WorkflowPhase.IN_PROGRESS))

        with pytest.raises(DependencyUnmetError) as exc_info:
            await scheduler.plan(graph, work)

        assert exc_info.value.unit_id == "B"
        assert exc_info.value.unmet == ["A"]

    def test_invalid_max_parallel(self, store, gate, worktrees):
        """Test that a concurrency cap below one is rejected."""
        with pytest.raises(ValueError):
            Scheduler(store, gate, worktrees, max_parallel=0)


class TestFailures:
    """Tests for failed lanes."""

    @pytest.mark.asyncio
    async def test_failure_blocks_dependents_and_rolls_back(self, scheduler, store, worktrees):
        """Test that a failed unit blocks its dependents and is rolled back."""
        graph = DependencyGraph.build(
            [
                WorkUnit(id="A"),
                WorkUnit(id="B", dependencies=frozenset({"A"})),
                WorkUnit(id="C", dependencies=frozenset({"B"})),
                WorkUnit(id="Z"),
            ]
        )

        async def work(lane: Lane) -> None:
            if lane.unit_id == "A":
                raise RuntimeError("tests failed")

        report = await scheduler.plan(graph, work)

        assert not report.succeeded
        assert report.failed == ["A"]
        assert sorted(report.blocked) == ["B", "C"]
        assert report.completed == ["Z"]
        assert report.results["A"].outcome == LaneOutcome.FAILED
        assert str(report.results["A"].error) == "tests failed"
        assert report.results["B"].outcome == LaneOutcome.BLOCKED
        assert await _phase(store, "A") == WorkflowPhase.NOT_STARTED
        assert await _phase(store, "B") is None
        assert await worktrees.list_active() == []

    @pytest.mark.asyncio
    async def test_failure_policy_reschedules(self, store, gate, worktrees):
        """Test that the failure policy can give a unit another attempt."""
        scheduler = Scheduler(
            store, gate, worktrees, poll_interval=0.01, failure_policy=lambda result: result.attempt < 2
        )
        graph = DependencyGraph.build([WorkUnit(id="A"), WorkUnit(id="B", dependencies=frozenset({"A"}))])
        attempts = []

        async def work(lane: Lane) -> None:
            attempts.append((lane.unit_id, lane.attempt))
            if lane.unit_id == "A" and lane.attempt == 1:
                raise RuntimeError("flaky")

        report = await scheduler.plan(graph, work)

        assert report.succeeded
        assert report.attempts == {"A": 2, "B": 1}
        assert attempts == [("A", 1), ("A", 2), ("B", 1)]


class TestEscalations:
    """Tests for lanes parked on escalations."""

    @pytest.mark.asyncio
    async def test_escalated_lane_does_not_block_unrelated_lane(self, scheduler, store, gate):
        """Test that an unrelated lane completes while another waits, then both finish."""
        graph = DependencyGraph.build([WorkUnit(id="A"), WorkUnit(id="B")])
        decisions = {}

        async def work(lane: Lane) -> None:
            if lane.unit_id == "A":
                decision = await lane.machine.decide("Which database?", {"category": "architecture"})
                decisions["A"] = decision.value

        async def operator():
            async def ready():
                pending = await gate.list_escalations(status=EscalationStatus.PENDING)
                return bool(pending) and await _phase(store, "B") == WorkflowPhase.COMPLETE

            await _eventually(ready)
            assert await _phase(store, "A") == WorkflowPhase.IN_PROGRESS
            (escalation,) = await gate.list_escalations(status=EscalationStatus.PENDING)
            await gate.resolve(escalation.id, "postgres")

        report, _ = await asyncio.gather(scheduler.plan(graph, work), operator())

        assert report.succeeded
        assert report.completed == ["B", "A"]
        assert decisions["A"] == TextValue(text="postgres")
        assert len(report.results["A"].escalations) == 1

    @pytest.mark.asyncio
    async def test_cancelled_escalation_abandons_lane(self, scheduler, store, gate, worktrees):
        """Test that cancelling abandons the lane and blocks its dependents."""
        graph = DependencyGraph.build(
            [WorkUnit(id="A"), WorkUnit(id="B", dependencies=frozenset({"A"})), WorkUnit(id="C")]
        )

        async def work(lane: Lane) -> None:
            if lane.unit_id == "A":
                await lane.machine.decide("Ship it?", kind="flag")

        async def operator():
            async def pending():
                return bool(await gate.list_escalations(status=EscalationStatus.PENDING))

            await _eventually(pending)
            (escalation,) = await gate.list_escalations(status=EscalationStatus.PENDING)
            await gate.cancel(escalation.id)

        report, _ = await asyncio.gather(scheduler.plan(graph, work), operator())

        assert report.abandoned == ["A"]
        assert report.blocked == ["B"]
        assert report.completed == ["C"]
        assert report.results["A"].outcome == LaneOutcome.ABANDONED
        assert await _phase(store, "A") == WorkflowPhase.NOT_STARTED
        assert await worktrees.list_active() == []

    @pytest.mark.asyncio
    async def test_rescheduled_lane_asks_again_after_cancellation(self, store, gate, worktrees):
        """Test that a lane rescheduled after a cancellation raises a fresh escalation."""
        scheduler = Scheduler(
            store, gate, worktrees, poll_interval=0.01, failure_policy=lambda result: result.attempt < 3
        )
        graph = DependencyGraph.build([WorkUnit(id="A")])
        answers = []

        async def work(lane: Lane) -> None:
            decision = await lane.machine.decide("Ship it?", kind="flag")
            answers.append((lane.attempt, decision.value))

        async def operator():
            async def pending():
                return bool(await gate.list_escalations(status=EscalationStatus.PENDING))

            await _eventually(pending)
            (first,) = await gate.list_escalations(status=EscalationStatus.PENDING)
            await gate.cancel(first.id)

            async def fresh():
                escalations = await gate.list_escalations(status=EscalationStatus.PENDING)
                return any(e.id != first.id for e in escalations)

            await _eventually(fresh)
            (second,) = await gate.list_escalations(status=EscalationStatus.PENDING)
            await gate.resolve(second.id, "yes")

        report, _ = await asyncio.gather(scheduler.plan(graph, work), operator())

        assert report.succeeded
        assert report.attempts == {"A": 2}
        assert answers == [(2, FlagValue(flag=True))]
        assert len(await gate.list_escalations()) == 2
        assert await _phase(store, "A") == WorkflowPhase.COMPLETE
