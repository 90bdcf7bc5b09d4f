"""
Dependency-aware lane scheduler.

The Scheduler drives a whole plan: it launches one lane per work unit once
all of the unit's hard dependencies are COMPLETE, keeps at most
``max_parallel`` lanes running, and advances as lanes finish, fail or wait on
escalations.

Lane Lifecycle:
    1. Re-read the persisted state of every hard dependency. Anything other
       than COMPLETE is a scheduler defect and raises DependencyUnmetError.
    2. Open the unit's state machine and replay ``destroy`` on its worktree
       to clean up after a crash.
    3. Create the worktree, take a checkpoint, move to IN_PROGRESS.
    4. Await ``work(lane)``. When it raises EscalationPendingError the lane
       keeps its slot and waits for the escalation. Resolution replays
       ``work``; cancellation abandons the lane.
    5. Move to COMPLETE if ``work`` did not, then destroy the worktree.

    On failure or abandonment the lane rolls back to its checkpoint and
    destroys its worktree. The failure policy then decides whether the unit
    is rescheduled. Terminal failures block every transitive hard dependent.

Ordering:
    Ready units are launched by depth, then critical-path membership, then
    id. This walks the parallel groups in depth order while letting
    unrelated lanes overtake a lane parked on an escalation.

Crash Recovery:
    Units already COMPLETE in the store are skipped. A unit left IN_PROGRESS
    resumes at its persisted step pointer when ``work`` uses
    ``machine.run_steps``.

Example:
    >>> async def work(lane: Lane) -> None:
    ...     await lane.machine.run_steps([
    ...         ("implement", implement),
    ...         ("test", run_tests),
    ...     ])
    >>> scheduler = Scheduler(store, gate, worktrees, max_parallel=3)
    >>> report = await scheduler.plan(graph, work)
    >>> report.succeeded
    True
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from conductor.decisions.gate import DecisionGate
from conductor.engine.hooks import HookRegistry
from conductor.engine.state_machine import WorkflowStateMachine, load_workflow_state
from conductor.engine.state_store import StateStore
from conductor.exceptions import (
    DependencyUnmetError,
    EscalationCancelledError,
    EscalationPendingError,
)
from conductor.git.worktrees import WorktreeCoordinator
from conductor.graph.dependency_graph import DependencyGraph
from conductor.models.decisions import EscalationStatus
from conductor.models.domain import Checkpoint, WorkflowPhase, WorkUnit, Worktree

log = structlog.get_logger(__name__)


class LaneOutcome(str, Enum):
    """How a lane ended."""

    COMPLETED = "completed"
    FAILED = "failed"
    ABANDONED = "abandoned"
    BLOCKED = "blocked"


@dataclass
class Lane:
    """Execution context handed to the ``work`` callable.

    Attributes:
        unit: The work unit being executed
        machine: The unit's state machine, already IN_PROGRESS
        worktree: The isolated working copy for this lane
        attempt: 1 for the first launch, incremented on each reschedule
    """

    unit: WorkUnit
    machine: WorkflowStateMachine
    worktree: Worktree
    attempt: int = 1

    @property
    def unit_id(self) -> str:
        return self.unit.id


@dataclass
class LaneResult:
    """Outcome of one lane attempt.

    Attributes:
        unit_id: Unit the lane executed
        outcome: How the lane ended
        attempt: Attempt number of this lane
        error: Exception that failed or abandoned the lane
        escalations: Ids of escalations the lane waited on
        execution_time: Wall-clock seconds spent in the lane
    """

    unit_id: str
    outcome: LaneOutcome
    attempt: int = 1
    error: BaseException | None = None
    escalations: list[str] = field(default_factory=list)
    execution_time: float = 0.0

    @property
    def success(self) -> bool:
        return self.outcome is LaneOutcome.COMPLETED


@dataclass
class SchedulerReport:
    """Summary of a ``Scheduler.plan`` run."""

    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    abandoned: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    results: dict[str, LaneResult] = field(default_factory=dict)
    attempts: dict[str, int] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return not (self.failed or self.abandoned or self.blocked)


WorkFn = Callable[[Lane], Awaitable[Any]]
FailurePolicy = Callable[[LaneResult], bool]


def never_retry(result: LaneResult) -> bool:
    return False


class Scheduler:
    """Run a dependency graph's units in parallel lanes.

    Attributes:
        max_parallel: Default concurrency cap for ``plan``
        poll_interval: Seconds between escalation polls of a parked lane
        failure_policy: Decides whether a failed or abandoned unit is
            rescheduled
        base_branch: Branch worktrees are created from
    """

    def __init__(
        self,
        store: StateStore,
        gate: DecisionGate,
        worktrees: WorktreeCoordinator,
        *,
        max_parallel: int = 3,
        poll_interval: float = 1.0,
        failure_policy: FailurePolicy | None = None,
        base_branch: str | None = None,
        pre_step_hooks: HookRegistry | None = None,
        post_step_hooks: HookRegistry | None = None,
    ) -> None:
        if max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")
        self.store = store
        self.gate = gate
        self.worktrees = worktrees
        self.max_parallel = max_parallel
        self.poll_interval = poll_interval
        self.failure_policy = failure_policy or never_retry
        self.base_branch = base_branch
        self.pre_step_hooks = pre_step_hooks
        self.post_step_hooks = post_step_hooks

    async def plan(self, graph: DependencyGraph, work: WorkFn, max_parallel: int | None = None) -> SchedulerReport:
        """Execute every unit of ``graph``.

        Args:
            graph: The dependency graph to execute
            work: Async callable run once per lane with the lane context
            max_parallel: Overrides the scheduler's concurrency cap

        Returns:
            SchedulerReport describing every unit.

        Raises:
            DependencyUnmetError: If a unit was about to start before its
                hard dependencies were COMPLETE in the store.
        """
        limit = max_parallel if max_parallel is not None else self.max_parallel
        if limit < 1:
            raise ValueError("max_parallel must be at least 1")

        await self.store.cleanup_stale_temp_files()

        report = SchedulerReport()
        critical = set(graph.critical_path())
        completed: set[str] = set()

        for unit_id in graph.ids:
            state = await load_workflow_state(self.store, unit_id)
            if state is not None and state.current_state is WorkflowPhase.COMPLETE:
                completed.add(unit_id)
                report.skipped.append(unit_id)

        pending = set(graph.ids) - completed
        in_flight: dict[asyncio.Task[LaneResult], str] = {}

        def priority(unit_id: str) -> tuple[int, int, str]:
            return (graph.compute_depth(unit_id), 0 if unit_id in critical else 1, unit_id)

        log.info(
            "plan_started",
            total_units=len(graph),
            already_complete=len(completed),
            max_parallel=limit,
        )

        try:
            while pending or in_flight:
                ready = sorted((u for u in pending if graph.hard_dependencies(u) <= completed), key=priority)

                for unit_id in ready[: limit - len(in_flight)]:
                    await self._verify_dependencies(graph, unit_id)
                    pending.discard(unit_id)
                    attempt = report.attempts.get(unit_id, 0) + 1
                    report.attempts[unit_id] = attempt
                    task = asyncio.create_task(self._run_lane(graph.unit(unit_id), work, attempt), name=f"lane-{unit_id}")
                    in_flight[task] = unit_id

                if not in_flight:
                    # Nothing running and nothing launchable: the rest waits on terminal failures
                    for unit_id in sorted(pending):
                        self._block(report, unit_id, "unreachable")
                    pending.clear()
                    break

                done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)

                for task in done:
                    unit_id = in_flight.pop(task)
                    result = task.result()
                    report.results[unit_id] = result

                    if result.success:
                        completed.add(unit_id)
                        report.completed.append(unit_id)
                        continue

                    if self.failure_policy(result):
                        log.warning("lane_rescheduled", unit_id=unit_id, attempt=result.attempt, outcome=result.outcome.value)
                        pending.add(unit_id)
                        continue

                    if result.outcome is LaneOutcome.ABANDONED:
                        report.abandoned.append(unit_id)
                    else:
                        report.failed.append(unit_id)

                    for dependent in sorted(graph.transitive_dependents(unit_id)):
                        if dependent in pending:
                            pending.discard(dependent)
                            self._block(report, dependent, unit_id)
        finally:
            for task in in_flight:
                task.cancel()
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)

        log.info(
            "plan_finished",
            completed=len(report.completed),
            skipped=len(report.skipped),
            failed=len(report.failed),
            abandoned=len(report.abandoned),
            blocked=len(report.blocked),
        )
        return report

    def _block(self, report: SchedulerReport, unit_id: str, cause: str) -> None:
        report.blocked.append(unit_id)
        report.results[unit_id] = LaneResult(unit_id=unit_id, outcome=LaneOutcome.BLOCKED)
        log.warning("unit_blocked", unit_id=unit_id, blocked_by=cause)

    async def _verify_dependencies(self, graph: DependencyGraph, unit_id: str) -> None:
        unmet = []
        for dependency in graph.hard_dependencies(unit_id):
            state = await load_workflow_state(self.store, dependency)
            if state is None or state.current_state is not WorkflowPhase.COMPLETE:
                unmet.append(dependency)
        if unmet:
            log.error("dependency_unmet", unit_id=unit_id, unmet=sorted(unmet))
            raise DependencyUnmetError(unit_id, unmet)

    async def _run_lane(self, unit: WorkUnit, work: WorkFn, attempt: int) -> LaneResult:
        """Run one lane to completion. Never raises except on cancellation."""
        start = time.monotonic()
        result = LaneResult(unit_id=unit.id, outcome=LaneOutcome.COMPLETED, attempt=attempt)
        machine: WorkflowStateMachine | None = None
        checkpoint: Checkpoint | None = None
        worktree: Worktree | None = None

        with structlog.contextvars.bound_contextvars(unit_id=unit.id, attempt=attempt):
            log.info("lane_started")
            try:
                machine = await WorkflowStateMachine.open(
                    unit.id,
                    self.store,
                    gate=self.gate,
                    worktrees=self.worktrees,
                    pre_step_hooks=self.pre_step_hooks,
                    post_step_hooks=self.post_step_hooks,
                )
                await self.worktrees.destroy(unit.id)
                worktree = await self.worktrees.create(unit.id, self.base_branch)
                checkpoint = machine.create_checkpoint()
                lane = Lane(unit=unit, machine=machine, worktree=worktree, attempt=attempt)

                while True:
                    try:
                        await self._drive(lane, work)
                        break
                    except EscalationPendingError as e:
                        result.escalations.append(e.escalation.id)
                        log.info("lane_waiting_on_escalation", escalation_id=e.escalation.id)
                        settled = await self.gate.wait_for_resolution(e.escalation.id, self.poll_interval)
                        if settled.status is EscalationStatus.CANCELLED:
                            raise EscalationCancelledError(settled) from e
                        log.info("lane_resuming", escalation_id=settled.id)

            except EscalationCancelledError as e:
                result.outcome = LaneOutcome.ABANDONED
                result.error = e
                log.warning("lane_abandoned", escalation_id=e.escalation.id)
            except Exception as e:
                result.outcome = LaneOutcome.FAILED
                result.error = e
                log.error("lane_failed", error=str(e), exc_info=True)

            if not result.success and machine is not None and checkpoint is not None:
                await self._rollback(machine, checkpoint)
            if worktree is not None:
                await self._release_worktree(unit.id)

            result.execution_time = time.monotonic() - start
            log.info("lane_finished", outcome=result.outcome.value, execution_time=result.execution_time)
        return result

    async def _drive(self, lane: Lane, work: WorkFn) -> None:
        machine = lane.machine
        if machine.current_state in (WorkflowPhase.NOT_STARTED, WorkflowPhase.REVIEW):
            await machine.transition(WorkflowPhase.IN_PROGRESS)

        await work(lane)

        if machine.current_state is WorkflowPhase.REVIEW:
            await machine.transition(WorkflowPhase.IN_PROGRESS)
        if machine.current_state is not WorkflowPhase.COMPLETE:
            await machine.transition(WorkflowPhase.COMPLETE)

    async def _rollback(self, machine: WorkflowStateMachine, checkpoint: Checkpoint) -> None:
        if machine.current_state is WorkflowPhase.COMPLETE:
            return
        try:
            await machine.rollback(checkpoint)
        except Exception as e:
            log.error("lane_rollback_failed", error=str(e), exc_info=True)

    async def _release_worktree(self, unit_id: str) -> None:
        try:
            await self.worktrees.destroy(unit_id)
        except Exception as e:
            log.error("worktree_cleanup_failed", error=str(e), exc_info=True)
