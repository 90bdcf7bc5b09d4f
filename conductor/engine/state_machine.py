"""
Per-unit workflow lifecycle with checkpoint and rollback.

Each work unit owns one WorkflowStateMachine. Its state is persisted under
``workflows/<unit-id>`` and mutated only through ``transition`` and
``rollback``. Every mutation is persisted before the in-memory state is
swapped, so a crash at any point leaves the store holding either the old or
the new state and ``open`` resumes from it.

Legal transitions::

    NOT_STARTED -> IN_PROGRESS
    IN_PROGRESS -> REVIEW | COMPLETE
    REVIEW      -> IN_PROGRESS

Steps run through ``run_step`` (one step) or ``run_steps`` (a sequence that
resumes at the persisted step pointer). Both refuse to run while the
workflow owns a pending escalation.
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable, Sequence
from typing import TYPE_CHECKING, Any

import structlog

from conductor.engine.hooks import HookRegistry
from conductor.engine.state_store import NOT_FOUND, StateStore
from conductor.exceptions import EscalationPendingError, InvalidTransitionError
from conductor.models.decisions import Decision, DecisionKind
from conductor.models.domain import Checkpoint, CheckpointSnapshot, WorkflowPhase, WorkflowState, utc_now

if TYPE_CHECKING:
    from conductor.decisions.gate import DecisionGate
    from conductor.git.worktrees import WorktreeCoordinator

log = structlog.get_logger(__name__)

WORKFLOW_PREFIX = "workflows/"

LEGAL_TRANSITIONS: dict[WorkflowPhase, frozenset[WorkflowPhase]] = {
    WorkflowPhase.NOT_STARTED: frozenset({WorkflowPhase.IN_PROGRESS}),
    WorkflowPhase.IN_PROGRESS: frozenset({WorkflowPhase.REVIEW, WorkflowPhase.COMPLETE}),
    WorkflowPhase.REVIEW: frozenset({WorkflowPhase.IN_PROGRESS}),
    WorkflowPhase.COMPLETE: frozenset(),
}

StepHandler = Callable[["WorkflowStateMachine"], Awaitable[Any]]


def workflow_key(workflow_id: str) -> str:
    return f"{WORKFLOW_PREFIX}{workflow_id}"


def is_legal_transition(current: WorkflowPhase, requested: WorkflowPhase) -> bool:
    return requested in LEGAL_TRANSITIONS[current]


async def load_workflow_state(store: StateStore, workflow_id: str) -> WorkflowState | None:
    """Persisted state of a workflow, or None if it was never opened."""
    data = await store.load(workflow_key(workflow_id))
    if data is NOT_FOUND:
        return None
    return WorkflowState.model_validate(data)


class WorkflowStateMachine:
    """Finite-state lifecycle of one work unit.

    Use ``WorkflowStateMachine.open`` rather than the constructor so that the
    persisted state is loaded, or created on first use.

    Attributes:
        store: State store holding the workflow record
        gate: Decision gate consulted by ``decide`` and for pending escalations
        worktrees: Worktree coordinator asked to clean up on rollback
        pre_step_hooks: Hooks run before each step
        post_step_hooks: Hooks run after each successful step
    """

    def __init__(
        self,
        state: WorkflowState,
        store: StateStore,
        gate: DecisionGate | None = None,
        worktrees: WorktreeCoordinator | None = None,
        pre_step_hooks: HookRegistry | None = None,
        post_step_hooks: HookRegistry | None = None,
    ) -> None:
        self._state = state
        self.store = store
        self.gate = gate
        self.worktrees = worktrees
        self.pre_step_hooks = pre_step_hooks or HookRegistry("pre_step")
        self.post_step_hooks = post_step_hooks or HookRegistry("post_step")

    @classmethod
    async def open(
        cls,
        workflow_id: str,
        store: StateStore,
        gate: DecisionGate | None = None,
        worktrees: WorktreeCoordinator | None = None,
        pre_step_hooks: HookRegistry | None = None,
        post_step_hooks: HookRegistry | None = None,
    ) -> WorkflowStateMachine:
        """Load the persisted workflow, creating it at NOT_STARTED if absent."""
        state = await load_workflow_state(store, workflow_id)
        if state is None:
            state = WorkflowState(id=workflow_id)
            await store.persist(workflow_key(workflow_id), state)
            log.info("workflow_created", workflow_id=workflow_id)
        else:
            log.debug(
                "workflow_resumed",
                workflow_id=workflow_id,
                state=state.current_state.value,
                step_pointer=state.step_pointer,
            )
        return cls(state, store, gate, worktrees, pre_step_hooks, post_step_hooks)

    @property
    def state(self) -> WorkflowState:
        return self._state

    @property
    def id(self) -> str:
        return self._state.id

    @property
    def current_state(self) -> WorkflowPhase:
        return self._state.current_state

    @property
    def step_pointer(self) -> int:
        return self._state.step_pointer

    async def _commit(self, new_state: WorkflowState) -> None:
        await self.store.persist(workflow_key(self.id), new_state)
        self._state = new_state

    async def _ensure_no_pending_escalation(self) -> None:
        if self.gate is None:
            return
        pending = await self.gate.pending_for(self.id)
        if pending:
            raise EscalationPendingError(pending[0])

    async def transition(self, next_state: WorkflowPhase) -> WorkflowState:
        """Move to ``next_state``.

        Raises:
            EscalationPendingError: While the workflow owns a pending escalation.
            InvalidTransitionError: If the transition is not legal. The state
                is left unchanged.
            PersistenceError: If the new state cannot be persisted. The
                in-memory state is left unchanged.
        """
        await self._ensure_no_pending_escalation()

        current = self.current_state
        if not is_legal_transition(current, next_state):
            log.warning(
                "invalid_transition",
                workflow_id=self.id,
                current=current.value,
                requested=next_state.value,
            )
            raise InvalidTransitionError(self.id, current.value, next_state.value)

        now = utc_now()
        update: dict[str, Any] = {"current_state": next_state, "updated_at": now}
        if next_state is WorkflowPhase.IN_PROGRESS and self._state.started_at is None:
            update["started_at"] = now
        if next_state is WorkflowPhase.COMPLETE:
            update["completed_at"] = now

        await self._commit(self._state.model_copy(update=update))
        log.info("workflow_transitioned", workflow_id=self.id, previous=current.value, current=next_state.value)
        return self._state

    def create_checkpoint(self) -> Checkpoint:
        """Snapshot the current state. The checkpoint is returned, not stored."""
        checkpoint = Checkpoint(
            id=uuid.uuid4().hex,
            workflow_id=self.id,
            timestamp=utc_now(),
            state_snapshot=CheckpointSnapshot(
                current_state=self._state.current_state,
                step_pointer=self._state.step_pointer,
                started_at=self._state.started_at,
                completed_at=self._state.completed_at,
            ),
        )
        log.debug("checkpoint_created", workflow_id=self.id, checkpoint_id=checkpoint.id)
        return checkpoint

    async def rollback(self, checkpoint: Checkpoint) -> WorkflowState:
        """Restore the state captured by ``checkpoint``.

        Worktrees this unit created after the checkpoint are destroyed.

        Raises:
            ValueError: If the checkpoint belongs to another workflow.
            InvalidTransitionError: If the workflow is COMPLETE.
        """
        if checkpoint.workflow_id != self.id:
            raise ValueError(f"Checkpoint {checkpoint.id} belongs to workflow {checkpoint.workflow_id}, not {self.id}")

        snapshot = checkpoint.state_snapshot
        if self.current_state.is_terminal:
            raise InvalidTransitionError(self.id, self.current_state.value, snapshot.current_state.value)

        now = utc_now()
        restored = self._state.model_copy(
            update={
                "current_state": snapshot.current_state,
                "step_pointer": snapshot.step_pointer,
                "started_at": snapshot.started_at,
                "completed_at": snapshot.completed_at,
                "updated_at": now,
                "rolled_back_at": now,
            }
        )
        await self._commit(restored)
        log.info(
            "workflow_rolled_back",
            workflow_id=self.id,
            checkpoint_id=checkpoint.id,
            state=snapshot.current_state.value,
            step_pointer=snapshot.step_pointer,
        )

        if self.worktrees is not None:
            await self.worktrees.destroy_created_after(self.id, checkpoint.timestamp)
        return self._state

    async def run_step(self, name: str, handler: StepHandler) -> Any:
        """Run one step and advance the step pointer.

        Pre-step hooks run before the handler and post-step hooks after it
        succeeds. If the handler raises, the step pointer is not advanced and
        the exception propagates.

        Raises:
            EscalationPendingError: While the workflow owns a pending
                escalation, or if the handler escalates a decision.
            InvalidTransitionError: If the workflow is not IN_PROGRESS.
        """
        await self._ensure_no_pending_escalation()
        if self.current_state is not WorkflowPhase.IN_PROGRESS:
            raise InvalidTransitionError(self.id, self.current_state.value, f"step:{name}")

        await self.pre_step_hooks.run(name, self._state)
        log.info("step_started", workflow_id=self.id, step=name, step_pointer=self.step_pointer)

        result = await handler(self)

        await self._commit(
            self._state.model_copy(update={"step_pointer": self._state.step_pointer + 1, "updated_at": utc_now()})
        )
        log.info("step_completed", workflow_id=self.id, step=name, step_pointer=self.step_pointer)
        await self.post_step_hooks.run(name, self._state)
        return result

    async def run_steps(self, steps: Sequence[tuple[str, StepHandler]]) -> list[Any]:
        """Run ``steps`` in order, starting at the persisted step pointer.

        Steps before the pointer already completed in an earlier attempt and
        are skipped, which makes this safe to call again after a crash or an
        escalation.
        """
        results = []
        for name, handler in steps[self.step_pointer :]:
            results.append(await self.run_step(name, handler))
        return results

    async def decide(
        self,
        question: str,
        context: dict[str, Any] | None = None,
        kind: DecisionKind = "text",
        options: tuple[str, ...] = (),
    ) -> Decision:
        """Ask the decision gate on behalf of the current step.

        Escalations cancelled before the workflow's last rollback belong to an
        abandoned attempt and do not answer the question again.

        Raises:
            RuntimeError: If the machine has no decision gate.
            EscalationPendingError: If the decision was escalated.
        """
        if self.gate is None:
            raise RuntimeError(f"Workflow {self.id} has no decision gate")
        return await self.gate.decide(
            question,
            context,
            owner_workflow_id=self.id,
            step=self.step_pointer,
            kind=kind,
            options=options,
            ignore_cancelled_before=self._state.rolled_back_at,
        )

    def __repr__(self) -> str:
        return f"WorkflowStateMachine(id={self.id!r}, state={self.current_state.value}, step={self.step_pointer})"
