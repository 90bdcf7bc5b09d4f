"""Workflow execution engine.

Key Components:
    - StateStore: Atomic, crash-safe JSON persistence
    - WorkflowStateMachine: Per-unit lifecycle with checkpoint and rollback
    - HookRegistry: Ordered pre and post step hooks
    - Scheduler: Dependency-aware parallel lane driver, in
      ``conductor.engine.scheduler``

Example:
    >>> from conductor.engine import StateStore, WorkflowStateMachine
    >>> store = StateStore(".conductor/state")
    >>> machine = await WorkflowStateMachine.open("1-3", store)
"""

from conductor.engine.hooks import HookRegistry
from conductor.engine.state_machine import WorkflowStateMachine
from conductor.engine.state_store import NOT_FOUND, StateStore

__all__ = [
    "NOT_FOUND",
    "HookRegistry",
    "StateStore",
    "WorkflowStateMachine",
]
