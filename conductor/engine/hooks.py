"""Step hooks.

A HookRegistry holds an ordered list of callables run around each workflow
step. Hooks may be plain functions or coroutine functions and are invoked in
registration order with the step name and the workflow state. A hook that
raises is logged and skipped; the remaining hooks still run and the step is
not affected.
"""

import inspect
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from conductor.models.domain import WorkflowState

log = structlog.get_logger(__name__)

StepHook = Callable[[str, WorkflowState], Awaitable[Any] | Any]


class HookRegistry:
    """Ordered collection of step hooks."""

    def __init__(self, name: str = "hooks") -> None:
        self.name = name
        self._hooks: list[StepHook] = []

    def register(self, hook: StepHook) -> StepHook:
        """Append a hook. Returns it unchanged so this can be used as a decorator."""
        self._hooks.append(hook)
        return hook

    def unregister(self, hook: StepHook) -> None:
        self._hooks.remove(hook)

    def __len__(self) -> int:
        return len(self._hooks)

    async def run(self, step_name: str, state: WorkflowState) -> int:
        """Invoke every hook in order.

        Returns:
            Number of hooks that failed.
        """
        failures = 0
        for hook in list(self._hooks):
            try:
                result = hook(step_name, state)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                failures += 1
                log.error(
                    "step_hook_failed",
                    registry=self.name,
                    hook=getattr(hook, "__qualname__", repr(hook)),
                    step=step_name,
                    workflow_id=state.id,
                    error=str(e),
                    exc_info=True,
                )
        return failures
