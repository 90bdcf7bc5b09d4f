"""Tests for step hooks."""

import pytest

from conductor.engine.hooks import HookRegistry
from conductor.models.domain import WorkflowState


@pytest.mark.asyncio
async def test_hooks_run_in_registration_order():
    """Test that sync and async hooks run in order with step and state."""
    registry = HookRegistry("pre_step")
    seen = []

    @registry.register
    def first(step, state):
        seen.append(("first", step, state.id))

    @registry.register
    async def second(step, state):
        seen.append(("second", step, state.id))

    failures = await registry.run("implement", WorkflowState(id="1-3"))

    assert failures == 0
    assert seen == [("first", "implement", "1-3"), ("second", "implement", "1-3")]


@pytest.mark.asyncio
async def test_failing_hook_does_not_stop_others():
    """Test that a raising hook is counted and skipped."""
    registry = HookRegistry()
    seen = []

    def broken(step, state):
        raise RuntimeError("hook bug")

    registry.register(broken)
    registry.register(lambda step, state: seen.append(step))

    failures = await registry.run("test", WorkflowState(id="w"))

    assert failures == 1
    assert seen == ["test"]


@pytest.mark.asyncio
async def test_unregister():
    """Test that unregistered hooks no longer run."""
    registry = HookRegistry()
    calls = []

    def hook(step, state):
        calls.append(step)

    registry.register(hook)
    registry.unregister(hook)

    await registry.run("s", WorkflowState(id="w"))

    assert calls == []
    assert len(registry) == 0
