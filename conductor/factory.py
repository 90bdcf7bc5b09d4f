"""Factories building the orchestration components from settings."""

from __future__ import annotations

import structlog

from conductor.config.settings import ConductorSettings
from conductor.decisions.gate import DecisionGate
from conductor.decisions.knowledge import KnowledgeBase
from conductor.decisions.reasoning import OpenAICompatibleReasoner, SamplingConfig
from conductor.engine.scheduler import FailurePolicy, Scheduler
from conductor.engine.state_store import StateStore
from conductor.git.worktrees import WorktreeCoordinator
from conductor.utils.async_subprocess import CommandRunner

log = structlog.get_logger(__name__)


def create_store(settings: ConductorSettings) -> StateStore:
    return StateStore(settings.state_dir)


def create_knowledge_base(settings: ConductorSettings) -> KnowledgeBase:
    """Load the configured knowledge base, or an empty one.

    Raises:
        ConfigurationError: If the configured file is missing or malformed.
    """
    if settings.decisions.knowledge_base is None:
        return KnowledgeBase()
    return KnowledgeBase.from_yaml(settings.decisions.knowledge_base)


def create_reasoner(settings: ConductorSettings) -> OpenAICompatibleReasoner | None:
    """Create the reasoning client, or None when reasoning is disabled.

    Example:
        >>> settings = ConductorSettings.from_yaml("conductor.yaml")
        >>> reasoner = create_reasoner(settings)
        >>> if reasoner is not None:
        ...     await reasoner.aclose()
    """
    config = settings.reasoning
    if not config.enabled:
        return None

    log.info("creating_reasoner", base_url=config.base_url, model=config.model)
    return OpenAICompatibleReasoner(
        base_url=config.base_url,
        model=config.model,
        api_key=config.api_key.get_secret_value() if config.api_key else None,
        timeout=config.timeout,
    )


def create_gate(settings: ConductorSettings, store: StateStore, *, use_reasoner: bool = True) -> DecisionGate:
    """Create the decision gate.

    Args:
        settings: Conductor settings
        store: State store holding escalations and the audit log
        use_reasoner: Build the reasoning client from ``settings.reasoning``.
            Inbox operations that never decide pass False.
    """
    decisions = settings.decisions
    return DecisionGate(
        store,
        knowledge=create_knowledge_base(settings),
        reasoner=create_reasoner(settings) if use_reasoner else None,
        threshold=decisions.confidence_threshold,
        knowledge_confidence=decisions.knowledge_confidence,
        sampling=SamplingConfig(
            temperature=settings.reasoning.temperature,
            max_tokens=settings.reasoning.max_tokens,
        ),
        reasoning_timeout=decisions.reasoning_timeout,
        reasoning_attempts=decisions.reasoning_attempts,
        retry_base_delay=decisions.retry_base_delay,
        retry_max_delay=decisions.retry_max_delay,
    )


def create_worktrees(
    settings: ConductorSettings,
    store: StateStore,
    runner: CommandRunner | None = None,
) -> WorktreeCoordinator:
    config = settings.worktrees
    return WorktreeCoordinator(
        store,
        config.repo_root,
        worktrees_dir=config.directory,
        branch_prefix=config.branch_prefix,
        base_branch=config.base_branch,
        git_timeout=config.git_timeout,
        lock_retry_attempts=config.lock_retry_attempts,
        lock_retry_base_delay=config.lock_retry_base_delay,
        lock_retry_max_delay=config.lock_retry_max_delay,
        runner=runner,
    )


def create_scheduler(
    settings: ConductorSettings,
    store: StateStore,
    gate: DecisionGate,
    worktrees: WorktreeCoordinator,
    failure_policy: FailurePolicy | None = None,
) -> Scheduler:
    """Create a scheduler using the configured concurrency and poll interval.

    Worktrees start from ``worktrees.base_branch``.
    """
    return Scheduler(
        store,
        gate,
        worktrees,
        max_parallel=settings.scheduler.max_parallel,
        poll_interval=settings.scheduler.poll_interval,
        failure_policy=failure_policy,
        base_branch=settings.worktrees.base_branch,
    )
