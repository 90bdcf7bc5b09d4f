"""Pytest configuration and shared fixtures."""

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from conductor.decisions.gate import DecisionGate
from conductor.decisions.knowledge import KnowledgeBase
from conductor.decisions.reasoning import ReasoningResult, SamplingConfig
from conductor.engine.state_store import StateStore
from conductor.git.worktrees import WorktreeCoordinator
from conductor.models.domain import WorkUnit


class FakeReasoner:
    """Reasoning collaborator returning scripted results.

    Each scripted item is either a ReasoningResult, an exception instance to
    raise, or a callable taking (question, context) and returning either.
    The last item repeats once the script is exhausted.
    """

    def __init__(self, *script: Any) -> None:
        self.script = list(script) or [ReasoningResult(value="ok", confidence=0.9, reasoning="fine")]
        self.calls: list[tuple[str, dict[str, Any], SamplingConfig]] = []

    async def reason(self, question: str, context: dict[str, Any], sampling: SamplingConfig) -> ReasoningResult:
        self.calls.append((question, context, sampling))
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if callable(item) and not isinstance(item, ReasoningResult):
            item = item(question, context)
        if isinstance(item, BaseException):
            raise item
        return item


class FakeGitRunner:
    """In-memory stand-in for the git executable.

    Tracks worktrees and branches well enough for the coordinator, and lets
    tests inject failures for commands starting with a given prefix.
    """

    def __init__(self, branches: tuple[str, ...] = ("main",)) -> None:
        self.calls: list[tuple[str, ...]] = []
        self.branches: set[str] = set(branches)
        self.worktrees: dict[str, str] = {}
        self._failures: list[tuple[str, str, int]] = []

    def fail_next(self, prefix: str, stderr: str, code: int = 128, times: int = 1) -> None:
        """Make the next ``times`` commands starting with ``prefix`` fail."""
        self._failures.extend([(prefix, stderr, code)] * times)

    def commands(self, prefix: str = "") -> list[str]:
        return [" ".join(call) for call in self.calls if " ".join(call).startswith(prefix)]

    async def __call__(
        self,
        *args: str,
        cwd: Path | str | None = None,
        check: bool = True,
        timeout: float | None = None,
    ) -> tuple[str, str, int]:
        assert args[0] == "git"
        cmd = args[1:]
        self.calls.append(cmd)
        joined = " ".join(cmd)

        for i, (prefix, stderr, code) in enumerate(self._failures):
            if joined.startswith(prefix):
                del self._failures[i]
                return "", stderr, code

        if cmd[:2] == ("worktree", "add"):
            branch, path, base = cmd[3], cmd[4], cmd[5]
            if base not in self.branches:
                return "", f"fatal: invalid reference: {base}\n", 128
            if branch in self.branches:
                return "", f"fatal: a branch named '{branch}' already exists\n", 128
            self.branches.add(branch)
            self.worktrees[path] = branch
            return f"Preparing worktree (new branch '{branch}')\n", "", 0
        if cmd[:2] == ("worktree", "remove"):
            path = cmd[-1]
            if path not in self.worktrees:
                return "", f"fatal: '{path}' is not a working tree\n", 128
            del self.worktrees[path]
            return "", "", 0
        if cmd[:2] == ("worktree", "prune"):
            return "", "", 0
        if cmd[:2] == ("worktree", "list"):
            root = str(Path(cwd or ".").resolve())
            blocks = [f"worktree {root}\nHEAD {'0' * 40}\nbranch refs/heads/main\n"]
            for path, branch in self.worktrees.items():
                blocks.append(f"worktree {path}\nHEAD {'1' * 40}\nbranch refs/heads/{branch}\n")
            return "\n".join(blocks), "", 0
        if cmd[:2] == ("branch", "-d"):
            branch = cmd[2]
            if branch not in self.branches:
                return "", f"error: branch '{branch}' not found.\n", 1
            if branch in self.worktrees.values():
                return "", f"error: Cannot delete branch '{branch}' checked out at somewhere\n", 1
            self.branches.discard(branch)
            return f"Deleted branch {branch}.\n", "", 0
        return "", "", 0


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Temporary state directory."""
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def store(temp_state_dir: Path) -> StateStore:
    """StateStore rooted at a temporary directory."""
    return StateStore(temp_state_dir)


@pytest.fixture
def knowledge() -> KnowledgeBase:
    """Knowledge base with a couple of authoritative answers."""
    kb = KnowledgeBase()
    kb.add("Which test framework do we use?", "pytest", category="tooling")
    kb.add("Use type hints?", "yes", category="style")
    return kb


@pytest.fixture
def make_reasoner() -> type[FakeReasoner]:
    """Factory for scripted reasoners."""
    return FakeReasoner


@pytest.fixture
def fake_reasoner() -> FakeReasoner:
    """Reasoner answering confidently by default."""
    return FakeReasoner()


@pytest.fixture
def make_gate(store: StateStore) -> Callable[..., DecisionGate]:
    """Factory for decision gates without retry delays."""

    def _make(**kwargs: Any) -> DecisionGate:
        kwargs.setdefault("retry_base_delay", 0.0)
        kwargs.setdefault("retry_max_delay", 0.0)
        kwargs.setdefault("reasoning_timeout", 5.0)
        return DecisionGate(store, **kwargs)

    return _make


@pytest.fixture
def gate(make_gate: Callable[..., DecisionGate], knowledge: KnowledgeBase, fake_reasoner: FakeReasoner) -> DecisionGate:
    """Decision gate backed by the fake reasoner and the sample knowledge base."""
    return make_gate(knowledge=knowledge, reasoner=fake_reasoner)


@pytest.fixture
def git_runner() -> FakeGitRunner:
    """Fake git executable."""
    return FakeGitRunner()


@pytest.fixture
def worktrees(store: StateStore, tmp_path: Path, git_runner: FakeGitRunner) -> WorktreeCoordinator:
    """Worktree coordinator driving the fake git executable."""
    repo = tmp_path / "repo"
    repo.mkdir()
    return WorktreeCoordinator(
        store,
        repo,
        lock_retry_attempts=3,
        lock_retry_base_delay=0.0,
        lock_retry_max_delay=0.0,
        runner=git_runner,
    )


@pytest.fixture
def diamond_units() -> list[WorkUnit]:
    """A -> B, A -> C, B -> D, C -> D."""
    return [
        WorkUnit(id="A"),
        WorkUnit(id="B", dependencies=frozenset({"A"})),
        WorkUnit(id="C", dependencies=frozenset({"A"})),
        WorkUnit(id="D", dependencies=frozenset({"B", "C"})),
    ]
