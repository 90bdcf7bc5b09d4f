"""
Git worktree coordination for concurrent lanes.

Each work unit executes in its own git worktree so that concurrent lanes
never share a working copy. Paths and branches are derived from the unit id::

    <worktrees_dir>/unit-<slug>     # working copy
    <branch_prefix><slug>           # branch, "story/<slug>" by default

The coordinator keeps a registry of worktrees in the state store under
``worktrees/<slug>`` and guarantees at most one ACTIVE worktree per unit.
Registry updates and the git commands that back them are serialized by a
single coordinator lock.

Failure Handling:
    git failures caused by lock contention on the repository (a stale or
    concurrently held ``index.lock``) are classified as transient and retried
    with bounded exponential backoff. Any other failure, such as a missing
    base branch, raises ExternalCallError immediately.

Example:
    >>> coordinator = WorktreeCoordinator(store, repo_root="/repo")
    >>> worktree = await coordinator.create("1-3", base_branch="main")
    >>> worktree.path, worktree.branch
    ('/repo/wt/unit-1-3', 'story/1-3')
    >>> await coordinator.destroy("1-3")
"""

from __future__ import annotations

import asyncio
import re
from datetime import datetime
from pathlib import Path

import structlog

from conductor.engine.state_store import NOT_FOUND, StateStore
from conductor.exceptions import ExternalCallError, TransientExternalError, WorktreeConflictError
from conductor.models.domain import Worktree, WorktreeStatus, utc_now
from conductor.utils.async_subprocess import CommandRunner, run_command
from conductor.utils.retry import async_retry

log = structlog.get_logger(__name__)

WORKTREE_PREFIX = "worktrees/"

_SLUG_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")
_TRANSIENT_PATTERNS = (
    re.compile(r"index\.lock", re.IGNORECASE),
    re.compile(r"could not lock", re.IGNORECASE),
    re.compile(r"unable to create '[^']*\.lock'", re.IGNORECASE),
    re.compile(r"resource temporarily unavailable", re.IGNORECASE),
)
_NOT_A_WORKTREE = re.compile(r"is not a working tree|not a valid directory|no such file or directory", re.IGNORECASE)
_BRANCH_MISSING = re.compile(r"branch '[^']*' not found", re.IGNORECASE)
_BRANCH_EXISTS = re.compile(r"a branch named '[^']*' already exists", re.IGNORECASE)


def slugify_unit_id(unit_id: str) -> str:
    """Filesystem and ref safe form of a unit id.

    Raises:
        ValueError: If nothing usable remains after sanitizing.
    """
    slug = _SLUG_UNSAFE.sub("-", unit_id).strip("-.")
    slug = re.sub(r"\.{2,}", ".", slug)
    if slug.endswith(".lock"):
        slug = slug[: -len(".lock")]
    if not slug:
        raise ValueError(f"Cannot derive a worktree name from unit id {unit_id!r}")
    return slug


def is_transient_git_error(stderr: str) -> bool:
    return any(pattern.search(stderr or "") for pattern in _TRANSIENT_PATTERNS)


def parse_worktree_list(porcelain: str) -> list[dict[str, str]]:
    """Parse ``git worktree list --porcelain`` output into one dict per worktree."""
    entries: list[dict[str, str]] = []
    current: dict[str, str] = {}
    for line in porcelain.splitlines():
        if not line.strip():
            if current:
                entries.append(current)
                current = {}
            continue
        key, _, value = line.partition(" ")
        current[key] = value
    if current:
        entries.append(current)
    return entries


class WorktreeCoordinator:
    """Create and destroy per-unit git worktrees.

    Attributes:
        repo_root: Repository the worktrees belong to
        worktrees_dir: Directory holding the worktrees
        branch_prefix: Prefix of the per-unit branch names
        base_branch: Branch new worktrees start from unless overridden
    """

    def __init__(
        self,
        store: StateStore,
        repo_root: str | Path = ".",
        *,
        worktrees_dir: str | Path = "wt",
        branch_prefix: str = "story/",
        base_branch: str = "main",
        git_timeout: float | None = 120.0,
        lock_retry_attempts: int = 5,
        lock_retry_base_delay: float = 0.5,
        lock_retry_max_delay: float = 8.0,
        runner: CommandRunner | None = None,
    ) -> None:
        self.store = store
        self.repo_root = Path(repo_root).resolve()
        worktrees_path = Path(worktrees_dir)
        self.worktrees_dir = worktrees_path if worktrees_path.is_absolute() else self.repo_root / worktrees_path
        self.branch_prefix = branch_prefix
        self.base_branch = base_branch
        self.git_timeout = git_timeout
        self._runner: CommandRunner = runner or run_command
        self._lock = asyncio.Lock()
        self._git_with_retry = async_retry(
            max_attempts=lock_retry_attempts,
            base_delay=lock_retry_base_delay,
            max_delay=lock_retry_max_delay,
            exceptions=(TransientExternalError,),
        )(self._git_once)

    def path_for(self, unit_id: str) -> Path:
        return self.worktrees_dir / f"unit-{slugify_unit_id(unit_id)}"

    def branch_for(self, unit_id: str) -> str:
        return f"{self.branch_prefix}{slugify_unit_id(unit_id)}"

    @staticmethod
    def _key(unit_id: str) -> str:
        return f"{WORKTREE_PREFIX}{slugify_unit_id(unit_id)}"

    async def get(self, unit_id: str) -> Worktree | None:
        """Registry record for ``unit_id`` (active or destroyed), if any."""
        data = await self.store.load(self._key(unit_id))
        if data is NOT_FOUND:
            return None
        return Worktree.model_validate(data)

    async def list_active(self) -> list[Worktree]:
        worktrees = []
        for key in await self.store.list_keys(WORKTREE_PREFIX):
            data = await self.store.load(key)
            if data is NOT_FOUND:
                continue
            worktree = Worktree.model_validate(data)
            if worktree.is_active:
                worktrees.append(worktree)
        return sorted(worktrees, key=lambda w: w.unit_id)

    async def create(self, unit_id: str, base_branch: str | None = None) -> Worktree:
        """Create the worktree for ``unit_id`` on a fresh branch.

        Raises:
            ValueError: If the unit id cannot be turned into a worktree name.
            WorktreeConflictError: If the unit already owns an active worktree,
                or its branch survived an earlier destroy because it was not
                merged. The branch is never reset.
            ExternalCallError: If git fails for a reason other than lock
                contention, or lock contention outlasts the retries.
        """
        path = self.path_for(unit_id)
        branch = self.branch_for(unit_id)
        base = base_branch or self.base_branch

        async with self._lock:
            existing = await self.get(unit_id)
            if existing is not None and existing.is_active:
                raise WorktreeConflictError(unit_id, existing.path, existing.branch)

            path.parent.mkdir(parents=True, exist_ok=True)
            try:
                await self._git("worktree", "add", "-b", branch, str(path), base)
            except ExternalCallError as e:
                if not _BRANCH_EXISTS.search(e.stderr or ""):
                    raise
                log.warning("worktree_branch_exists", unit_id=unit_id, branch=branch)
                raise WorktreeConflictError(
                    unit_id,
                    str(path),
                    branch,
                    message=(
                        f"Branch {branch} for unit {unit_id} already exists and may hold unmerged work\n"
                        f"Suggestion: merge it or delete it with: git branch -D {branch}"
                    ),
                ) from e

            worktree = Worktree(unit_id=unit_id, path=str(path), branch=branch, base_branch=base)
            await self.store.persist(self._key(unit_id), worktree)

        log.info("worktree_created", unit_id=unit_id, path=str(path), branch=branch, base=base)
        return worktree

    async def destroy(self, unit_id: str) -> bool:
        """Remove the worktree and branch of ``unit_id``.

        Safe to call repeatedly and for units that never had a worktree, which
        is how lanes clean up after a crash. The branch is deleted with
        ``git branch -d``; an unmerged branch is kept and a warning logged.

        Returns:
            True if an active registry record was marked destroyed.

        Raises:
            ExternalCallError: If git fails for a reason other than the
                worktree already being gone.
        """
        async with self._lock:
            record = await self.get(unit_id)
            path = record.path if record else str(self.path_for(unit_id))
            branch = record.branch if record else self.branch_for(unit_id)

            try:
                await self._git("worktree", "remove", "--force", path)
            except ExternalCallError as e:
                if not _NOT_A_WORKTREE.search(e.stderr or ""):
                    raise
                log.debug("worktree_already_removed", unit_id=unit_id, path=path)

            await self._git("worktree", "prune")

            try:
                await self._git("branch", "-d", branch)
            except ExternalCallError as e:
                if _BRANCH_MISSING.search(e.stderr or ""):
                    log.debug("worktree_branch_missing", unit_id=unit_id, branch=branch)
                else:
                    log.warning("worktree_branch_kept", unit_id=unit_id, branch=branch, error=(e.stderr or e.message).strip())

            if record is None or not record.is_active:
                return False

            await self.store.persist(
                self._key(unit_id),
                record.model_copy(update={"status": WorktreeStatus.DESTROYED, "destroyed_at": utc_now()}),
            )

        log.info("worktree_destroyed", unit_id=unit_id, path=path)
        return True

    async def destroy_created_after(self, unit_id: str, timestamp: datetime) -> bool:
        """Destroy the unit's active worktree if it was created after ``timestamp``."""
        record = await self.get(unit_id)
        if record is None or not record.is_active or record.created_at <= timestamp:
            return False
        return await self.destroy(unit_id)

    async def reconcile(self) -> list[str]:
        """Mark registry records destroyed when git no longer knows their path.

        Returns:
            Unit ids whose records were updated.
        """
        async with self._lock:
            stdout = await self._git("worktree", "list", "--porcelain")
            known = {Path(entry["worktree"]).resolve() for entry in parse_worktree_list(stdout) if "worktree" in entry}

            reconciled = []
            for key in await self.store.list_keys(WORKTREE_PREFIX):
                data = await self.store.load(key)
                if data is NOT_FOUND:
                    continue
                worktree = Worktree.model_validate(data)
                if worktree.is_active and Path(worktree.path).resolve() not in known:
                    await self.store.persist(
                        key,
                        worktree.model_copy(update={"status": WorktreeStatus.DESTROYED, "destroyed_at": utc_now()}),
                    )
                    reconciled.append(worktree.unit_id)

        if reconciled:
            log.warning("worktrees_reconciled", unit_ids=reconciled)
        return reconciled

    async def _git(self, *args: str) -> str:
        return await self._git_with_retry(*args)

    async def _git_once(self, *args: str) -> str:
        command = " ".join(("git", *args))
        try:
            stdout, stderr, code = await self._runner(
                "git", *args, cwd=self.repo_root, check=False, timeout=self.git_timeout
            )
        except TimeoutError as e:
            raise ExternalCallError("git command timed out", target=command) from e
        except FileNotFoundError as e:
            raise ExternalCallError("git executable not found", target=command) from e

        if code != 0:
            if is_transient_git_error(stderr):
                raise TransientExternalError("git repository is locked", target=command, stderr=stderr, returncode=code)
            raise ExternalCallError("git command failed", target=command, stderr=stderr, returncode=code)
        return stdout
