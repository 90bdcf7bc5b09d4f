"""
Crash-safe key-value persistence for orchestration state.

This module provides the StateStore class, the only component that touches
the state directory. Workflow states, escalations, the worktree registry,
the decision audit log and exported plans are all stored under keys::

    workflows/<unit-id>
    escalations/<escalation-id>
    worktrees/<unit-id>
    audit/decisions
    plans/<name>

Each key maps to one JSON file, ``<root>/<key>.json``.

Durability:
    ``persist`` writes to a uniquely named ``*.tmp`` file in the target
    directory, flushes and fsyncs it, then atomically replaces the target.
    A reader therefore observes either the previous committed value or the
    new one, never a partial write. If any step fails the temporary file is
    removed, the previous value is left untouched and PersistenceError is
    raised.

Concurrency Model:
    Writes to the same key are serialized by a per-key asyncio lock. Distinct
    keys proceed concurrently. ``transaction`` holds the key lock across a
    read-modify-persist cycle.

Example:
    >>> store = StateStore(".conductor/state")
    >>> await store.persist("workflows/1-3", {"current_state": "in_progress"})
    >>> await store.load("workflows/1-3")
    {'current_state': 'in_progress'}
    >>> await store.load("workflows/missing") is NOT_FOUND
    True
"""

import asyncio
import json
import os
import re
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from copy import deepcopy
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os
import structlog
from pydantic import BaseModel

from conductor.exceptions import PersistenceError

log = structlog.get_logger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*(/[A-Za-z0-9][A-Za-z0-9_.-]*)*$")
_TMP_SUFFIX = ".tmp"


class _Missing(Enum):
    NOT_FOUND = "not_found"

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NOT_FOUND"


NOT_FOUND = _Missing.NOT_FOUND
"""Returned by ``StateStore.load`` when no value has been committed for a key."""


def _json_default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, set | frozenset):
        return sorted(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def validate_key(key: str) -> str:
    """Return ``key`` if it is a valid store key, raise ValueError otherwise.

    Keys are one or more ``/``-separated segments. Each segment starts with a
    letter or digit and may contain letters, digits, ``_``, ``.`` and ``-``.
    """
    if not isinstance(key, str) or not _KEY_PATTERN.match(key):
        raise ValueError(f"Invalid state key: {key!r}")
    return key


class StateStore:
    """Atomic JSON persistence rooted at a state directory.

    Attributes:
        root: Directory where state files are stored.
    """

    def __init__(self, root: str | Path) -> None:
        """Initialize the store, creating the state directory if needed.

        Args:
            root: Path to the state directory
        """
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        # Per-key locks serializing writers of the same key
        self._locks: dict[str, asyncio.Lock] = {}
        self._locks_lock = asyncio.Lock()

    async def _get_lock(self, key: str) -> asyncio.Lock:
        async with self._locks_lock:
            if key not in self._locks:
                self._locks[key] = asyncio.Lock()
            return self._locks[key]

    def path_for(self, key: str) -> Path:
        """Filesystem path of the committed value for ``key``."""
        return self.root / f"{validate_key(key)}.json"

    async def persist(self, key: str, value: Any) -> None:
        """Atomically commit ``value`` under ``key``.

        Args:
            key: Store key, for example ``workflows/1-3``
            value: JSON-serializable data or a Pydantic model

        Raises:
            ValueError: If the key is invalid.
            PersistenceError: If serialization or any write step fails. The
                previously committed value is intact and the call can be
                retried.
        """
        path = self.path_for(key)
        lock = await self._get_lock(key)
        async with lock:
            await self._write(key, path, value)

    async def load(self, key: str) -> Any:
        """Return the committed value for ``key``, or NOT_FOUND.

        Raises:
            ValueError: If the key is invalid.
            PersistenceError: If the committed file cannot be read or is not
                valid JSON.
        """
        return await self._read(key, self.path_for(key))

    async def delete(self, key: str) -> bool:
        """Remove the committed value for ``key``.

        Returns:
            True if a value was removed, False if none existed.
        """
        path = self.path_for(key)
        lock = await self._get_lock(key)
        async with lock:
            try:
                await aiofiles.os.remove(path)
            except FileNotFoundError:
                return False
            except OSError as e:
                raise PersistenceError(f"Failed to delete value: {e}", key=key) from e
        log.debug("state_deleted", key=key)
        return True

    async def list_keys(self, prefix: str = "") -> list[str]:
        """Committed keys starting with ``prefix``, sorted.

        Temporary files left by interrupted writes are ignored.
        """
        keys = []
        for path in self.root.rglob("*.json"):
            key = path.relative_to(self.root).with_suffix("").as_posix()
            if key.startswith(prefix) and _KEY_PATTERN.match(key):
                keys.append(key)
        return sorted(keys)

    @asynccontextmanager
    async def transaction(self, key: str, default: Any = None) -> AsyncIterator[Any]:
        """Read-modify-persist a mutable value under the key lock.

        The value is loaded (or a copy of ``default`` is used when the key is
        missing) and yielded for in-place modification. It is persisted only
        if the block exits without an exception.

        Args:
            key: Store key
            default: Value to start from when nothing is committed. A fresh
                empty dict is used when None.

        Yields:
            The mutable value to modify in place.

        Example:
            >>> async with store.transaction("audit/decisions", default=[]) as entries:
            ...     entries.append({"question": "...", "confidence": 0.9})
        """
        path = self.path_for(key)
        lock = await self._get_lock(key)
        async with lock:
            value = await self._read(key, path)
            if value is NOT_FOUND:
                value = deepcopy(default) if default is not None else {}
            try:
                yield value
            except Exception:
                log.error("state_transaction_failed", key=key)
                raise
            await self._write(key, path, value)

    async def cleanup_stale_temp_files(self) -> int:
        """Remove temporary files left behind by interrupted writes.

        Must only be called while no writes are in flight, typically at
        startup.

        Returns:
            Number of files removed.
        """
        removed = 0
        for tmp_path in self.root.rglob(f"*{_TMP_SUFFIX}"):
            try:
                await aiofiles.os.remove(tmp_path)
                removed += 1
            except FileNotFoundError:
                continue
        if removed:
            log.info("stale_temp_files_removed", count=removed, root=str(self.root))
        return removed

    async def _read(self, key: str, path: Path) -> Any:
        try:
            async with aiofiles.open(path, encoding="utf-8") as f:
                content = await f.read()
        except FileNotFoundError:
            return NOT_FOUND
        except OSError as e:
            raise PersistenceError(f"Failed to read value: {e}", key=key) from e

        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Committed value is not valid JSON: {e}", key=key) from e

    async def _write(self, key: str, path: Path, value: Any) -> None:
        try:
            payload = json.dumps(value, indent=2, default=_json_default)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Value is not serializable: {e}", key=key) from e

        tmp_path = path.parent / f".{path.stem}.{uuid.uuid4().hex}{_TMP_SUFFIX}"
        committed = False
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(payload)
                await f.flush()
                await asyncio.to_thread(os.fsync, f.fileno())
            await aiofiles.os.replace(tmp_path, path)
            committed = True
        except OSError as e:
            raise PersistenceError(f"Failed to persist value: {e}", key=key) from e
        finally:
            if not committed:
                tmp_path.unlink(missing_ok=True)

        log.debug("state_persisted", key=key)
