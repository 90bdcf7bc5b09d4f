"""Async subprocess utilities.

Provides non-blocking subprocess execution for use in async contexts. The
worktree coordinator runs every git command through ``run_command`` so that
lanes never stall the event loop.

Example:
    >>> from conductor.utils.async_subprocess import run_command
    >>> stdout, stderr, code = await run_command("git", "worktree", "list", "--porcelain", cwd="/repo")
    >>> if code == 0:
    ...     print(stdout)
"""

import asyncio
import subprocess
from collections.abc import Awaitable
from pathlib import Path
from typing import Protocol


class CommandRunner(Protocol):
    """Callable signature shared by ``run_command`` and test doubles."""

    def __call__(
        self,
        *args: str,
        cwd: Path | str | None = None,
        check: bool = True,
        timeout: float | None = None,
    ) -> Awaitable[tuple[str, str, int]]: ...


async def run_command(
    *args: str,
    cwd: Path | str | None = None,
    check: bool = True,
    timeout: float | None = None,
) -> tuple[str, str, int]:
    """Run a command asynchronously without shell interpolation.

    Args:
        *args: Command and arguments as separate strings, for example
            "git", "worktree", "add", "-b", "story/1-3", "wt/unit-1-3", "main"
        cwd: Working directory for command execution
        check: Raise CalledProcessError on a non-zero exit code when True
        timeout: Maximum seconds to wait. On expiry the process is killed and
            TimeoutError is raised.

    Returns:
        Tuple of (stdout, stderr, return_code) with output decoded as UTF-8.

    Raises:
        subprocess.CalledProcessError: If check=True and the command exits
            non-zero. The exception carries stdout and stderr.
        TimeoutError: If the timeout is exceeded.
        FileNotFoundError: If the executable is not found.
    """
    process = await asyncio.create_subprocess_exec(
        *args,
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            process.communicate(),
            timeout=timeout,
        )
    except TimeoutError:
        process.kill()
        await process.wait()
        raise

    stdout = (stdout_bytes or b"").decode("utf-8", errors="replace")
    stderr = (stderr_bytes or b"").decode("utf-8", errors="replace")

    if check and process.returncode != 0:
        raise subprocess.CalledProcessError(
            process.returncode or 1,
            args,
            stdout,
            stderr,
        )

    return stdout, stderr, process.returncode or 0
