"""Tests for async subprocess utilities."""

import subprocess
import sys

import pytest

from conductor.utils.async_subprocess import run_command


class TestRunCommand:
    """Tests for run_command."""

    @pytest.mark.asyncio
    async def test_captures_output(self):
        """Test that stdout, stderr and the exit code are returned."""
        stdout, stderr, code = await run_command(
            sys.executable, "-c", "import sys; print('out'); print('err', file=sys.stderr)"
        )

        assert stdout.strip() == "out"
        assert stderr.strip() == "err"
        assert code == 0

    @pytest.mark.asyncio
    async def test_nonzero_exit_raises_when_checked(self):
        """Test that check=True raises CalledProcessError with captured output."""
        with pytest.raises(subprocess.CalledProcessError) as exc_info:
            await run_command(sys.executable, "-c", "import sys; sys.stderr.write('bad'); sys.exit(3)")

        assert exc_info.value.returncode == 3
        assert exc_info.value.stderr == "bad"

    @pytest.mark.asyncio
    async def test_nonzero_exit_returned_when_unchecked(self):
        """Test that check=False returns the exit code instead of raising."""
        _, _, code = await run_command(sys.executable, "-c", "import sys; sys.exit(2)", check=False)

        assert code == 2

    @pytest.mark.asyncio
    async def test_cwd_is_respected(self, tmp_path):
        """Test that the command runs in the requested directory."""
        stdout, _, _ = await run_command(sys.executable, "-c", "import os; print(os.getcwd())", cwd=tmp_path)

        assert stdout.strip() == str(tmp_path.resolve())

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self):
        """Test that an expired timeout raises TimeoutError."""
        with pytest.raises(TimeoutError):
            await run_command(sys.executable, "-c", "import time; time.sleep(10)", timeout=0.2)

    @pytest.mark.asyncio
    async def test_missing_executable(self):
        """Test that a missing executable raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            await run_command("definitely-not-a-real-binary-xyz")
