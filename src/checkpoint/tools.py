"""
External tool invocation.

Database engines, the age encryption tool and rclone are driven as opaque
command-line programs. This module wraps subprocess so every call has a
bounded timeout and fails with a typed exception that callers can map to
their own status vocabulary (a timeout is not the same as a failure).
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import IO

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 300


class ToolError(Exception):
    """Raised when an external tool exits with a non-zero status."""

    def __init__(
        self,
        message: str,
        returncode: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class ToolNotFoundError(ToolError):
    """Raised when an external tool is not installed."""

    pass


class ToolTimeoutError(ToolError):
    """Raised when an external tool does not finish within its timeout."""

    pass


@dataclass
class ToolResult:
    """Captured output of a finished tool invocation."""

    returncode: int
    stdout: str
    stderr: str


def tool_available(name: str) -> bool:
    """Return True if the named executable is on PATH."""
    return shutil.which(name) is not None


def first_available(*names: str) -> str | None:
    """Return the first executable name that is on PATH, or None."""
    for name in names:
        if tool_available(name):
            return name
    return None


def run_tool(
    args: list[str],
    timeout: float | None = DEFAULT_TIMEOUT_SECONDS,
    stdin: IO[bytes] | None = None,
    stdout: IO[bytes] | None = None,
    env: dict[str, str] | None = None,
    check: bool = True,
    cwd: Path | None = None,
) -> ToolResult:
    """
    Run an external tool and capture its output.

    Args:
        args: Command line, program name first.
        timeout: Seconds before the process is killed. None waits forever.
        stdin: Optional binary file object streamed to the process.
        stdout: Optional binary file object receiving the process output.
            When given, ToolResult.stdout is empty.
        env: Full environment for the child process (None inherits).
        check: Raise ToolError on a non-zero exit status.
        cwd: Working directory for the child process.

    Returns:
        ToolResult with exit status and decoded output.

    Raises:
        ToolNotFoundError: If the program is not installed.
        ToolTimeoutError: If the timeout elapsed.
        ToolError: If check is set and the exit status is non-zero.
    """
    program = args[0]
    if shutil.which(program) is None:
        raise ToolNotFoundError(f"Required tool not found: {program}")

    logger.debug(f"Running tool: {' '.join(args)}")

    try:
        completed = subprocess.run(
            args,
            stdin=stdin,
            stdout=stdout if stdout is not None else subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=timeout,
            env=env,
            cwd=cwd,
        )
    except subprocess.TimeoutExpired as e:
        raise ToolTimeoutError(
            f"{program} timed out after {timeout} seconds"
        ) from e
    except OSError as e:
        raise ToolError(f"Cannot run {program}: {e}") from e

    out = completed.stdout.decode(errors="replace") if completed.stdout else ""
    err = completed.stderr.decode(errors="replace") if completed.stderr else ""

    if check and completed.returncode != 0:
        detail = err.strip().splitlines()[-1] if err.strip() else "no error output"
        raise ToolError(
            f"{program} exited with status {completed.returncode}: {detail}",
            returncode=completed.returncode,
            stderr=err,
        )

    return ToolResult(returncode=completed.returncode, stdout=out, stderr=err)
