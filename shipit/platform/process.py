"""Runs git, gh and docker, returning a Result instead of raising.

Wraps ``subprocess.run`` so that ``git``, ``gh`` and ``docker`` invocations
never raise: a non-zero exit, a timeout or a missing executable all come back
as ``Err(ProcessError)`` carrying the captured output.

Usage:
    result = run(["docker", "build", "."], cwd=checkout)
    match result:
        case Ok(stdout):
            ...
        case Err(error):
            print(error.diagnostic)
"""

from __future__ import annotations

import os
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from shipit.core.result import Err, Ok, Result

__all__ = ["ProcessError", "Runner", "run"]


@dataclass(frozen=True, slots=True)
class ProcessError:
    """A command that exited non-zero, timed out or could not start.

    Attributes:
        command: argv as executed.
        returncode: Exit status; -1 when the process never ran or was killed on timeout.
        stdout: Captured output.
        stderr: Captured diagnostics (what build and deploy failures report).
    """

    command: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def diagnostic(self) -> str:
        """Best human-readable explanation of the failure."""
        text = self.stderr.strip() or self.stdout.strip()
        return text or str(self)

    def __str__(self) -> str:
        cmd_str = " ".join(self.command[:3])
        if len(self.command) > 3:
            cmd_str += " ..."
        return f"{cmd_str} failed (exit {self.returncode})"


class Runner(Protocol):
    """Signature shared by ``run`` and the fakes used in tests."""

    def __call__(
        self,
        cmd: list[str],
        cwd: Path,
        env: Mapping[str, str] | None = None,
        *,
        timeout: float | None = None,
    ) -> Result[str, ProcessError]: ...


def run(
    cmd: list[str],
    cwd: Path,
    env: Mapping[str, str] | None = None,
    *,
    timeout: float | None = None,
) -> Result[str, ProcessError]:
    """Run ``cmd`` in ``cwd`` and capture its output.

    Args:
        cmd: argv.
        cwd: Working directory (a checkout for builds and deploys).
        env: Variables layered over the current environment.
        timeout: Seconds before the process is killed; None waits forever.

    Returns:
        Ok(stdout) on exit 0, otherwise Err(ProcessError).
    """
    full_env: dict[str, str] | None = None
    if env is not None:
        full_env = os.environ.copy()
        full_env.update(env)

    try:
        proc = subprocess.run(
            cmd,
            cwd=str(cwd),
            env=full_env,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        return Err(
            ProcessError(
                command=tuple(cmd),
                returncode=-1,
                stdout=e.stdout if isinstance(e.stdout, str) else "",
                stderr=f"Command timed out after {timeout}s",
            )
        )
    except OSError as e:
        return Err(
            ProcessError(
                command=tuple(cmd),
                returncode=-1,
                stdout="",
                stderr=str(e),
            )
        )

    if proc.returncode != 0:
        return Err(
            ProcessError(
                command=tuple(cmd),
                returncode=proc.returncode,
                stdout=proc.stdout,
                stderr=proc.stderr,
            )
        )

    return Ok(proc.stdout)
