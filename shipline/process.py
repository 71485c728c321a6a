"""Thin wrapper around :func:`subprocess.run` for external tools.

All docker and ssh operations go through :func:`run_command`; no Docker SDK
or paramiko dependency.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)


class CommandError(Exception):
    """Raised when an external command returns a non-zero exit code."""

    def __init__(self, message: str, result: subprocess.CompletedProcess[str] | None = None) -> None:
        super().__init__(message)
        self.result = result


def run_command(
    *args: str,
    cwd: str | Path | None = None,
    input: str | None = None,
    timeout: float | None = None,
    check: bool = True,
) -> subprocess.CompletedProcess[str]:
    """Execute an external command and return the completed process.

    Parameters
    ----------
    *args:
        Program followed by its arguments.
    cwd:
        Working directory for the command.
    input:
        Text fed to the command's stdin.  Used for scripts and passwords,
        which therefore never appear on the command line.
    timeout:
        Seconds before :class:`subprocess.TimeoutExpired` is raised.
    check:
        If *True*, raise :class:`CommandError` on non-zero exit.
    """
    logger.debug("%s (cwd=%s)", " ".join(args), cwd)
    result = subprocess.run(
        list(args),
        cwd=cwd,
        input=input,
        capture_output=True,
        text=True,
        timeout=timeout,
    )
    if check and result.returncode != 0:
        raise CommandError(
            f"{args[0]} {' '.join(args[1:2])} failed (rc={result.returncode}): "
            f"{result.stderr.strip()}",
            result,
        )
    return result
