"""RemoteExecutor — run a bounded command script on a target over SSH."""

from __future__ import annotations

import abc
import logging
import shlex
import subprocess
import time
from pathlib import Path

from shipline.config import DEPLOY_TIMEOUT, SSH_CONNECT_TIMEOUT
from shipline.deployment.errors import ExecError, ExecFailure
from shipline.deployment.models import DeploymentTarget, ExecutionResult, ScriptSpec
from shipline.process import run_command

logger = logging.getLogger(__name__)

# ssh reserves 255 for its own errors
SSH_ERROR_EXIT = 255

_AUTH_MARKERS = (
    "permission denied",
    "host key verification failed",
    "no supported authentication methods",
    "too many authentication failures",
)


class RemoteExecutor(abc.ABC):
    """Execute a ScriptSpec on a target.

    Implementations never retry; retry policy belongs to the coordinator.
    """

    @abc.abstractmethod
    def execute(
        self,
        target: DeploymentTarget,
        script: ScriptSpec,
        timeout: float = DEPLOY_TIMEOUT,
    ) -> ExecutionResult:
        """Run *script* on *target*.

        Returns the ExecutionResult of a fully successful run.

        Raises
        ------
        ExecError
            Classified as connection_failed, auth_failed, timeout, or
            non_zero_exit.  ``result`` is attached when output exists.
        """


def render_script(script: ScriptSpec) -> str:
    """Render *script* as a bash program that stops at the first failure."""
    lines = ["set -euo pipefail"]
    for key, value in sorted(script.env.items()):
        lines.append(f"export {key}={shlex.quote(value)}")
    if script.workdir:
        # Leave ~ unquoted so the remote shell expands it
        workdir = script.workdir
        if workdir.startswith("~/"):
            lines.append(f"cd ~/{shlex.quote(workdir[2:])}")
        else:
            lines.append(f"cd {shlex.quote(workdir)}")
    lines.extend(script.commands)
    return "\n".join(lines) + "\n"


def parse_endpoint(endpoint: str) -> tuple[str, int | None]:
    """Split ``user@host:port`` into ``("user@host", port)``."""
    dest, sep, port = endpoint.rpartition(":")
    if sep and port.isdigit():
        return dest, int(port)
    return endpoint, None


class SSHExecutor(RemoteExecutor):
    """Run scripts through the OpenSSH client.

    Parameters
    ----------
    identity_file:
        Private key path (the credential handle).  Never logged.
    known_hosts:
        Optional known_hosts file; host keys are always verified.
    connect_timeout:
        Seconds allowed for the TCP + SSH handshake.
    """

    def __init__(
        self,
        *,
        identity_file: str | Path | None = None,
        known_hosts: str | Path | None = None,
        connect_timeout: int = SSH_CONNECT_TIMEOUT,
        ssh: str = "ssh",
    ) -> None:
        self._identity_file = str(Path(identity_file).expanduser()) if identity_file else ""
        self.known_hosts = str(Path(known_hosts).expanduser()) if known_hosts else ""
        self.connect_timeout = connect_timeout
        self.ssh = ssh

    def build_command(self, target: DeploymentTarget) -> list[str]:
        """Return the ssh argv used to reach *target*."""
        dest, port = parse_endpoint(target.endpoint)
        args = [
            self.ssh,
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={self.connect_timeout}",
            "-o", "StrictHostKeyChecking=yes",
        ]
        if self.known_hosts:
            args += ["-o", f"UserKnownHostsFile={self.known_hosts}"]
        if self._identity_file:
            args += ["-i", self._identity_file, "-o", "IdentitiesOnly=yes"]
        if port is not None:
            args += ["-p", str(port)]
        args += [dest, "bash", "-s"]
        return args

    def execute(
        self,
        target: DeploymentTarget,
        script: ScriptSpec,
        timeout: float = DEPLOY_TIMEOUT,
    ) -> ExecutionResult:
        args = self.build_command(target)
        logger.info(
            "Executing %d command(s) on %s (timeout=%ss)",
            len(script.commands), target.target_id, timeout,
        )
        start = time.monotonic()
        try:
            proc = run_command(*args, input=render_script(script), timeout=timeout, check=False)
        except subprocess.TimeoutExpired as exc:
            result = ExecutionResult.capture(-1, _elapsed_ms(start), _decode(exc.output) + _decode(exc.stderr))
            raise ExecError(
                ExecFailure.TIMEOUT, f"Remote script on {target.target_id} exceeded {timeout}s", result,
            ) from exc
        except FileNotFoundError as exc:
            raise ExecError(
                ExecFailure.CONNECTION_FAILED, f"'{self.ssh}' executable not found",
            ) from exc
        except OSError as exc:
            raise ExecError(
                ExecFailure.CONNECTION_FAILED, f"Could not run '{self.ssh}': {exc}",
            ) from exc

        output = proc.stdout + proc.stderr
        result = ExecutionResult.capture(proc.returncode, _elapsed_ms(start), output)

        if proc.returncode == 0:
            return result
        if proc.returncode == SSH_ERROR_EXIT:
            stderr = proc.stderr.lower()
            if any(m in stderr for m in _AUTH_MARKERS):
                raise ExecError(
                    ExecFailure.AUTH_FAILED, f"SSH authentication to {target.target_id} failed", result,
                )
            raise ExecError(
                ExecFailure.CONNECTION_FAILED, f"SSH connection to {target.target_id} failed", result,
            )
        raise ExecError(
            ExecFailure.NON_ZERO_EXIT,
            f"Remote script on {target.target_id} exited with {proc.returncode}",
            result,
        )


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _decode(data: bytes | str | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data
