"""RegistryPublisher — idempotent push of built images to a registry."""

from __future__ import annotations

import abc
import logging
import re
import subprocess
import threading

from shipline.config import PUSH_TIMEOUT
from shipline.deployment.errors import PublishError, PublishFailure
from shipline.deployment.models import ArtifactRef, PublishedRef
from shipline.process import CommandError, run_command

logger = logging.getLogger(__name__)

_DIGEST_RE = re.compile(r"digest:\s*(sha256:[0-9a-f]{64})")

_UNAUTHORIZED_MARKERS = (
    "unauthorized",
    "denied",
    "authentication required",
    "no basic auth credentials",
    "403 forbidden",
)
_QUOTA_MARKERS = (
    "toomanyrequests",
    "too many requests",
    "quota",
    "rate limit",
    "limit exceeded",
)


def classify_push_failure(output: str) -> PublishFailure:
    """Map registry CLI output to a PublishFailure category."""
    text = output.lower()
    if any(m in text for m in _UNAUTHORIZED_MARKERS):
        return PublishFailure.UNAUTHORIZED
    if any(m in text for m in _QUOTA_MARKERS):
        return PublishFailure.QUOTA_EXCEEDED
    return PublishFailure.NETWORK_FAILURE


class RegistryPublisher(abc.ABC):
    """Push artifacts to a registry exactly once per ArtifactRef.

    Subclasses implement :meth:`_push`.  :meth:`publish` caches results so a
    second publish of the same reference is a no-op success, and serializes
    concurrent publishes of one reference so tag writes never interleave.
    """

    def __init__(self) -> None:
        self._published: dict[ArtifactRef, PublishedRef] = {}
        self._guard = threading.Lock()
        self._ref_locks: dict[ArtifactRef, threading.Lock] = {}

    def publish(self, artifact: ArtifactRef) -> PublishedRef:
        """Push *artifact* and return its PublishedRef.

        Raises
        ------
        PublishError
            Classified as unauthorized, network_failure, or quota_exceeded.
        """
        with self._guard:
            ref_lock = self._ref_locks.setdefault(artifact, threading.Lock())

        with ref_lock:
            cached = self._published.get(artifact)
            if cached is not None:
                logger.info("%s already published, skipping push", artifact.uri)
                return cached

            published = self._push(artifact)
            self._published[artifact] = published
            logger.info("Published %s", published.pinned_uri)
            return published

    def is_published(self, artifact: ArtifactRef) -> bool:
        return artifact in self._published

    @abc.abstractmethod
    def _push(self, artifact: ArtifactRef) -> PublishedRef:
        """Perform the actual push."""


class DockerRegistryPublisher(RegistryPublisher):
    """Publish with ``docker push``.

    Parameters
    ----------
    username, password:
        Optional registry credentials.  When given, ``docker login`` runs once
        before the first push with the password fed through stdin.
    """

    def __init__(
        self,
        *,
        username: str = "",
        password: str = "",
        docker: str = "docker",
        timeout: float = PUSH_TIMEOUT,
    ) -> None:
        super().__init__()
        self.docker = docker
        self.timeout = timeout
        self._username = username
        self._password = password
        self._logged_in: set[str] = set()

    def _push(self, artifact: ArtifactRef) -> PublishedRef:
        self._login(artifact.registry_host)
        result = self._run(self.docker, "push", artifact.uri)

        match = _DIGEST_RE.search(result.stdout)
        return PublishedRef(
            artifact=artifact,
            remote_digest=match.group(1) if match else "",
        )

    def _login(self, registry_host: str) -> None:
        if not self._username or registry_host in self._logged_in:
            return
        logger.info("Logging in to registry %s as %s", registry_host or "default", self._username)
        args = [self.docker, "login", "--username", self._username, "--password-stdin"]
        if registry_host:
            args.append(registry_host)
        self._run(*args, input=self._password)
        self._logged_in.add(registry_host)

    def _run(self, *args: str, input: str | None = None) -> subprocess.CompletedProcess[str]:
        try:
            return run_command(*args, input=input, timeout=self.timeout)
        except CommandError as exc:
            output = ""
            if exc.result is not None:
                output = f"{exc.result.stdout}\n{exc.result.stderr}"
            kind = classify_push_failure(output)
            raise PublishError(kind, f"{args[1]} failed: {output.strip()[-500:]}") from exc
        except subprocess.TimeoutExpired as exc:
            raise PublishError(
                PublishFailure.NETWORK_FAILURE, f"{args[1]} timed out after {self.timeout}s",
            ) from exc
        except FileNotFoundError as exc:
            raise PublishError(
                PublishFailure.NETWORK_FAILURE, f"'{self.docker}' executable not found",
            ) from exc
