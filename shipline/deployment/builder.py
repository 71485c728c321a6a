"""ArtifactBuilder — turns a source revision into a content-addressed image."""

from __future__ import annotations

import abc
import logging
import subprocess
from pathlib import Path

from pydantic import BaseModel, Field

from shipline.config import BUILD_TIMEOUT
from shipline.deployment.errors import BuildError
from shipline.deployment.models import ArtifactRef, normalize_tag
from shipline.process import CommandError, run_command
from shipline.security.hasher import Hasher

logger = logging.getLogger(__name__)


class BuildContext(BaseModel):
    """File set plus build instructions handed over by the CI trigger."""

    path: Path
    dockerfile: str = "Dockerfile"
    build_args: dict[str, str] = Field(default_factory=dict)
    platform: str = ""

    @property
    def dockerfile_path(self) -> Path:
        return self.path / self.dockerfile


class ArtifactBuilder(abc.ABC):
    """Abstract container build step."""

    @abc.abstractmethod
    def build(self, source_revision: str, context: BuildContext) -> ArtifactRef:
        """Build *context* at *source_revision*.

        Returns the resulting ArtifactRef.

        Raises
        ------
        BuildError
            On any failure.  No ArtifactRef exists for a failed build.
        """


class DockerArtifactBuilder(ArtifactBuilder):
    """Build images with the ``docker`` CLI.

    Parameters
    ----------
    registry_host:
        Registry the image will later be pushed to, e.g.
        ``123456789012.dkr.ecr.eu-west-1.amazonaws.com``.
    repository:
        Repository name inside the registry.
    docker:
        Docker executable.
    timeout:
        Seconds allowed for the build.
    """

    def __init__(
        self,
        registry_host: str,
        repository: str,
        *,
        docker: str = "docker",
        timeout: float = BUILD_TIMEOUT,
    ) -> None:
        self.registry_host = registry_host
        self.repository = repository
        self.docker = docker
        self.timeout = timeout

    def build(self, source_revision: str, context: BuildContext) -> ArtifactRef:
        if not source_revision:
            raise BuildError("Source revision is empty")
        if not context.path.is_dir():
            raise BuildError(f"Build context not found: {context.path}")
        if not context.dockerfile_path.is_file():
            raise BuildError(f"Dockerfile not found: {context.dockerfile_path}")

        context_digest = Hasher.hash_context(context.path)
        ref = ArtifactRef(
            registry_host=self.registry_host,
            repository=self.repository,
            digest_or_tag=normalize_tag(source_revision),
            source_revision=source_revision,
            context_digest=context_digest,
        )

        args = [
            self.docker, "build",
            "-t", ref.uri,
            "-f", str(context.dockerfile_path),
            "--label", f"org.opencontainers.image.revision={source_revision}",
        ]
        for key, value in sorted(context.build_args.items()):
            args += ["--build-arg", f"{key}={value}"]
        if context.platform:
            args += ["--platform", context.platform]
        args.append(str(context.path))

        logger.info("Building %s from %s", ref.uri, context.path)
        self._run(args, f"docker build failed for {ref.uri}")

        try:
            inspect = self._run(
                [self.docker, "image", "inspect", "--format", "{{.Id}}", ref.uri],
                f"docker image inspect failed for {ref.uri}",
            )
        except BuildError:
            self._discard(ref)
            raise

        image_id = inspect.stdout.strip()
        if not image_id:
            self._discard(ref)
            raise BuildError(f"Build produced no image id for {ref.uri}")

        built = ref.model_copy(update={"image_id": image_id})
        logger.info("Built %s (%s)", built.uri, image_id[:19])
        return built

    def _discard(self, ref: ArtifactRef) -> None:
        """Drop the tag so nothing half-registered survives."""
        try:
            run_command(self.docker, "image", "rm", "-f", ref.uri, timeout=self.timeout, check=False)
        except (subprocess.SubprocessError, OSError) as exc:
            logger.warning("Could not remove tag %s: %s", ref.uri, exc)

    def _run(self, args: list[str], message: str) -> subprocess.CompletedProcess[str]:
        try:
            return run_command(*args, timeout=self.timeout)
        except CommandError as exc:
            raise BuildError(f"{message}: {_tail(exc.result)}") from exc
        except subprocess.TimeoutExpired as exc:
            raise BuildError(f"{message}: timed out after {self.timeout}s") from exc
        except FileNotFoundError as exc:
            raise BuildError(f"{message}: '{self.docker}' executable not found") from exc


def _tail(result: subprocess.CompletedProcess[str] | None, lines: int = 20) -> str:
    if result is None:
        return ""
    text = (result.stderr or result.stdout or "").strip()
    return "\n".join(text.splitlines()[-lines:])
