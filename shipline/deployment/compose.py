"""Remote docker compose: apply scripts and the compose file template."""

from __future__ import annotations

import logging
from pathlib import Path

from shipline.config import IMAGE_ENV_VAR
from shipline.deployment.models import ArtifactRef, DeploymentTarget, PublishedRef, ScriptSpec

logger = logging.getLogger(__name__)

# Written by every apply so later compose calls on the host (status checks,
# manual restarts) interpolate the same image
RELEASE_ENV_FILE = ".shipline-release.env"

_COMPOSE = f"docker compose --env-file {RELEASE_ENV_FILE}"

_COMPOSE_TEMPLATE = """\
services:
  {service}:
    image: ${{{image_var}:?image reference required}}
    ports:
      - "{port}:{port}"
    env_file:
      - .env
    restart: unless-stopped
"""


def apply_script(
    target: DeploymentTarget,
    image: ArtifactRef | PublishedRef,
    *,
    pre_commands: tuple[str, ...] = (),
) -> ScriptSpec:
    """Pull *image* and force-recreate the compose project on *target*.

    A PublishedRef deploys by digest when the registry reported one, so the
    host runs exactly the bytes that were pushed.
    """
    uri = image.pinned_uri if isinstance(image, PublishedRef) else image.uri
    return ScriptSpec(
        commands=(
            *pre_commands,
            f"printf '%s=%s\\n' {IMAGE_ENV_VAR} \"${IMAGE_ENV_VAR}\" > {RELEASE_ENV_FILE}",
            f"{_COMPOSE} pull",
            f"{_COMPOSE} up -d --force-recreate --remove-orphans",
        ),
        env={IMAGE_ENV_VAR: uri},
        workdir=target.remote_dir,
    )


def process_check_script(target: DeploymentTarget, service: str = "") -> ScriptSpec:
    """Succeeds only when every compose service (or *service*) is running."""
    check = (
        f"test -z \"$({_COMPOSE} ps --status exited --status dead -q"
        f"{' ' + service if service else ''})\" && "
        f"test -n \"$({_COMPOSE} ps --status running -q{' ' + service if service else ''})\""
    )
    return ScriptSpec(commands=(check,), workdir=target.remote_dir)


class ComposeGenerator:
    """Generate the compose file that the remote apply script drives."""

    def generate_compose(
        self,
        project_path: str | Path,
        service: str = "app",
        port: int = 8000,
    ) -> Path:
        """Write docker-compose.yml to *project_path*.

        The image is read from ``$SHIPLINE_IMAGE`` so the apply script can pin
        it per release.
        """
        root = Path(project_path)
        root.mkdir(parents=True, exist_ok=True)
        path = root / "docker-compose.yml"
        path.write_text(
            _COMPOSE_TEMPLATE.format(service=service, port=port, image_var=IMAGE_ENV_VAR),
            encoding="utf-8",
        )
        logger.info("docker-compose.yml generated: %s", path)
        return path
