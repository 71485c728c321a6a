"""ConfigManager — environment profiles, secrets, and target definitions."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from shipline.config import (
    DEFAULT_STATE_DIR,
    DEPLOY_TIMEOUT,
    HEALTH_INTERVAL,
    HEALTH_WINDOW,
    MAX_ATTEMPTS_CAP,
    TARGETS_FILE,
)
from shipline.deployment.models import DeploymentTarget
from shipline.security.redaction import redact

logger = logging.getLogger(__name__)

# All known configuration keys with defaults
_CONFIG_KEYS: dict[str, dict[str, Any]] = {
    "SHIPLINE_ENV": {"default": "development", "description": "Environment profile"},
    "SHIPLINE_STATE_DIR": {"default": str(DEFAULT_STATE_DIR), "description": "Locks, targets, journal"},
    "SHIPLINE_LOG_LEVEL": {"default": "INFO", "description": "Logging level"},
    "SHIPLINE_REGISTRY_HOST": {"default": "", "description": "Registry host, e.g. <account>.dkr.ecr.<region>.amazonaws.com"},
    "SHIPLINE_REPOSITORY": {"default": "app", "description": "Repository inside the registry"},
    "SHIPLINE_REGISTRY_USERNAME": {"default": "", "description": "Registry user (AWS for ECR)"},
    "SHIPLINE_REGISTRY_PASSWORD": {"default": "", "description": "Registry password or token (secret)"},
    "SHIPLINE_BUILD_CONTEXT": {"default": ".", "description": "Build context directory"},
    "SHIPLINE_DOCKERFILE": {"default": "Dockerfile", "description": "Dockerfile relative to the context"},
    "SHIPLINE_SSH_KEY": {"default": "", "description": "SSH private key path (secret handle)"},
    "SHIPLINE_SSH_KNOWN_HOSTS": {"default": "", "description": "known_hosts file for targets"},
    "SHIPLINE_REMOTE_LOGIN": {"default": "", "description": "Command run on the host before pulling, e.g. a registry login"},
    "SHIPLINE_MAX_ATTEMPTS": {"default": str(MAX_ATTEMPTS_CAP), "description": "Attempts per stage (hard cap 5)"},
    "SHIPLINE_DEPLOY_TIMEOUT": {"default": str(DEPLOY_TIMEOUT), "description": "Remote apply timeout, seconds"},
    "SHIPLINE_HEALTH_WINDOW": {"default": str(HEALTH_WINDOW), "description": "Health wait window, seconds"},
    "SHIPLINE_HEALTH_INTERVAL": {"default": str(HEALTH_INTERVAL), "description": "Seconds between health rounds"},
    "SHIPLINE_SLACK_WEBHOOK": {"default": "", "description": "Slack webhook URL (secret)"},
    "SHIPLINE_EVENT_WEBHOOK": {"default": "", "description": "JSON event webhook URL (secret)"},
}

_PROFILES: dict[str, dict[str, str]] = {
    "development": {
        "SHIPLINE_ENV": "development",
        "SHIPLINE_LOG_LEVEL": "DEBUG",
    },
    "production": {
        "SHIPLINE_ENV": "production",
        "SHIPLINE_LOG_LEVEL": "INFO",
    },
    "testing": {
        "SHIPLINE_ENV": "testing",
        "SHIPLINE_LOG_LEVEL": "DEBUG",
        "SHIPLINE_MAX_ATTEMPTS": "2",
        "SHIPLINE_HEALTH_WINDOW": "5",
        "SHIPLINE_HEALTH_INTERVAL": "1",
    },
}


class PipelineSettings(BaseModel):
    """Typed view of the merged configuration."""

    env: str = "development"
    state_dir: Path = DEFAULT_STATE_DIR
    log_level: str = "INFO"
    registry_host: str = ""
    repository: str = "app"
    registry_username: str = ""
    registry_password: str = Field(default="", repr=False)
    build_context: Path = Path(".")
    dockerfile: str = "Dockerfile"
    ssh_key: str = Field(default="", repr=False)
    ssh_known_hosts: str = ""
    remote_login: str = Field(default="", repr=False)
    max_attempts: int = MAX_ATTEMPTS_CAP
    deploy_timeout: float = DEPLOY_TIMEOUT
    health_window: float = HEALTH_WINDOW
    health_interval: float = HEALTH_INTERVAL
    slack_webhook: str = Field(default="", repr=False)
    event_webhook: str = Field(default="", repr=False)

    @classmethod
    def from_config(cls, config: dict[str, str], project_root: str | Path = ".") -> PipelineSettings:
        """Build settings from a flat SHIPLINE_* dict.

        Relative paths are resolved against *project_root*.
        """
        root = Path(project_root)
        values = {
            key.removeprefix("SHIPLINE_").lower(): value
            for key, value in config.items()
            if key.startswith("SHIPLINE_")
        }
        settings = cls.model_validate({k: v for k, v in values.items() if k in cls.model_fields})
        if not settings.state_dir.is_absolute():
            settings.state_dir = root / settings.state_dir
        if not settings.build_context.is_absolute():
            settings.build_context = root / settings.build_context
        return settings


class ConfigManager:
    """Manage Shipline configuration across environments."""

    def generate_env_template(self, project_path: str | Path) -> Path:
        """Create .env.example with all config keys.

        Returns the path to the generated file.
        """
        root = Path(project_path)
        env_path = root / ".env.example"

        lines = ["# Shipline configuration template", "# Copy to .env and fill in values", ""]
        for key, info in _CONFIG_KEYS.items():
            lines.append(f"# {info['description']}")
            lines.append(f"{key}={info['default']}")
            lines.append("")

        env_path.write_text("\n".join(lines), encoding="utf-8")
        return env_path

    def load_config(self, project_path: str | Path) -> dict[str, str]:
        """Load merged config: defaults -> profile -> config.json -> .env -> env vars.

        Returns a flat dict of configuration values.
        """
        root = Path(project_path)
        config: dict[str, str] = {}

        # 1. Defaults
        for key, info in _CONFIG_KEYS.items():
            config[key] = str(info["default"])

        # 2. Profile overrides
        env_name = os.environ.get("SHIPLINE_ENV", config["SHIPLINE_ENV"])
        config.update(_PROFILES.get(env_name, {}))

        # 3. .shipline/config.json
        config_json = root / DEFAULT_STATE_DIR / "config.json"
        if config_json.is_file():
            try:
                data = json.loads(config_json.read_text(encoding="utf-8"))
                for k, v in data.items():
                    config[k] = str(v)
            except (json.JSONDecodeError, OSError):
                logger.warning("Could not read %s", config_json, exc_info=True)

        # 4. .env file
        env_file = root / ".env"
        if env_file.is_file():
            for line in env_file.read_text(encoding="utf-8").splitlines():
                line = line.strip()
                if not line or line.startswith("#"):
                    continue
                if "=" in line:
                    k, v = line.split("=", 1)
                    config[k.strip()] = v.strip().strip('"').strip("'")

        # 5. Environment variables override all
        for key in _CONFIG_KEYS:
            env_val = os.environ.get(key)
            if env_val is not None:
                config[key] = env_val

        logger.debug("Loaded config: %s", redact(config))
        return config

    def load_settings(self, project_path: str | Path) -> PipelineSettings:
        return PipelineSettings.from_config(self.load_config(project_path), project_path)

    def redacted(self, project_path: str | Path) -> dict[str, str]:
        """Merged config with secret values masked, safe to print."""
        return redact(self.load_config(project_path))

    def load_targets(self, project_path: str | Path) -> list[DeploymentTarget]:
        """Read target definitions from ``.shipline/targets.yaml``.

        Expected layout::

            targets:
              web-1:
                endpoint: ubuntu@203.0.113.10
                remote_dir: ~/app
                health_url: http://203.0.113.10:8000/health
        """
        path = Path(project_path) / DEFAULT_STATE_DIR / TARGETS_FILE
        if not path.is_file():
            return []

        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        entries = data.get("targets", {})
        if not isinstance(entries, dict):
            raise ValueError(f"{path}: 'targets' must be a mapping of target id to settings")

        targets = []
        for target_id, spec in entries.items():
            spec = dict(spec or {})
            spec.pop("last_known_good", None)
            targets.append(DeploymentTarget(target_id=str(target_id), **spec))
        return targets

    def write_targets(self, project_path: str | Path, targets: list[DeploymentTarget]) -> Path:
        """Write *targets* to ``.shipline/targets.yaml``."""
        path = Path(project_path) / DEFAULT_STATE_DIR / TARGETS_FILE
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "targets": {
                t.target_id: t.model_dump(
                    mode="json", include={"endpoint", "remote_dir", "health_url"},
                )
                for t in targets
            }
        }
        path.write_text(yaml.safe_dump(data, sort_keys=True), encoding="utf-8")
        return path
