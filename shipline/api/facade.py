"""Shipline — the single entry point wiring configuration to the pipeline.

Usage::

    from shipline import Shipline

    ship = Shipline(project_root="/path/to/project")
    release = ship.trigger("abc123", "web-1")
    ship.status()
    ship.history(release_id=release.release_id)
    ship.unlock("web-1")
    ship.verify_journal()
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future
from pathlib import Path
from typing import Any, Callable

from shipline.config import JOURNAL_DB
from shipline.deployment.builder import ArtifactBuilder, BuildContext, DockerArtifactBuilder
from shipline.deployment.ci import CIGenerator
from shipline.deployment.compose import ComposeGenerator
from shipline.deployment.config_manager import ConfigManager, PipelineSettings
from shipline.deployment.coordinator import DeploymentCoordinator
from shipline.deployment.executor import RemoteExecutor, SSHExecutor
from shipline.deployment.health import HealthChecker, HttpProbe, ProcessProbe
from shipline.deployment.locking import LockManager
from shipline.deployment.models import DeploymentTarget, Release, TriggerEvent
from shipline.deployment.publisher import DockerRegistryPublisher, RegistryPublisher
from shipline.deployment.retry import RetryPolicy
from shipline.deployment.targets import TargetRegistry
from shipline.deployment.trigger import PipelineTrigger
from shipline.events.dispatcher import EventDispatcher
from shipline.events.journal import EventJournal, JournalEntry
from shipline.events.notifications import NotificationProvider, SlackNotifier, WebhookNotifier

logger = logging.getLogger(__name__)


class Shipline:
    """Unified Shipline API.

    Any adapter left as ``None`` is built from configuration.  Tests and
    embedders pass their own.

    Parameters
    ----------
    project_root:
        Directory holding ``.shipline/`` and ``.env``.
    settings:
        Pre-built settings; loaded through ConfigManager when omitted.
    """

    def __init__(
        self,
        project_root: str | Path = ".",
        *,
        settings: PipelineSettings | None = None,
        builder: ArtifactBuilder | None = None,
        publisher: RegistryPublisher | None = None,
        executor: RemoteExecutor | None = None,
        health_checker: HealthChecker | None = None,
        providers: list[NotificationProvider] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.project_root = Path(project_root).resolve()
        self.config_manager = ConfigManager()
        self.settings = settings or self.config_manager.load_settings(self.project_root)
        s = self.settings

        self.locks = LockManager(s.state_dir)
        self.targets = TargetRegistry(s.state_dir)
        for target in self.config_manager.load_targets(self.project_root):
            self.targets.register(target)

        self.journal = EventJournal(s.state_dir / JOURNAL_DB)
        self.dispatcher = EventDispatcher(providers, sinks=[self.journal])
        if s.slack_webhook:
            self.dispatcher.add_provider(SlackNotifier(s.slack_webhook))
        if s.event_webhook:
            self.dispatcher.add_provider(WebhookNotifier(s.event_webhook, only_notable=False))

        executor = executor or SSHExecutor(
            identity_file=s.ssh_key or None,
            known_hosts=s.ssh_known_hosts or None,
        )
        policy = RetryPolicy(max_attempts=s.max_attempts)
        self.coordinator = DeploymentCoordinator(
            builder=builder or DockerArtifactBuilder(s.registry_host, s.repository),
            publisher=publisher or DockerRegistryPublisher(
                username=s.registry_username, password=s.registry_password,
            ),
            executor=executor,
            health_checker=health_checker or HealthChecker(
                [HttpProbe(), ProcessProbe(executor)],
                window=s.health_window,
                interval=s.health_interval,
                sleep=sleep,
            ),
            locks=self.locks,
            targets=self.targets,
            publish_policy=policy,
            deploy_policy=policy,
            deploy_timeout=s.deploy_timeout,
            pre_deploy_commands=(s.remote_login,) if s.remote_login else (),
            on_event=self.dispatcher,
            sleep=sleep,
        )
        self.trigger_adapter = PipelineTrigger(
            self.coordinator,
            BuildContext(path=s.build_context, dockerfile=s.dockerfile),
        )

    # -- Targets -------------------------------------------------------------

    def add_target(self, target: DeploymentTarget) -> DeploymentTarget:
        """Register a target and persist it to ``targets.yaml``."""
        registered = self.targets.register(target)
        self.config_manager.write_targets(self.project_root, self.targets.list_targets())
        return registered

    # -- Releases ------------------------------------------------------------

    def trigger(
        self,
        source_revision: str,
        target_id: str,
        correlation_id: str | None = None,
    ) -> Release:
        """Run a release synchronously and return it in its terminal state."""
        event = TriggerEvent(source_revision=source_revision, target_id=target_id)
        if correlation_id:
            event = event.model_copy(update={"correlation_id": correlation_id})
        return self.trigger_adapter.fire_sync(event)

    def submit(self, source_revision: str, target_id: str) -> Future[Release]:
        """Start a release on the worker pool."""
        return self.trigger_adapter.fire(
            TriggerEvent(source_revision=source_revision, target_id=target_id),
        )

    def github_push(self, event_path: str | Path, target_id: str) -> Release | None:
        """Handle the GitHub push payload at *event_path*."""
        return self.trigger_adapter.on_github_event_file(event_path, target_id)

    def cancel(self, release_id: str) -> bool:
        return self.coordinator.cancel(release_id)

    def unlock(self, target_id: str) -> bool:
        """Clear a lock left behind by a failed rollback."""
        return self.coordinator.unlock(target_id)

    # -- Observability -------------------------------------------------------

    def status(self, target_id: str | None = None) -> list[dict[str, Any]]:
        """Lock holder and known-good artifact per target."""
        targets = (
            [self.targets.get(target_id)] if target_id else self.targets.list_targets()
        )
        rows = []
        for target in targets:
            lock = self.locks.is_locked(target.target_id)
            rows.append({
                "target_id": target.target_id,
                "endpoint": target.endpoint,
                "locked_by": lock.holder if lock else None,
                "last_known_good": target.last_known_good.uri if target.last_known_good else None,
                "updated_at": target.updated_at.isoformat(),
            })
        return rows

    def history(
        self,
        release_id: str | None = None,
        target_id: str | None = None,
    ) -> list[JournalEntry]:
        """Recorded transitions, oldest first."""
        return self.journal.get_events(release_id=release_id, target_id=target_id)

    def verify_journal(self) -> bool:
        return self.journal.verify_chain()

    def config(self) -> dict[str, str]:
        """Merged configuration with secrets masked."""
        return self.config_manager.redacted(self.project_root)

    # -- Project scaffolding -------------------------------------------------

    def init_project(self, target_id: str, branch: str = "main") -> list[Path]:
        """Write the CI workflow, remote compose file, and ``.env.example``."""
        return [
            CIGenerator().generate_github_actions(self.project_root, target_id, branch),
            ComposeGenerator().generate_compose(self.project_root / "deploy"),
            self.config_manager.generate_env_template(self.project_root),
        ]

    def close(self) -> None:
        self.coordinator.close()
        self.journal.close()
