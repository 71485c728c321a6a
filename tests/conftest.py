"""Shared fakes for the three external collaborators and pipeline fixtures."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from shipline.config import IMAGE_ENV_VAR
from shipline.deployment.builder import ArtifactBuilder, BuildContext
from shipline.deployment.coordinator import DeploymentCoordinator
from shipline.deployment.errors import BuildError, ExecError, ExecFailure, PublishError, PublishFailure
from shipline.deployment.executor import RemoteExecutor
from shipline.deployment.health import CheckResult, HealthChecker, HealthProbe
from shipline.deployment.locking import LockManager
from shipline.deployment.models import (
    ArtifactRef,
    DeploymentTarget,
    ExecutionResult,
    PublishedRef,
    ScriptSpec,
)
from shipline.deployment.publisher import RegistryPublisher
from shipline.deployment.retry import RetryPolicy
from shipline.deployment.targets import TargetRegistry

REGISTRY = "registry.example.com"


class FakeBuilder(ArtifactBuilder):
    """Builds instantly; revisions listed in *fail_revisions* raise BuildError."""

    def __init__(self, fail_revisions: tuple[str, ...] = ()) -> None:
        self.calls: list[str] = []
        self.fail_revisions = set(fail_revisions)

    def build(self, source_revision: str, context: BuildContext) -> ArtifactRef:
        self.calls.append(source_revision)
        if source_revision in self.fail_revisions:
            raise BuildError(f"compile error at {source_revision}")
        return ArtifactRef(
            registry_host=REGISTRY,
            repository="app",
            digest_or_tag=source_revision,
            source_revision=source_revision,
            image_id=f"sha256:{source_revision}",
        )


class FakePublisher(RegistryPublisher):
    """Pops one scripted PublishFailure per push until none are left."""

    def __init__(self, failures: list[PublishFailure] | None = None) -> None:
        super().__init__()
        self.failures = list(failures or [])
        self.pushes: list[ArtifactRef] = []

    def _push(self, artifact: ArtifactRef) -> PublishedRef:
        self.pushes.append(artifact)
        if self.failures:
            raise PublishError(self.failures.pop(0))
        return PublishedRef(artifact=artifact, remote_digest="sha256:" + "a" * 64)


class FakeExecutor(RemoteExecutor):
    """Records every script; pops one scripted outcome per call.

    An outcome of ``None`` is a success.  When *block* is given each call
    waits for it, which keeps a release parked in ``deploying``.
    """

    def __init__(
        self,
        outcomes: list[ExecFailure | None] | None = None,
        block: threading.Event | None = None,
    ) -> None:
        self.outcomes = list(outcomes or [])
        self.block = block
        self.entered = threading.Event()
        self.calls: list[ScriptSpec] = []

    def execute(self, target: DeploymentTarget, script: ScriptSpec, timeout: float = 300) -> ExecutionResult:
        self.calls.append(script)
        self.entered.set()
        if self.block is not None:
            self.block.wait(timeout=5)
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if outcome is not None:
            raise ExecError(
                outcome, f"scripted {outcome.value}",
                ExecutionResult(exit_code=1, duration_ms=3, output=f"boom: {outcome.value}"),
            )
        return ExecutionResult(exit_code=0, duration_ms=3, output="recreated")

    @property
    def images(self) -> list[str]:
        """Image reference each call was asked to run."""
        return [s.env.get(IMAGE_ENV_VAR, "") for s in self.calls]


class ScriptedProbe(HealthProbe):
    """Returns scripted verdicts, then *default* once they run out."""

    name = "scripted"

    def __init__(self, verdicts: list[bool] | None = None, default: bool = True) -> None:
        self.verdicts = list(verdicts or [])
        self.default = default
        self.calls = 0

    def check(self, target: DeploymentTarget) -> CheckResult:
        self.calls += 1
        passed = self.verdicts.pop(0) if self.verdicts else self.default
        return CheckResult(name=self.name, passed=passed, message="ok" if passed else "HTTP 503")


def no_sleep(seconds: float) -> None:
    pass


def make_checker(probe: HealthProbe, max_rounds: int = 3) -> HealthChecker:
    return HealthChecker([probe], window=60, interval=1, max_rounds=max_rounds, sleep=no_sleep)


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / ".shipline"


@pytest.fixture
def targets(state_dir: Path) -> TargetRegistry:
    registry = TargetRegistry(state_dir)
    registry.register(DeploymentTarget(
        target_id="T1",
        endpoint="ubuntu@203.0.113.10",
        remote_dir="~/app",
        health_url="http://203.0.113.10:8000/health",
    ))
    return registry


@pytest.fixture
def locks(state_dir: Path) -> LockManager:
    return LockManager(state_dir)


@pytest.fixture
def context(tmp_path: Path) -> BuildContext:
    src = tmp_path / "src"
    src.mkdir()
    (src / "Dockerfile").write_text("FROM python:3.12-slim\n")
    return BuildContext(path=src)


@pytest.fixture
def make_coordinator(locks: LockManager, targets: TargetRegistry):
    """Factory building a coordinator around fakes; keyword overrides win."""
    created: list[DeploymentCoordinator] = []

    def factory(**overrides) -> DeploymentCoordinator:
        events = overrides.pop("events", None)
        options = {
            "builder": FakeBuilder(),
            "publisher": FakePublisher(),
            "executor": FakeExecutor(),
            "health_checker": make_checker(ScriptedProbe()),
            "locks": locks,
            "targets": targets,
            "publish_policy": RetryPolicy(max_attempts=5, base_delay=0.01),
            "deploy_policy": RetryPolicy(max_attempts=5, base_delay=0.01),
            "sleep": no_sleep,
        }
        if events is not None:
            options["on_event"] = events.append
        options.update(overrides)
        coordinator = DeploymentCoordinator(**options)
        created.append(coordinator)
        return coordinator

    yield factory
    for coordinator in created:
        coordinator.close()
