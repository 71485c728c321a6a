"""Shipline — release pipeline coordinator for containerized services."""

__version__ = "1.0.0"

from shipline.api.facade import Shipline
from shipline.deployment.builder import BuildContext, DockerArtifactBuilder
from shipline.deployment.coordinator import DeploymentCoordinator
from shipline.deployment.errors import (
    BuildError,
    ConflictError,
    DeploymentError,
    ExecError,
    HealthCheckError,
    PublishError,
)
from shipline.deployment.executor import SSHExecutor
from shipline.deployment.health import HealthChecker, HttpProbe, ProcessProbe
from shipline.deployment.models import (
    ArtifactRef,
    DeploymentTarget,
    ExecutionResult,
    PublishedRef,
    Release,
    ReleaseStatus,
    TriggerEvent,
)
from shipline.deployment.publisher import DockerRegistryPublisher
from shipline.deployment.trigger import PipelineTrigger
from shipline.events.journal import EventJournal

__all__ = [
    "__version__",
    # Facade
    "Shipline",
    # Pipeline
    "BuildContext",
    "DeploymentCoordinator",
    "DockerArtifactBuilder",
    "DockerRegistryPublisher",
    "HealthChecker",
    "HttpProbe",
    "PipelineTrigger",
    "ProcessProbe",
    "SSHExecutor",
    # Models
    "ArtifactRef",
    "DeploymentTarget",
    "ExecutionResult",
    "PublishedRef",
    "Release",
    "ReleaseStatus",
    "TriggerEvent",
    # Errors
    "BuildError",
    "ConflictError",
    "DeploymentError",
    "ExecError",
    "HealthCheckError",
    "PublishError",
    # Events
    "EventJournal",
]
