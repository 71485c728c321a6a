"""Release pipeline — build, publish, deploy, health check, roll back.

Provides the three external-tool adapters, the per-target lock table,
the target registry, and the DeploymentCoordinator state machine.
"""

from shipline.deployment.builder import ArtifactBuilder, BuildContext, DockerArtifactBuilder
from shipline.deployment.ci import CIGenerator
from shipline.deployment.compose import ComposeGenerator, apply_script
from shipline.deployment.config_manager import ConfigManager, PipelineSettings
from shipline.deployment.coordinator import DeploymentCoordinator
from shipline.deployment.errors import (
    BuildError,
    ConflictError,
    DeploymentError,
    ExecError,
    ExecFailure,
    HealthCheckError,
    PublishError,
    PublishFailure,
)
from shipline.deployment.executor import RemoteExecutor, SSHExecutor
from shipline.deployment.health import CheckResult, HealthChecker, HealthReport, HttpProbe, ProcessProbe
from shipline.deployment.locking import LockInfo, LockManager
from shipline.deployment.models import (
    ArtifactRef,
    DeploymentTarget,
    ExecutionResult,
    PublishedRef,
    Release,
    ReleaseStatus,
    ScriptSpec,
    TransitionEvent,
    TriggerEvent,
)
from shipline.deployment.publisher import DockerRegistryPublisher, RegistryPublisher
from shipline.deployment.retry import RetryPolicy
from shipline.deployment.targets import TargetRegistry
from shipline.deployment.trigger import PipelineTrigger

__all__ = [
    "ArtifactBuilder",
    "ArtifactRef",
    "BuildContext",
    "BuildError",
    "CIGenerator",
    "CheckResult",
    "ComposeGenerator",
    "ConfigManager",
    "ConflictError",
    "DeploymentCoordinator",
    "DeploymentError",
    "DeploymentTarget",
    "DockerArtifactBuilder",
    "DockerRegistryPublisher",
    "ExecError",
    "ExecFailure",
    "ExecutionResult",
    "HealthCheckError",
    "HealthChecker",
    "HealthReport",
    "HttpProbe",
    "LockInfo",
    "LockManager",
    "PipelineSettings",
    "PipelineTrigger",
    "ProcessProbe",
    "PublishError",
    "PublishFailure",
    "PublishedRef",
    "RegistryPublisher",
    "Release",
    "ReleaseStatus",
    "RemoteExecutor",
    "RetryPolicy",
    "SSHExecutor",
    "ScriptSpec",
    "TargetRegistry",
    "TransitionEvent",
    "TriggerEvent",
    "apply_script",
]
