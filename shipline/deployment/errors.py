"""Typed failures raised by the pipeline adapters and the coordinator."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from shipline.deployment.models import ExecutionResult


class DeploymentError(Exception):
    """Base class for every pipeline failure."""

    kind: str = "error"
    retryable: bool = False


class BuildError(DeploymentError):
    """The container build failed; no artifact was registered."""

    kind = "build_failed"


class PublishFailure(str, Enum):
    """Classification of a registry push failure."""

    UNAUTHORIZED = "unauthorized"
    NETWORK_FAILURE = "network_failure"
    QUOTA_EXCEEDED = "quota_exceeded"


class PublishError(DeploymentError):
    """The registry push failed."""

    def __init__(self, kind: PublishFailure | str, message: str = "") -> None:
        self.failure = PublishFailure(kind)
        super().__init__(message or self.failure.value)

    @property
    def kind(self) -> str:  # type: ignore[override]
        return self.failure.value

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.failure is not PublishFailure.UNAUTHORIZED


class ExecFailure(str, Enum):
    """Classification of a remote execution failure."""

    CONNECTION_FAILED = "connection_failed"
    AUTH_FAILED = "auth_failed"
    TIMEOUT = "timeout"
    NON_ZERO_EXIT = "non_zero_exit"


_RETRYABLE_EXEC = {ExecFailure.CONNECTION_FAILED, ExecFailure.TIMEOUT}


class ExecError(DeploymentError):
    """The remote script did not complete successfully."""

    def __init__(
        self,
        kind: ExecFailure | str,
        message: str = "",
        result: ExecutionResult | None = None,
    ) -> None:
        self.failure = ExecFailure(kind)
        self.result = result
        super().__init__(message or self.failure.value)

    @property
    def kind(self) -> str:  # type: ignore[override]
        return self.failure.value

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.failure in _RETRYABLE_EXEC

    @property
    def touched_remote(self) -> bool:
        """True when the script may have changed state on the host."""
        return self.failure in (ExecFailure.NON_ZERO_EXIT, ExecFailure.TIMEOUT)


class ConflictError(DeploymentError):
    """Another release already holds the target lock."""

    kind = "conflict"

    def __init__(self, target_id: str, holder: str) -> None:
        self.target_id = target_id
        self.holder = holder
        super().__init__(
            f"Target '{target_id}' is locked by release '{holder}'."
        )


class HealthCheckError(DeploymentError):
    """Post-deploy probes did not pass inside the wait window."""

    kind = "health_check_failed"

    def __init__(self, message: str, report: Any = None) -> None:
        super().__init__(message)
        self.report = report


class LockError(DeploymentError):
    """A lock operation was attempted by a non-holder."""

    kind = "lock_error"


class InvalidTransitionError(DeploymentError):
    """A release state change not permitted by the state machine."""

    kind = "invalid_transition"


class CancelledError(DeploymentError):
    """The release was cancelled on request."""

    kind = "cancelled"
