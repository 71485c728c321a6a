"""Pydantic models for releases, artifacts, targets, and remote results."""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from shipline.config import OUTPUT_EXCERPT_LIMIT
from shipline.deployment.errors import InvalidTransitionError


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


_TAG_INVALID = re.compile(r"[^A-Za-z0-9_.-]")


def normalize_tag(value: str) -> str:
    """Coerce *value* into a valid docker tag (max 128 chars)."""
    tag = _TAG_INVALID.sub("-", value.strip()).lstrip(".-")
    return tag[:128] or "latest"


class ReleaseStatus(str, Enum):
    """Lifecycle states of a release."""

    PENDING = "pending"
    BUILDING = "building"
    PUBLISHING = "publishing"
    DEPLOYING = "deploying"
    HEALTH_CHECKING = "health_checking"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"


# Allowed transitions: from -> set of destinations
ALLOWED_TRANSITIONS: dict[ReleaseStatus, set[ReleaseStatus]] = {
    ReleaseStatus.PENDING: {ReleaseStatus.BUILDING, ReleaseStatus.FAILED},
    ReleaseStatus.BUILDING: {ReleaseStatus.PUBLISHING, ReleaseStatus.FAILED},
    ReleaseStatus.PUBLISHING: {ReleaseStatus.DEPLOYING, ReleaseStatus.FAILED},
    ReleaseStatus.DEPLOYING: {ReleaseStatus.HEALTH_CHECKING, ReleaseStatus.FAILED},
    ReleaseStatus.HEALTH_CHECKING: {ReleaseStatus.SUCCEEDED, ReleaseStatus.FAILED},
    ReleaseStatus.FAILED: {ReleaseStatus.ROLLING_BACK},
    ReleaseStatus.ROLLING_BACK: {ReleaseStatus.ROLLED_BACK, ReleaseStatus.FAILED},
    ReleaseStatus.SUCCEEDED: set(),
    ReleaseStatus.ROLLED_BACK: set(),
}

# States in which no remote side effect has happened yet
PRE_REMOTE_STATES = frozenset({
    ReleaseStatus.PENDING,
    ReleaseStatus.BUILDING,
    ReleaseStatus.PUBLISHING,
})

FINAL_STATES = frozenset({ReleaseStatus.SUCCEEDED, ReleaseStatus.ROLLED_BACK})


class ArtifactRef(BaseModel):
    """Content-addressed pointer to a built image.  Never mutated."""

    model_config = ConfigDict(frozen=True)

    registry_host: str = ""
    repository: str
    digest_or_tag: str
    source_revision: str = ""
    image_id: str = ""
    """Local content digest reported by the build tool (``sha256:...``)."""

    context_digest: str = ""
    """SHA-256 of the build context the image was built from."""

    @property
    def uri(self) -> str:
        """Full image reference, e.g. ``host/repo:tag`` or ``host/repo@sha256:...``."""
        name = f"{self.registry_host}/{self.repository}" if self.registry_host else self.repository
        sep = "@" if self.digest_or_tag.startswith("sha256:") else ":"
        return f"{name}{sep}{self.digest_or_tag}"


class PublishedRef(BaseModel):
    """An ArtifactRef confirmed present in the remote registry."""

    model_config = ConfigDict(frozen=True)

    artifact: ArtifactRef
    remote_digest: str = ""

    @property
    def pinned_uri(self) -> str:
        """Digest-pinned reference when the registry reported one."""
        if not self.remote_digest:
            return self.artifact.uri
        a = self.artifact
        name = f"{a.registry_host}/{a.repository}" if a.registry_host else a.repository
        return f"{name}@{self.remote_digest}"


class DeploymentTarget(BaseModel):
    """A deployment destination tracked for locking and rollback."""

    target_id: str
    endpoint: str
    """``user@host`` or ``user@host:port`` reachable over SSH."""

    remote_dir: str = "~/app"
    health_url: str = ""
    last_known_good: Optional[ArtifactRef] = None
    updated_at: datetime = Field(default_factory=_utc_now)


class ScriptSpec(BaseModel):
    """A fixed sequence of idempotent remote commands."""

    model_config = ConfigDict(frozen=True)

    commands: tuple[str, ...]
    env: dict[str, str] = Field(default_factory=dict)
    workdir: str = ""


class ExecutionResult(BaseModel):
    """Outcome of one remote execution."""

    exit_code: int
    duration_ms: int = 0
    output: str = ""

    @classmethod
    def capture(
        cls,
        exit_code: int,
        duration_ms: int,
        output: str,
        limit: int = OUTPUT_EXCERPT_LIMIT,
    ) -> ExecutionResult:
        """Build a result keeping only the last *limit* characters of output."""
        if len(output) > limit:
            output = "...[truncated]\n" + output[-limit:]
        return cls(exit_code=exit_code, duration_ms=duration_ms, output=output)


class TriggerEvent(BaseModel):
    """Upstream event requesting a release."""

    source_revision: str
    target_id: str
    correlation_id: str = Field(default_factory=_new_id)


class TransitionEvent(BaseModel):
    """Structured record of one release state transition."""

    release_id: str
    target_id: str = ""
    from_state: str
    to_state: str
    timestamp: datetime = Field(default_factory=_utc_now)
    detail: str = ""


class Release(BaseModel):
    """One end-to-end attempt to build, publish, and deploy to a target."""

    release_id: str = Field(default_factory=_new_id)
    source_revision: str
    target_id: str
    correlation_id: str = ""
    artifact_ref: Optional[ArtifactRef] = None
    published_ref: Optional[PublishedRef] = None
    status: ReleaseStatus = ReleaseStatus.PENDING
    attempt: int = 0
    """Number of retries performed across all stages."""

    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)
    reason: str = ""
    error_kind: str = ""
    last_result: Optional[ExecutionResult] = None
    rollback_note: str = ""
    cancel_requested: bool = False
    history: list[TransitionEvent] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        """True once the release has reached succeeded, failed, or rolled_back."""
        return self.status in FINAL_STATES or self.status is ReleaseStatus.FAILED

    def transition(self, to: ReleaseStatus, detail: str = "") -> TransitionEvent:
        """Move to *to*, record the transition, and return its event.

        Raises
        ------
        InvalidTransitionError
            If the move is not in :data:`ALLOWED_TRANSITIONS`.
        """
        if to not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Release {self.release_id}: {self.status.value} -> {to.value} not allowed"
            )
        event = TransitionEvent(
            release_id=self.release_id,
            target_id=self.target_id,
            from_state=self.status.value,
            to_state=to.value,
            detail=detail,
        )
        self.status = to
        self.updated_at = event.timestamp
        self.history.append(event)
        return event

    def summary(self) -> dict[str, Any]:
        """Compact, secret-free dict for CLI output."""
        return {
            "release_id": self.release_id,
            "target_id": self.target_id,
            "source_revision": self.source_revision,
            "status": self.status.value,
            "artifact": self.artifact_ref.uri if self.artifact_ref else None,
            "attempt": self.attempt,
            "reason": self.reason,
            "rollback_note": self.rollback_note,
        }
