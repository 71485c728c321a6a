"""DeploymentCoordinator — the release state machine.

Sequences build -> publish -> remote apply -> health check for one release
at a time per target, retries transient failures with bounded backoff, and
rolls a target back to its last known-good artifact when a deploy goes bad.

Usage::

    coordinator = DeploymentCoordinator(builder, publisher, executor, checker,
                                        locks, targets, on_event=dispatcher)
    release = coordinator.run(TriggerEvent(source_revision="abc123",
                                           target_id="web-1"), context)
    release.status  # ReleaseStatus.SUCCEEDED
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable

from shipline.config import DEPLOY_TIMEOUT
from shipline.deployment.builder import ArtifactBuilder, BuildContext
from shipline.deployment.compose import apply_script
from shipline.deployment.errors import (
    BuildError,
    CancelledError,
    DeploymentError,
    ExecError,
    HealthCheckError,
    LockError,
    PublishError,
)
from shipline.deployment.executor import RemoteExecutor
from shipline.deployment.health import HealthChecker
from shipline.deployment.locking import LockManager
from shipline.deployment.models import (
    PRE_REMOTE_STATES,
    ArtifactRef,
    DeploymentTarget,
    ExecutionResult,
    PublishedRef,
    Release,
    ReleaseStatus,
    TransitionEvent,
    TriggerEvent,
)
from shipline.deployment.publisher import RegistryPublisher
from shipline.deployment.retry import RetryPolicy, call_with_retry
from shipline.deployment.targets import TargetRegistry

logger = logging.getLogger(__name__)

# A rollback in flight always runs to completion
_NOT_CANCELLABLE = {ReleaseStatus.ROLLING_BACK}


class DeploymentCoordinator:
    """Drive releases through the pipeline state machine.

    Parameters
    ----------
    builder, publisher, executor:
        Adapters for the three external collaborators.
    health_checker:
        Post-deploy verdict.
    locks:
        Per-target lock table; the only shared mutable resource besides the
        target registry.
    targets:
        Target records and known-good artifacts.
    publish_policy, deploy_policy:
        Retry schedules for the publish and deploy stages.
    deploy_timeout:
        Seconds allowed for one remote apply.
    pre_deploy_commands:
        Commands prepended to every apply script, e.g. a registry login on
        the host.
    on_event:
        Callable receiving every TransitionEvent (journal, dispatcher).
    max_workers:
        Size of the pool used by :meth:`submit`.
    """

    def __init__(
        self,
        builder: ArtifactBuilder,
        publisher: RegistryPublisher,
        executor: RemoteExecutor,
        health_checker: HealthChecker,
        locks: LockManager,
        targets: TargetRegistry,
        *,
        publish_policy: RetryPolicy | None = None,
        deploy_policy: RetryPolicy | None = None,
        deploy_timeout: float = DEPLOY_TIMEOUT,
        pre_deploy_commands: tuple[str, ...] = (),
        on_event: Callable[[TransitionEvent], None] | None = None,
        max_workers: int = 4,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.builder = builder
        self.publisher = publisher
        self.executor = executor
        self.health_checker = health_checker
        self.locks = locks
        self.targets = targets
        self.publish_policy = publish_policy or RetryPolicy()
        self.deploy_policy = deploy_policy or RetryPolicy()
        self.deploy_timeout = deploy_timeout
        self.pre_deploy_commands = pre_deploy_commands
        self._on_event = on_event
        self._sleep = sleep
        self._max_workers = max_workers
        self._pool: ThreadPoolExecutor | None = None
        self._guard = threading.Lock()
        self._releases: dict[str, Release] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start(self, event: TriggerEvent) -> Release:
        """Create a pending release and take the target lock.

        Raises
        ------
        KeyError
            If the target is not registered.
        ConflictError
            If another release holds the target.  Nothing is queued.
        """
        self.targets.get(event.target_id)
        release = Release(
            source_revision=event.source_revision,
            target_id=event.target_id,
            correlation_id=event.correlation_id,
        )
        self.locks.acquire(event.target_id, release.release_id)
        with self._guard:
            self._releases[release.release_id] = release
        logger.info(
            "Release %s created for %s at %s (correlation %s)",
            release.release_id, event.target_id, event.source_revision, event.correlation_id,
        )
        return release

    def run(self, event: TriggerEvent, context: BuildContext) -> Release:
        """Start a release and drive it to a terminal state synchronously."""
        return self.execute(self.start(event), context)

    def submit(self, event: TriggerEvent, context: BuildContext) -> Future[Release]:
        """Start a release and drive it on the worker pool.

        The lock is taken before this returns, so a conflicting trigger
        fails here rather than inside the future.
        """
        release = self.start(event)
        with self._guard:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self._max_workers, thread_name_prefix="shipline-release",
                )
            pool = self._pool
        return pool.submit(self.execute, release, context)

    def execute(self, release: Release, context: BuildContext) -> Release:
        """Drive a started release through every stage."""
        try:
            self._pipeline(release, context)
        except Exception:
            logger.exception("Release %s crashed in %s", release.release_id, release.status.value)
            self._fail_internal(release)
            raise
        return release

    def cancel(self, release_id: str) -> bool:
        """Request cancellation of a release.

        Honored at the next stage boundary while pending, building or
        publishing.  A deploy or health check in flight finishes first and
        the target is then rolled back.  Returns False once the release is
        rolling back or already terminal.
        """
        release = self.get_release(release_id)
        if release.is_terminal or release.status in _NOT_CANCELLABLE:
            return False
        release.cancel_requested = True
        logger.info("Cancellation requested for release %s (%s)", release_id, release.status.value)
        return True

    def get_release(self, release_id: str) -> Release:
        with self._guard:
            try:
                return self._releases[release_id]
            except KeyError:
                raise KeyError(f"Unknown release: {release_id}") from None

    def releases(self, target_id: str | None = None) -> list[Release]:
        """Known releases, oldest first, optionally for one target."""
        with self._guard:
            items = list(self._releases.values())
        if target_id is not None:
            items = [r for r in items if r.target_id == target_id]
        return sorted(items, key=lambda r: r.created_at)

    def active_release(self, target_id: str) -> Release | None:
        """The non-terminal release on *target_id*, if any."""
        for release in self.releases(target_id):
            if not release.is_terminal:
                return release
        return None

    def unlock(self, target_id: str) -> bool:
        """Operator override after a failed rollback left the target locked."""
        return self.locks.force_unlock(target_id)

    def close(self) -> None:
        """Wait for in-flight releases and stop the worker pool."""
        with self._guard:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _pipeline(self, release: Release, context: BuildContext) -> None:
        target = self.targets.get(release.target_id)

        if self._honor_cancel(release):
            return
        self._transition(release, ReleaseStatus.BUILDING, f"revision {release.source_revision}")
        try:
            artifact = self.builder.build(release.source_revision, context)
        except BuildError as exc:
            self._fail_before_remote(release, exc)
            return
        release.artifact_ref = artifact

        if self._honor_cancel(release):
            return
        self._transition(release, ReleaseStatus.PUBLISHING, artifact.uri)
        try:
            published = call_with_retry(
                lambda: self.publisher.publish(artifact),
                self.publish_policy,
                sleep=self._sleep,
                on_retry=self._retry_hook(release),
                should_abort=lambda: release.cancel_requested,
            )
        except PublishError as exc:
            if self._honor_cancel(release):
                return
            self._fail_before_remote(release, exc)
            return
        release.published_ref = published

        if self._honor_cancel(release):
            return
        self._transition(release, ReleaseStatus.DEPLOYING, published.pinned_uri)
        try:
            release.last_result = call_with_retry(
                lambda: self._apply(target, published),
                self.deploy_policy,
                sleep=self._sleep,
                on_retry=self._retry_hook(release),
            )
        except ExecError as exc:
            if exc.result is not None:
                release.last_result = exc.result
            self._fail_after_remote(release, target, exc, rollback=exc.touched_remote)
            return

        if release.cancel_requested:
            self._fail_after_remote(
                release, target, CancelledError("Cancelled during deploy"), rollback=True,
            )
            return

        self._transition(release, ReleaseStatus.HEALTH_CHECKING, target.health_url)
        try:
            report = self.health_checker.wait_healthy(target)
        except HealthCheckError as exc:
            self._fail_after_remote(release, target, exc, rollback=True)
            return

        if release.cancel_requested:
            self._fail_after_remote(
                release, target, CancelledError("Cancelled during health check"), rollback=True,
            )
            return

        self.targets.mark_known_good(target.target_id, artifact, release.release_id)
        self._transition(
            release, ReleaseStatus.SUCCEEDED,
            f"healthy after {report.rounds} round(s); known-good is {artifact.uri}",
        )
        self._release_lock(release)

    def _apply(self, target: DeploymentTarget, image: ArtifactRef | PublishedRef) -> ExecutionResult:
        script = apply_script(target, image, pre_commands=self.pre_deploy_commands)
        return self.executor.execute(target, script, self.deploy_timeout)

    def _rollback(self, release: Release, target: DeploymentTarget, known_good: ArtifactRef) -> None:
        """Redeploy *known_good* exactly once."""
        self._transition(release, ReleaseStatus.ROLLING_BACK, f"redeploying {known_good.uri}")
        try:
            release.last_result = self._apply(target, known_good)
        except ExecError as exc:
            if exc.result is not None:
                release.last_result = exc.result
            release.rollback_note = (
                f"Rollback to {known_good.uri} failed ({exc.kind}); "
                f"target {target.target_id} left locked for manual intervention"
            )
            self._transition(release, ReleaseStatus.FAILED, release.rollback_note)
            logger.error("Release %s: %s", release.release_id, release.rollback_note)
            return

        release.rollback_note = f"Rolled back to {known_good.uri}"
        self._transition(release, ReleaseStatus.ROLLED_BACK, release.rollback_note)
        self._release_lock(release)

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    def _fail_before_remote(self, release: Release, exc: DeploymentError) -> None:
        release.reason = str(exc)
        release.error_kind = exc.kind
        try:
            self._transition(release, ReleaseStatus.FAILED, f"{exc.kind}: {exc}")
        finally:
            self._release_lock(release)

    def _fail_after_remote(
        self,
        release: Release,
        target: DeploymentTarget,
        exc: DeploymentError,
        *,
        rollback: bool,
    ) -> None:
        release.reason = str(exc)
        release.error_kind = exc.kind
        self._transition(release, ReleaseStatus.FAILED, f"{exc.kind}: {exc}")

        known_good = self.targets.last_known_good(target.target_id) if rollback else None
        if known_good is None:
            if rollback:
                release.rollback_note = "No known-good artifact; rollback skipped"
            self._release_lock(release)
            return
        self._rollback(release, target, known_good)

    def _fail_internal(self, release: Release) -> None:
        """Close out a release whose pipeline raised something unexpected.

        Before any remote change the lock is released.  Once the host may
        have been touched the outcome is unknown, so the target stays locked
        until an operator unlocks it.
        """
        if release.status in PRE_REMOTE_STATES:
            release.reason = "Internal error before any remote change"
            release.error_kind = "internal"
            try:
                self._transition(release, ReleaseStatus.FAILED, release.reason)
            finally:
                self._release_lock(release)
            return
        if release.status in (ReleaseStatus.SUCCEEDED, ReleaseStatus.ROLLED_BACK):
            return
        if release.status is ReleaseStatus.FAILED:
            held = self.locks.is_locked(release.target_id)
            if held is None or held.holder != release.release_id:
                return
        else:
            release.reason = f"Internal error while {release.status.value}"
            release.error_kind = "internal"
            self._transition(release, ReleaseStatus.FAILED, release.reason)
        release.rollback_note = (
            f"Target {release.target_id} state unknown after internal error; "
            "left locked for manual intervention"
        )
        logger.error("Release %s: %s", release.release_id, release.rollback_note)

    def _honor_cancel(self, release: Release) -> bool:
        if not release.cancel_requested:
            return False
        self._fail_before_remote(release, CancelledError("Cancelled before any remote change"))
        return True

    def _retry_hook(self, release: Release) -> Callable[[int, DeploymentError, float], None]:
        def hook(attempt: int, exc: DeploymentError, delay: float) -> None:
            release.attempt += 1
            if isinstance(exc, ExecError) and exc.result is not None:
                release.last_result = exc.result
            logger.warning(
                "Release %s %s retry %d after %s (%.2fs)",
                release.release_id, release.status.value, attempt, exc.kind, delay,
            )
        return hook

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _transition(self, release: Release, to: ReleaseStatus, detail: str = "") -> None:
        event = release.transition(to, detail)
        logger.info(
            "Release %s [%s] %s -> %s %s",
            release.release_id, release.target_id, event.from_state, event.to_state, detail,
        )
        if self._on_event is not None:
            self._on_event(event)

    def _release_lock(self, release: Release) -> None:
        try:
            self.locks.release(release.target_id, release.release_id)
        except LockError:
            logger.warning(
                "Release %s no longer holds %s (force-unlocked?)",
                release.release_id, release.target_id,
            )
