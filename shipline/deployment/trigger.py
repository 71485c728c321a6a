"""PipelineTrigger — adapt upstream CI events into coordinator runs."""

from __future__ import annotations

import json
import logging
import os
from concurrent.futures import Future
from pathlib import Path
from typing import Any, Mapping

from shipline.deployment.builder import BuildContext
from shipline.deployment.coordinator import DeploymentCoordinator
from shipline.deployment.models import Release, TriggerEvent

logger = logging.getLogger(__name__)

_NULL_SHA = "0" * 40


def event_from_github(
    payload: Mapping[str, Any],
    target_id: str,
    env: Mapping[str, str] | None = None,
) -> TriggerEvent | None:
    """Build a TriggerEvent from a GitHub ``push`` payload.

    Returns None for pushes that delete a ref (``after`` is all zeros) or
    carry no revision.  The correlation id is ``<run_id>.<run_attempt>``
    when running inside GitHub Actions.
    """
    env = os.environ if env is None else env
    revision = payload.get("after") or (payload.get("head_commit") or {}).get("id", "")
    if not revision or revision == _NULL_SHA:
        logger.info("Ignoring push to %s without a new revision", payload.get("ref", "?"))
        return None

    run_id = env.get("GITHUB_RUN_ID", "")
    if run_id:
        correlation_id = f"{run_id}.{env.get('GITHUB_RUN_ATTEMPT', '1')}"
        return TriggerEvent(source_revision=revision, target_id=target_id, correlation_id=correlation_id)
    return TriggerEvent(source_revision=revision, target_id=target_id)


class PipelineTrigger:
    """Start coordinator runs from trigger events.

    Parameters
    ----------
    coordinator:
        The coordinator that owns sequencing and state.
    context:
        Build context used for every triggered release.
    branches:
        If given, only pushes to these branch names start a release.
    """

    def __init__(
        self,
        coordinator: DeploymentCoordinator,
        context: BuildContext,
        *,
        branches: set[str] | None = None,
    ) -> None:
        self.coordinator = coordinator
        self.context = context
        self.branches = branches

    def fire(self, event: TriggerEvent) -> Future[Release]:
        """Submit a release; ConflictError surfaces here, not in the future."""
        logger.info(
            "Trigger %s: %s -> %s", event.correlation_id, event.source_revision, event.target_id,
        )
        return self.coordinator.submit(event, self.context)

    def fire_sync(self, event: TriggerEvent) -> Release:
        """Run a release to completion in the calling thread."""
        return self.coordinator.run(event, self.context)

    def on_github_push(
        self,
        payload: Mapping[str, Any],
        target_id: str,
        env: Mapping[str, str] | None = None,
    ) -> Release | None:
        """Handle a push payload synchronously.  Returns None when skipped."""
        ref = str(payload.get("ref", ""))
        if self.branches is not None and ref.removeprefix("refs/heads/") not in self.branches:
            logger.info("Ignoring push to %s (not in %s)", ref, sorted(self.branches))
            return None
        event = event_from_github(payload, target_id, env)
        if event is None:
            return None
        return self.fire_sync(event)

    def on_github_event_file(self, path: str | Path, target_id: str) -> Release | None:
        """Handle the payload at ``$GITHUB_EVENT_PATH``."""
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
        return self.on_github_push(payload, target_id)
