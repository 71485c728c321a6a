"""TargetRegistry — deployment targets and their known-good artifacts."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from shipline.config import TARGETS_DIR
from shipline.deployment.models import ArtifactRef, DeploymentTarget

logger = logging.getLogger(__name__)

# Known-good entries kept per target
_HISTORY_LIMIT = 20


class TargetRegistry:
    """Persist DeploymentTarget records as JSON files.

    Each target lives in ``<state_dir>/targets/<target_id>.json`` together
    with a short history of artifacts confirmed healthy on it.  Every write
    goes to a temporary file first and is moved into place with
    :func:`os.replace`, so readers never observe a partial update.

    Parameters
    ----------
    state_dir:
        Shipline state directory.
    """

    def __init__(self, state_dir: str | Path) -> None:
        self._dir = Path(state_dir) / TARGETS_DIR
        self._lock = threading.Lock()

    def register(self, target: DeploymentTarget) -> DeploymentTarget:
        """Add or update a target's connection settings.

        An existing ``last_known_good`` and history are preserved.
        """
        with self._lock:
            data = self._read(target.target_id)
            if data is not None:
                existing = DeploymentTarget.model_validate(data["target"])
                target = target.model_copy(update={"last_known_good": existing.last_known_good})
                history = data.get("history", [])
            else:
                history = []
            self._write(target, history)
        return target

    def get(self, target_id: str) -> DeploymentTarget:
        """Return the target record.

        Raises
        ------
        KeyError
            If the target was never registered.
        """
        data = self._read(target_id)
        if data is None:
            raise KeyError(f"Unknown target: {target_id}")
        return DeploymentTarget.model_validate(data["target"])

    def list_targets(self) -> list[DeploymentTarget]:
        if not self._dir.is_dir():
            return []
        targets = []
        for path in sorted(self._dir.glob("*.json")):
            data = self._read(path.stem)
            if data is not None:
                targets.append(DeploymentTarget.model_validate(data["target"]))
        return targets

    def last_known_good(self, target_id: str) -> ArtifactRef | None:
        return self.get(target_id).last_known_good

    def mark_known_good(
        self,
        target_id: str,
        artifact: ArtifactRef,
        release_id: str = "",
    ) -> DeploymentTarget:
        """Record *artifact* as the target's last known-good artifact."""
        with self._lock:
            data = self._read(target_id)
            if data is None:
                raise KeyError(f"Unknown target: {target_id}")
            now = datetime.now(timezone.utc)
            target = DeploymentTarget.model_validate(data["target"]).model_copy(
                update={"last_known_good": artifact, "updated_at": now},
            )
            history: list[dict[str, Any]] = data.get("history", [])
            history.append({
                "artifact": artifact.model_dump(mode="json"),
                "release_id": release_id,
                "timestamp": now.isoformat(),
            })
            self._write(target, history[-_HISTORY_LIMIT:])

        logger.info("Target %s known-good is now %s", target_id, artifact.uri)
        return target

    def history(self, target_id: str) -> list[dict[str, Any]]:
        """Known-good entries for *target_id*, oldest first."""
        data = self._read(target_id)
        return list(data.get("history", [])) if data else []

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _path(self, target_id: str) -> Path:
        return self._dir / f"{target_id}.json"

    def _read(self, target_id: str) -> dict[str, Any] | None:
        path = self._path(target_id)
        if not path.is_file():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def _write(self, target: DeploymentTarget, history: list[dict[str, Any]]) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        payload = {
            "target": target.model_dump(mode="json"),
            "history": history,
        }
        fd, tmp = tempfile.mkstemp(dir=self._dir, prefix=f".{target.target_id}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp, self._path(target.target_id))
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
