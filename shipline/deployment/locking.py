"""Per-target release locks.

A lock is a JSON file created with ``O_EXCL`` under ``<state_dir>/locks``, so
mutual exclusion holds across threads and across processes sharing the
state directory.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path

from shipline.config import LOCKS_DIR
from shipline.deployment.errors import ConflictError, LockError

logger = logging.getLogger(__name__)


@dataclass
class LockInfo:
    """Information about an active target lock."""

    target_id: str
    holder: str
    timestamp: float
    timeout: float | None = None

    @property
    def is_expired(self) -> bool:
        if self.timeout is None:
            return False
        return (time.time() - self.timestamp) > self.timeout

    def to_dict(self) -> dict:
        return {
            "target_id": self.target_id,
            "holder": self.holder,
            "timestamp": self.timestamp,
            "timeout": self.timeout,
        }

    @classmethod
    def from_dict(cls, data: dict) -> LockInfo:
        return cls(
            target_id=data["target_id"],
            holder=data["holder"],
            timestamp=data.get("timestamp", 0),
            timeout=data.get("timeout"),
        )


class LockManager:
    """Acquire and release exclusive locks on deployment targets.

    Parameters
    ----------
    state_dir:
        Shipline state directory.
    timeout:
        Seconds after which a lock is considered stale.  ``None`` (default)
        means locks never expire: a target left locked after a failed
        rollback stays locked until :meth:`force_unlock`.
    """

    def __init__(self, state_dir: str | Path, timeout: float | None = None) -> None:
        self.lock_dir = Path(state_dir) / LOCKS_DIR
        self.timeout = timeout
        self._mutex = threading.Lock()

    def acquire(self, target_id: str, holder: str) -> LockInfo:
        """Take the lock on *target_id* for *holder*.

        Never waits: contention fails fast.

        Raises
        ------
        ConflictError
            If another holder already has the lock.
        """
        lock = LockInfo(
            target_id=target_id,
            holder=holder,
            timestamp=time.time(),
            timeout=self.timeout,
        )
        with self._mutex:
            existing = self.is_locked(target_id)
            if existing is not None:
                raise ConflictError(target_id, existing.holder)

            path = self._lock_path(target_id)
            path.parent.mkdir(parents=True, exist_ok=True)
            try:
                fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                # Another process won the race
                other = self.is_locked(target_id)
                raise ConflictError(target_id, other.holder if other else "unknown") from None
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(lock.to_dict(), f, indent=2)

        logger.info("Locked target %s for release %s", target_id, holder)
        return lock

    def release(self, target_id: str, holder: str) -> bool:
        """Release the lock held by *holder*.

        Returns True if a lock was removed.

        Raises
        ------
        LockError
            If the lock belongs to someone else.
        """
        with self._mutex:
            existing = self.is_locked(target_id)
            if existing is None:
                return False
            if existing.holder != holder:
                raise LockError(
                    f"Cannot unlock: target '{target_id}' is locked by "
                    f"'{existing.holder}', not '{holder}'."
                )
            self._lock_path(target_id).unlink(missing_ok=True)

        logger.info("Unlocked target %s (release %s)", target_id, holder)
        return True

    def is_locked(self, target_id: str) -> LockInfo | None:
        """Return the LockInfo if *target_id* is locked, or None.

        Expired lock files are removed.  An unreadable lock file (possibly
        mid-write by another process) still counts as held.
        """
        path = self._lock_path(target_id)
        if not path.is_file():
            return None

        try:
            lock = LockInfo.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, OSError, KeyError):
            logger.warning("Unreadable lock file %s, treating as held", path)
            return LockInfo(target_id=target_id, holder="unknown", timestamp=time.time())

        if lock.is_expired:
            logger.info("Auto-expiring stale lock on %s (held by %s)", target_id, lock.holder)
            path.unlink(missing_ok=True)
            return None

        return lock

    def force_unlock(self, target_id: str) -> bool:
        """Remove a lock regardless of holder.  Operator use only."""
        with self._mutex:
            path = self._lock_path(target_id)
            if path.is_file():
                path.unlink()
                logger.warning("Force-unlocked target %s", target_id)
                return True
        return False

    def list_locks(self) -> list[LockInfo]:
        """Return every active lock."""
        if not self.lock_dir.is_dir():
            return []
        locks = []
        for path in sorted(self.lock_dir.glob("*.lock")):
            info = self.is_locked(path.stem)
            if info is not None:
                locks.append(info)
        return locks

    def _lock_path(self, target_id: str) -> Path:
        return self.lock_dir / f"{target_id}.lock"
