"""EventJournal — append-only, hash-chained transition log backed by SQLite."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from shipline.deployment.models import TransitionEvent
from shipline.security.hasher import Hasher

logger = logging.getLogger(__name__)

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS transitions (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp       TEXT    NOT NULL,
    release_id      TEXT    NOT NULL,
    target_id       TEXT    NOT NULL DEFAULT '',
    from_state      TEXT    NOT NULL,
    to_state        TEXT    NOT NULL,
    detail          TEXT    NOT NULL DEFAULT '',
    entry_hash      TEXT    NOT NULL,
    prev_entry_hash TEXT    NOT NULL DEFAULT ''
);
CREATE INDEX IF NOT EXISTS idx_transitions_release ON transitions (release_id);
CREATE INDEX IF NOT EXISTS idx_transitions_target ON transitions (target_id);
"""

_COLUMNS = (
    "id, timestamp, release_id, target_id, from_state, to_state, "
    "detail, entry_hash, prev_entry_hash"
)


class JournalEntry(BaseModel):
    """Single immutable journal record."""

    id: int = 0
    timestamp: str = ""
    release_id: str = ""
    target_id: str = ""
    from_state: str = ""
    to_state: str = ""
    detail: str = ""
    entry_hash: str = ""
    prev_entry_hash: str = ""


def _entry_hash(ts: str, event: TransitionEvent | JournalEntry, prev: str) -> str:
    return Hasher.hash_string(
        f"{ts}{event.release_id}{event.target_id}{event.from_state}"
        f"{event.to_state}{event.detail}{prev}"
    )


class EventJournal:
    """Append-only transition journal stored in SQLite.

    Safe to share between release worker threads.

    Parameters
    ----------
    db_path:
        Path to the SQLite file.  Defaults to ``':memory:'``.
    """

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        self._db_path = str(db_path)
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def record(self, event: TransitionEvent) -> JournalEntry:
        """Append *event* and return the stored JournalEntry."""
        ts = event.timestamp.isoformat()
        with self._lock:
            prev = self._last_hash()
            entry_hash = _entry_hash(ts, event, prev)
            cur = self._conn.execute(
                "INSERT INTO transitions "
                "(timestamp, release_id, target_id, from_state, to_state, detail, "
                "entry_hash, prev_entry_hash) VALUES (?,?,?,?,?,?,?,?)",
                (
                    ts, event.release_id, event.target_id, event.from_state,
                    event.to_state, event.detail, entry_hash, prev,
                ),
            )
            self._conn.commit()

        return JournalEntry(
            id=cur.lastrowid or 0,
            timestamp=ts,
            release_id=event.release_id,
            target_id=event.target_id,
            from_state=event.from_state,
            to_state=event.to_state,
            detail=event.detail,
            entry_hash=entry_hash,
            prev_entry_hash=prev,
        )

    def __call__(self, event: TransitionEvent) -> None:
        self.record(event)

    def verify_chain(self) -> bool:
        """Validate the entire hash chain.  Returns False if tampered."""
        prev_hash = ""
        for entry in self.get_events():
            if entry.prev_entry_hash != prev_hash:
                return False
            if _entry_hash(entry.timestamp, entry, prev_hash) != entry.entry_hash:
                return False
            prev_hash = entry.entry_hash
        return True

    def get_events(
        self,
        release_id: str | None = None,
        target_id: str | None = None,
        since: str | None = None,
    ) -> list[JournalEntry]:
        """Query the journal with optional filters, oldest first."""
        clauses: list[str] = []
        params: list[Any] = []
        if release_id is not None:
            clauses.append("release_id = ?")
            params.append(release_id)
        if target_id is not None:
            clauses.append("target_id = ?")
            params.append(target_id)
        if since is not None:
            clauses.append("timestamp >= ?")
            params.append(since)

        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
        sql = f"SELECT {_COLUMNS} FROM transitions{where} ORDER BY id"

        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [
            JournalEntry(
                id=r[0], timestamp=r[1], release_id=r[2], target_id=r[3],
                from_state=r[4], to_state=r[5], detail=r[6],
                entry_hash=r[7], prev_entry_hash=r[8],
            )
            for r in rows
        ]

    def latest_state(self, release_id: str) -> str | None:
        """The most recent ``to_state`` recorded for *release_id*."""
        events = self.get_events(release_id=release_id)
        return events[-1].to_state if events else None

    def export_json(self) -> str:
        """Export the full journal as JSON."""
        return json.dumps([e.model_dump() for e in self.get_events()], indent=2)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _last_hash(self) -> str:
        row = self._conn.execute(
            "SELECT entry_hash FROM transitions ORDER BY id DESC LIMIT 1"
        ).fetchone()
        return row[0] if row else ""

    def close(self) -> None:
        with self._lock:
            self._conn.close()
