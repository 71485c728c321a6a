"""Content hashing — SHA-256 digests for journal entries and build contexts."""

from __future__ import annotations

import fnmatch
import hashlib
from pathlib import Path

# Never part of a build context digest, whatever .dockerignore says
_SKIP_DIRS = {".git", ".shipline"}

DOCKERIGNORE = ".dockerignore"


def read_ignore_patterns(context: str | Path, name: str = DOCKERIGNORE) -> list[tuple[str, bool]]:
    """Parse an ignore file into ``(pattern, negated)`` pairs.

    Blank lines and ``#`` comments are dropped; leading ``/`` and ``./``
    and trailing ``/`` are stripped.  A missing file means no patterns.
    """
    path = Path(context) / name
    if not path.is_file():
        return []
    patterns: list[tuple[str, bool]] = []
    for raw in path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        negated = line.startswith("!")
        if negated:
            line = line[1:].strip()
        line = line.removeprefix("./").lstrip("/").rstrip("/")
        if line:
            patterns.append((line, negated))
    return patterns


def is_ignored(rel_path: str, patterns: list[tuple[str, bool]]) -> bool:
    """Apply *patterns* to a posix relative path; the last match wins.

    A pattern that matches a parent directory excludes everything below it.
    """
    parts = rel_path.split("/")
    ignored = False
    for pattern, negated in patterns:
        if pattern.startswith("**/"):
            pattern = pattern[3:]
            starts = range(len(parts))
        else:
            starts = range(1)
        candidates = ["/".join(parts[i:j]) for i in starts for j in range(i + 1, len(parts) + 1)]
        if any(fnmatch.fnmatchcase(c, pattern) for c in candidates):
            ignored = not negated
    return ignored


class Hasher:
    """SHA-256 hashing for strings, files, and docker build contexts."""

    @staticmethod
    def hash_string(text: str) -> str:
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    @staticmethod
    def hash_file(path: str | Path) -> str:
        h = hashlib.sha256()
        with Path(path).open("rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                h.update(chunk)
        return h.hexdigest()

    @staticmethod
    def hash_context(path: str | Path, ignore_file: str = DOCKERIGNORE) -> str:
        """Digest of what ``docker build`` would send for the context at *path*.

        Files excluded by the context's ``.dockerignore`` do not contribute,
        so editing them leaves the digest unchanged.  Entries are sorted by
        relative path and each one mixes in its path and content hash.
        """
        root = Path(path)
        patterns = read_ignore_patterns(root, ignore_file)
        h = hashlib.sha256()
        for f in sorted(root.rglob("*")):
            if not f.is_file():
                continue
            rel = f.relative_to(root)
            if _SKIP_DIRS.intersection(rel.parts) or is_ignored(rel.as_posix(), patterns):
                continue
            h.update(f"{rel.as_posix()}:{Hasher.hash_file(f)}\n".encode("utf-8"))
        return h.hexdigest()
