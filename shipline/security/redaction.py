"""Mask secret configuration values before they reach logs or output."""

from __future__ import annotations

from typing import Mapping

REDACTED = "***"

_SECRET_MARKERS = ("PASSWORD", "TOKEN", "SECRET", "WEBHOOK", "KEY")


def is_secret(key: str) -> bool:
    """True if *key* names a credential or credential handle."""
    upper = key.upper()
    return any(marker in upper for marker in _SECRET_MARKERS)


def redact(config: Mapping[str, str]) -> dict[str, str]:
    """Return a copy of *config* with every non-empty secret masked."""
    return {
        k: (REDACTED if v and is_secret(k) else v)
        for k, v in config.items()
    }
