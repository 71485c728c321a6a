"""Hashing and secret redaction helpers."""

from shipline.security.hasher import Hasher
from shipline.security.redaction import REDACTED, redact

__all__ = ["Hasher", "REDACTED", "redact"]
