"""Unified entry point."""

from shipline.api.facade import Shipline

__all__ = ["Shipline"]
