"""Notification providers — console, Slack, generic JSON webhook."""

from __future__ import annotations

import abc
import logging
from typing import Any

import requests

from shipline.deployment.models import TransitionEvent

logger = logging.getLogger(__name__)

# Transitions worth paging a channel for
NOTABLE_STATES = {"succeeded", "failed", "rolling_back", "rolled_back"}


class NotificationProvider(abc.ABC):
    """Abstract notification provider."""

    @abc.abstractmethod
    def notify(self, event: TransitionEvent) -> bool:
        """Send a notification about a transition.

        Returns True if the notification was delivered.
        """

    @abc.abstractmethod
    def is_available(self) -> bool:
        """Return True if provider is ready to send."""

    def wants(self, event: TransitionEvent) -> bool:
        """Filter hook; by default every transition is sent."""
        return True


class ConsoleNotifier(NotificationProvider):
    """Always-available log notification provider."""

    def __init__(self) -> None:
        self._log: list[TransitionEvent] = []

    def notify(self, event: TransitionEvent) -> bool:
        self._log.append(event)
        logger.info(
            "[shipline] release=%s target=%s %s -> %s %s",
            event.release_id, event.target_id, event.from_state,
            event.to_state, event.detail,
        )
        return True

    def is_available(self) -> bool:
        return True

    @property
    def log(self) -> list[TransitionEvent]:
        """Access the in-memory log for testing."""
        return list(self._log)


class _HttpNotifier(NotificationProvider):
    """Shared plumbing for providers that POST JSON to a URL."""

    ok_status: tuple[int, ...] = (200,)

    def __init__(
        self,
        webhook_url: str | None = None,
        *,
        only_notable: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self._webhook_url = webhook_url
        self.only_notable = only_notable
        self.timeout = timeout

    def is_available(self) -> bool:
        return bool(self._webhook_url)

    def wants(self, event: TransitionEvent) -> bool:
        return not self.only_notable or event.to_state in NOTABLE_STATES

    def notify(self, event: TransitionEvent) -> bool:
        if not self.is_available():
            logger.warning("%s unavailable, skipping.", type(self).__name__)
            return False
        try:
            resp = requests.post(self._webhook_url, json=self.payload(event), timeout=self.timeout)
        except requests.RequestException as exc:
            # URL is a secret: log only the failure type
            logger.warning("%s failed: %s", type(self).__name__, exc.__class__.__name__)
            return False
        return resp.status_code in self.ok_status

    @abc.abstractmethod
    def payload(self, event: TransitionEvent) -> dict[str, Any]:
        """Body to POST for *event*."""


class SlackNotifier(_HttpNotifier):
    """Slack incoming-webhook provider. Optional."""

    def payload(self, event: TransitionEvent) -> dict[str, Any]:
        return {"text": format_event(event)}


class WebhookNotifier(_HttpNotifier):
    """Generic webhook receiving the structured event as JSON. Optional."""

    ok_status = (200, 201, 202, 204)

    def payload(self, event: TransitionEvent) -> dict[str, Any]:
        return event.model_dump(mode="json")


def format_event(event: TransitionEvent) -> str:
    """Format a transition into a readable notification message."""
    parts = [f"Release {event.release_id}"]
    if event.target_id:
        parts.append(f"on {event.target_id}")
    parts.append(f"{event.from_state} -> {event.to_state}")
    if event.detail:
        parts.append(f"({event.detail})")
    return " ".join(parts)
