"""Event dispatcher — routes transition events to every sink."""

from __future__ import annotations

import logging
from typing import Callable

from shipline.deployment.models import TransitionEvent
from shipline.events.notifications import ConsoleNotifier, NotificationProvider

logger = logging.getLogger(__name__)


class EventDispatcher:
    """Dispatch transition events to the journal and notification providers.

    Always includes a ConsoleNotifier.  A failing sink or provider is
    logged and skipped; it never interrupts a release.
    """

    def __init__(
        self,
        providers: list[NotificationProvider] | None = None,
        sinks: list[Callable[[TransitionEvent], None]] | None = None,
    ) -> None:
        self._console = ConsoleNotifier()
        self._providers: list[NotificationProvider] = [self._console]
        if providers:
            self._providers.extend(providers)
        self._sinks: list[Callable[[TransitionEvent], None]] = list(sinks or [])

    def add_provider(self, provider: NotificationProvider) -> None:
        """Register an additional notification provider."""
        self._providers.append(provider)

    def add_sink(self, sink: Callable[[TransitionEvent], None]) -> None:
        """Register a callable that must see every event (e.g. the journal)."""
        self._sinks.append(sink)

    @property
    def console(self) -> ConsoleNotifier:
        """Access the built-in console notifier (useful for testing)."""
        return self._console

    def __call__(self, event: TransitionEvent) -> None:
        self.dispatch(event)

    def dispatch(self, event: TransitionEvent) -> None:
        """Send *event* to all sinks, then to all available providers."""
        for sink in self._sinks:
            try:
                sink(event)
            except Exception:
                logger.exception(
                    "Event sink %r failed for %s -> %s",
                    sink, event.release_id, event.to_state,
                )
        for provider in self._providers:
            if not provider.is_available() or not provider.wants(event):
                continue
            try:
                provider.notify(event)
            except Exception as exc:
                logger.warning(
                    "Notification provider %s failed: %s",
                    type(provider).__name__,
                    exc,
                )
