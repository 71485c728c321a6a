"""Release transition events: persistent journal and notification fan-out."""

from shipline.events.dispatcher import EventDispatcher
from shipline.events.journal import EventJournal, JournalEntry
from shipline.events.notifications import (
    ConsoleNotifier,
    NotificationProvider,
    SlackNotifier,
    WebhookNotifier,
)

__all__ = [
    "ConsoleNotifier",
    "EventDispatcher",
    "EventJournal",
    "JournalEntry",
    "NotificationProvider",
    "SlackNotifier",
    "WebhookNotifier",
]
