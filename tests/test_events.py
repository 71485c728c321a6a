"""Tests for the transition journal, notifiers, and dispatcher."""

from __future__ import annotations

import json
import sqlite3

import requests

from shipline.deployment.models import TransitionEvent
from shipline.events import notifications as notifications_mod
from shipline.events.dispatcher import EventDispatcher
from shipline.events.journal import EventJournal
from shipline.events.notifications import (
    ConsoleNotifier,
    NotificationProvider,
    SlackNotifier,
    WebhookNotifier,
    format_event,
)


def _event(to_state: str = "building", release_id: str = "r1", target_id: str = "T1") -> TransitionEvent:
    return TransitionEvent(
        release_id=release_id, target_id=target_id,
        from_state="pending", to_state=to_state, detail="revision abc123",
    )


class FakeResponse:
    def __init__(self, status_code: int) -> None:
        self.status_code = status_code


# ── EventJournal ─────────────────────────────────────────────────────────────

class TestEventJournal:

    def test_record_chains_hashes(self):
        journal = EventJournal()
        first = journal.record(_event("building"))
        second = journal.record(_event("publishing"))
        assert first.prev_entry_hash == ""
        assert second.prev_entry_hash == first.entry_hash
        assert journal.verify_chain()

    def test_filters(self):
        journal = EventJournal()
        journal.record(_event("building", "r1", "T1"))
        journal.record(_event("building", "r2", "T2"))
        journal.record(_event("publishing", "r1", "T1"))
        assert [e.to_state for e in journal.get_events(release_id="r1")] == ["building", "publishing"]
        assert len(journal.get_events(target_id="T2")) == 1
        assert journal.latest_state("r1") == "publishing"
        assert journal.latest_state("missing") is None

    def test_tampering_detected(self, tmp_path):
        db = tmp_path / "events.db"
        journal = EventJournal(db)
        journal.record(_event("building"))
        journal.record(_event("publishing"))
        journal.close()

        conn = sqlite3.connect(db)
        conn.execute("UPDATE transitions SET to_state = 'succeeded' WHERE id = 1")
        conn.commit()
        conn.close()

        assert EventJournal(db).verify_chain() is False

    def test_persists_across_instances(self, tmp_path):
        db = tmp_path / "state" / "events.db"
        journal = EventJournal(db)
        journal(_event("building"))
        journal.close()
        reopened = EventJournal(db)
        assert len(reopened.get_events()) == 1
        assert reopened.verify_chain()

    def test_export_json(self):
        journal = EventJournal()
        journal.record(_event())
        data = json.loads(journal.export_json())
        assert data[0]["release_id"] == "r1"
        assert data[0]["entry_hash"]


# ── Notifiers ────────────────────────────────────────────────────────────────

class TestNotifiers:

    def test_format_event(self):
        assert format_event(_event("failed")) == "Release r1 on T1 pending -> failed (revision abc123)"

    def test_console_logs_every_event(self):
        console = ConsoleNotifier()
        assert console.notify(_event())
        assert console.log[0].to_state == "building"

    def test_slack_posts_text(self, monkeypatch):
        posted = {}

        def fake_post(url, json=None, timeout=None):
            posted.update(url=url, json=json)
            return FakeResponse(200)

        monkeypatch.setattr(notifications_mod.requests, "post", fake_post)
        assert SlackNotifier("https://hooks.slack.test/x").notify(_event("rolled_back"))
        assert posted["url"] == "https://hooks.slack.test/x"
        assert "pending -> rolled_back" in posted["json"]["text"]

    def test_slack_only_notable_by_default(self):
        slack = SlackNotifier("https://hooks.slack.test/x")
        assert not slack.wants(_event("building"))
        assert slack.wants(_event("failed"))

    def test_unconfigured_webhook_unavailable(self):
        assert not WebhookNotifier().is_available()
        assert WebhookNotifier().notify(_event()) is False

    def test_webhook_posts_structured_event(self, monkeypatch):
        posted = {}

        def fake_post(url, json=None, timeout=None):
            posted.update(json=json)
            return FakeResponse(204)

        monkeypatch.setattr(notifications_mod.requests, "post", fake_post)
        assert WebhookNotifier("https://hooks.example.test", only_notable=False).notify(_event())
        assert posted["json"]["release_id"] == "r1"
        assert posted["json"]["to_state"] == "building"

    def test_network_error_returns_false(self, monkeypatch):
        def fake_post(url, json=None, timeout=None):
            raise requests.ConnectionError("down")

        monkeypatch.setattr(notifications_mod.requests, "post", fake_post)
        assert SlackNotifier("https://hooks.slack.test/x").notify(_event("failed")) is False


# ── EventDispatcher ──────────────────────────────────────────────────────────

class ExplodingProvider(NotificationProvider):

    def notify(self, event):
        raise RuntimeError("provider down")

    def is_available(self):
        return True


class TestEventDispatcher:

    def test_sinks_and_console_receive_events(self):
        journal = EventJournal()
        dispatcher = EventDispatcher(sinks=[journal])
        dispatcher(_event())
        assert len(journal.get_events()) == 1
        assert len(dispatcher.console.log) == 1

    def test_failing_provider_does_not_propagate(self):
        seen = []
        dispatcher = EventDispatcher([ExplodingProvider()], sinks=[seen.append])
        dispatcher.dispatch(_event())
        assert len(seen) == 1

    def test_failing_sink_does_not_propagate(self):
        def locked(event):
            raise sqlite3.OperationalError("database is locked")

        seen = []
        dispatcher = EventDispatcher(sinks=[locked, seen.append])
        dispatcher.dispatch(_event())
        assert len(seen) == 1
        assert len(dispatcher.console.log) == 1

    def test_provider_filter_respected(self, monkeypatch):
        calls = []
        monkeypatch.setattr(
            notifications_mod.requests, "post",
            lambda url, json=None, timeout=None: calls.append(json) or FakeResponse(200),
        )
        dispatcher = EventDispatcher()
        dispatcher.add_provider(SlackNotifier("https://hooks.slack.test/x"))
        dispatcher(_event("building"))
        dispatcher(_event("succeeded"))
        assert len(calls) == 1
