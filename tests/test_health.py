"""Tests for post-deploy health checks."""

from __future__ import annotations

import pytest
import requests

from conftest import FakeExecutor, ScriptedProbe, no_sleep
from shipline.deployment.errors import ExecFailure, HealthCheckError
from shipline.deployment.health import HealthChecker, HttpProbe, ProcessProbe
from shipline.deployment.models import DeploymentTarget

TARGET = DeploymentTarget(
    target_id="T1", endpoint="deploy@203.0.113.10", health_url="http://203.0.113.10:8000/health",
)


class FakeResponse:
    def __init__(self, status_code: int) -> None:
        self.status_code = status_code


class FakeSession:
    """Replays status codes or exceptions for GET."""

    def __init__(self, *replies) -> None:
        self.replies = list(replies)
        self.urls: list[str] = []

    def get(self, url, timeout=None):
        self.urls.append(url)
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return FakeResponse(reply)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


# ── HttpProbe ────────────────────────────────────────────────────────────────

class TestHttpProbe:

    def test_ok_status_passes(self):
        session = FakeSession(200)
        result = HttpProbe(session=session).check(TARGET)
        assert result.passed
        assert session.urls == ["http://203.0.113.10:8000/health"]

    def test_server_error_fails(self):
        result = HttpProbe(session=FakeSession(503)).check(TARGET)
        assert not result.passed
        assert result.severity == "critical"
        assert "503" in result.message

    def test_connection_error_fails(self):
        result = HttpProbe(session=FakeSession(requests.ConnectionError("refused"))).check(TARGET)
        assert not result.passed
        assert "ConnectionError" in result.message

    def test_expected_status(self):
        result = HttpProbe(expected_status={204}, session=FakeSession(200)).check(TARGET)
        assert not result.passed

    def test_explicit_url_overrides_target(self):
        session = FakeSession(200)
        HttpProbe("http://lb.internal/ready", session=session).check(TARGET)
        assert session.urls == ["http://lb.internal/ready"]

    def test_no_url_is_skipped(self):
        target = TARGET.model_copy(update={"health_url": ""})
        session = FakeSession()
        result = HttpProbe(session=session).check(target)
        assert result.passed
        assert result.severity == "warning"
        assert session.urls == []


# ── ProcessProbe ─────────────────────────────────────────────────────────────

class TestProcessProbe:

    def test_running_containers_pass(self):
        executor = FakeExecutor()
        assert ProcessProbe(executor).check(TARGET).passed
        assert "ps --status running" in executor.calls[0].commands[0]
        assert executor.calls[0].workdir == "~/app"

    def test_exec_failure_fails(self):
        result = ProcessProbe(FakeExecutor([ExecFailure.NON_ZERO_EXIT])).check(TARGET)
        assert not result.passed
        assert "non_zero_exit" in result.message


# ── HealthChecker ────────────────────────────────────────────────────────────

class TestHealthChecker:

    def test_healthy_first_round(self):
        report = HealthChecker([ScriptedProbe()], sleep=no_sleep).wait_healthy(TARGET)
        assert report.status == "healthy"
        assert report.rounds == 1

    def test_recovers_inside_window(self):
        clock = FakeClock()
        probe = ScriptedProbe([False, False, True])
        checker = HealthChecker([probe], window=60, interval=5, sleep=clock.sleep, clock=clock)
        report = checker.wait_healthy(TARGET)
        assert report.rounds == 3
        assert report.elapsed == 10
        assert len(report.failures) == 2

    def test_window_closes(self):
        clock = FakeClock()
        probe = ScriptedProbe(default=False)
        checker = HealthChecker([probe], window=20, interval=5, sleep=clock.sleep, clock=clock)
        with pytest.raises(HealthCheckError) as excinfo:
            checker.wait_healthy(TARGET)
        report = excinfo.value.report
        assert report.status == "unhealthy"
        # rounds at t=0, 5, 10, 15, 20; another would overrun the window
        assert report.rounds == 5
        assert clock.now <= 20

    def test_max_rounds(self):
        probe = ScriptedProbe(default=False)
        checker = HealthChecker([probe], max_rounds=3, sleep=no_sleep)
        with pytest.raises(HealthCheckError):
            checker.wait_healthy(TARGET)
        assert probe.calls == 3

    def test_all_probes_must_pass_together(self):
        good, bad = ScriptedProbe(), ScriptedProbe([False])
        report = HealthChecker([good, bad], sleep=no_sleep).wait_healthy(TARGET)
        assert report.rounds == 2

    def test_required_passes_are_consecutive(self):
        probe = ScriptedProbe([True, False, True, True])
        checker = HealthChecker([probe], required_passes=2, sleep=no_sleep)
        assert checker.wait_healthy(TARGET).rounds == 4
