"""HealthChecker — post-deploy probes inside a bounded wait window."""

from __future__ import annotations

import abc
import logging
import time
from typing import Callable

import requests
from pydantic import BaseModel, Field

from shipline.config import HEALTH_INTERVAL, HEALTH_REQUIRED_PASSES, HEALTH_WINDOW
from shipline.deployment.compose import process_check_script
from shipline.deployment.errors import ExecError, HealthCheckError
from shipline.deployment.executor import RemoteExecutor
from shipline.deployment.models import DeploymentTarget

logger = logging.getLogger(__name__)


class CheckResult(BaseModel):
    """Result of a single probe run."""

    name: str = ""
    passed: bool = True
    message: str = ""
    severity: str = "info"  # info, warning, critical


class HealthReport(BaseModel):
    """Aggregate outcome of a health wait."""

    status: str = "healthy"  # healthy, unhealthy
    rounds: int = 0
    elapsed: float = 0.0
    checks: list[CheckResult] = Field(default_factory=list)

    @property
    def failures(self) -> list[CheckResult]:
        return [c for c in self.checks if not c.passed]


class HealthProbe(abc.ABC):
    """A single post-deploy check against a target."""

    name: str = "probe"

    @abc.abstractmethod
    def check(self, target: DeploymentTarget) -> CheckResult:
        """Probe *target* once.  Must not raise for an unhealthy target."""


class HttpProbe(HealthProbe):
    """GET a URL and expect a non-error status.

    Parameters
    ----------
    url:
        URL to probe.  Defaults to the target's ``health_url``.
    expected_status:
        Status codes counted as healthy.  Defaults to any 2xx/3xx.
    """

    name = "http"

    def __init__(
        self,
        url: str = "",
        *,
        expected_status: set[int] | None = None,
        timeout: float = 5.0,
        session: requests.Session | None = None,
    ) -> None:
        self.url = url
        self.expected_status = expected_status
        self.timeout = timeout
        self._session = session or requests.Session()

    def check(self, target: DeploymentTarget) -> CheckResult:
        url = self.url or target.health_url
        if not url:
            return CheckResult(
                name=self.name, passed=True,
                message=f"No health URL configured for {target.target_id}, skipped",
                severity="warning",
            )
        try:
            resp = self._session.get(url, timeout=self.timeout)
        except requests.RequestException as exc:
            return CheckResult(
                name=self.name, passed=False,
                message=f"GET {url} failed: {exc.__class__.__name__}",
                severity="critical",
            )

        if self.expected_status is not None:
            ok = resp.status_code in self.expected_status
        else:
            ok = 200 <= resp.status_code < 400
        return CheckResult(
            name=self.name,
            passed=ok,
            message=f"GET {url} -> {resp.status_code}",
            severity="info" if ok else "critical",
        )


class ProcessProbe(HealthProbe):
    """Ask the target's compose project whether its containers are running."""

    name = "process"

    def __init__(self, executor: RemoteExecutor, service: str = "", timeout: float = 30.0) -> None:
        self.executor = executor
        self.service = service
        self.timeout = timeout

    def check(self, target: DeploymentTarget) -> CheckResult:
        try:
            self.executor.execute(target, process_check_script(target, self.service), self.timeout)
        except ExecError as exc:
            return CheckResult(
                name=self.name, passed=False,
                message=f"Process check failed ({exc.kind})",
                severity="critical",
            )
        return CheckResult(name=self.name, passed=True, message="Containers running")


class HealthChecker:
    """Poll probes until they pass or the wait window closes.

    Parameters
    ----------
    probes:
        Probes that must all pass in the same round.
    window:
        Seconds allowed from the first round to the verdict.
    interval:
        Seconds between rounds.
    required_passes:
        Consecutive all-pass rounds required to declare the target healthy.
    max_rounds:
        Optional hard limit on rounds, independent of the window.
    """

    def __init__(
        self,
        probes: list[HealthProbe],
        *,
        window: float = HEALTH_WINDOW,
        interval: float = HEALTH_INTERVAL,
        required_passes: int = HEALTH_REQUIRED_PASSES,
        max_rounds: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.probes = probes
        self.window = window
        self.interval = interval
        self.required_passes = max(1, required_passes)
        self.max_rounds = max_rounds
        self._sleep = sleep
        self._clock = clock

    def check_once(self, target: DeploymentTarget) -> list[CheckResult]:
        """Run every probe once."""
        return [probe.check(target) for probe in self.probes]

    def wait_healthy(self, target: DeploymentTarget) -> HealthReport:
        """Block until *target* is healthy.

        Returns the passing HealthReport.

        Raises
        ------
        HealthCheckError
            If the window closes (or ``max_rounds`` is reached) first.  The
            error's ``report`` holds every probe result observed.
        """
        start = self._clock()
        report = HealthReport()
        streak = 0

        while True:
            results = self.check_once(target)
            report.rounds += 1
            report.checks.extend(results)

            if all(r.passed for r in results):
                streak += 1
                if streak >= self.required_passes:
                    report.status = "healthy"
                    report.elapsed = self._clock() - start
                    logger.info(
                        "Target %s healthy after %d round(s)", target.target_id, report.rounds,
                    )
                    return report
            else:
                streak = 0
                logger.info(
                    "Target %s not healthy yet (round %d): %s",
                    target.target_id, report.rounds,
                    "; ".join(r.message for r in results if not r.passed),
                )

            elapsed = self._clock() - start
            out_of_rounds = self.max_rounds is not None and report.rounds >= self.max_rounds
            if out_of_rounds or elapsed + self.interval > self.window:
                report.status = "unhealthy"
                report.elapsed = elapsed
                raise HealthCheckError(
                    f"Target {target.target_id} unhealthy after {report.rounds} round(s) "
                    f"in {elapsed:.1f}s",
                    report,
                )
            self._sleep(self.interval)
