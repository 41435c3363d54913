"""
Health gate for network-facing daemons.

A gate polls a probe at a fixed interval until it succeeds or the
timeout runs out. It never waits longer than ``timeout + interval``:
each probe call gets a time budget of at most one interval, capped by
what is left of the timeout, and must return within it. The
orchestrator does nothing else while a gate is waiting.
"""

import logging
import socket
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import requests

from stackup.errors import HealthGateTimeout
from stackup.utils import get_logger


# A probe takes its time budget in seconds.
Probe = Callable[[float], bool]

# Smallest budget handed to a probe once the timeout is used up.
MIN_PROBE_BUDGET = 0.1


class HealthStatus(str, Enum):
    READY = "ready"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class HealthCheck:
    """A probe plus how often and how long to try it."""

    name: str
    probe: Probe
    interval: float = 1.0
    timeout: float = 60.0


def http_probe(url: str, request_timeout: float = 5.0) -> Probe:
    """
    Probe that succeeds when ``url`` answers with any non-5xx status.

    Proxy settings from the environment are ignored; the target is local.
    The request timeout is the smaller of ``request_timeout`` and the
    budget the gate passes in.
    """
    def probe(budget: float) -> bool:
        with requests.Session() as session:
            session.trust_env = False
            try:
                response = session.get(url, timeout=min(request_timeout, budget))
            except requests.RequestException:
                return False
        return response.status_code < 500

    return probe


def tcp_probe(host: str, port: int, connect_timeout: float = 2.0) -> Probe:
    """Probe that succeeds when a TCP connection to host:port opens."""
    def probe(budget: float) -> bool:
        try:
            with socket.create_connection((host, port), timeout=min(connect_timeout, budget)):
                return True
        except OSError:
            return False

    return probe


class HealthGate:
    """Bounded readiness polling."""

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.logger = logger or get_logger()
        self.clock = clock
        self.sleep = sleep

    def wait(self, check: HealthCheck) -> HealthStatus:
        """
        Poll until the probe succeeds or the timeout elapses.

        Returns:
            HealthStatus.READY or HealthStatus.TIMED_OUT
        """
        self.logger.info(
            f"Waiting for {check.name} (timeout {check.timeout:g}s)",
            extra={"event": "health_wait", "task": check.name},
        )
        started = self.clock()
        attempts = 0

        while True:
            attempts += 1
            if self._poll(check, self._budget(check, self.clock() - started)):
                self.logger.info(
                    f"{check.name} is ready",
                    extra={
                        "event": "health_ready",
                        "task": check.name,
                        "metadata": {"attempts": attempts, "elapsed": self.clock() - started},
                    },
                )
                return HealthStatus.READY

            elapsed = self.clock() - started
            if elapsed >= check.timeout:
                self.logger.error(
                    f"{check.name} did not become ready",
                    extra={
                        "event": "health_timeout",
                        "task": check.name,
                        "metadata": {"attempts": attempts, "elapsed": elapsed},
                    },
                )
                return HealthStatus.TIMED_OUT

            self.sleep(min(check.interval, check.timeout - elapsed))

    def require_ready(self, check: HealthCheck) -> None:
        """
        Like wait(), but a timeout is an error.

        Raises:
            HealthGateTimeout: If the probe never succeeded
        """
        if self.wait(check) is HealthStatus.TIMED_OUT:
            raise HealthGateTimeout(check.name, check.timeout)

    @staticmethod
    def _budget(check: HealthCheck, elapsed: float) -> float:
        return min(check.interval, max(check.timeout - elapsed, MIN_PROBE_BUDGET))

    def _poll(self, check: HealthCheck, budget: float) -> bool:
        try:
            return bool(check.probe(budget))
        except Exception as e:
            self.logger.debug(
                f"Probe for {check.name} raised: {e}",
                extra={"event": "health_probe_error", "task": check.name},
            )
            return False
