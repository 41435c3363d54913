"""Tests for the health gate and its probes."""

import socket
import time
from unittest.mock import MagicMock, patch

import pytest
import requests

from stackup.errors import HealthGateTimeout
from stackup.health import HealthCheck, HealthGate, HealthStatus, http_probe, tcp_probe


class Flaky:
    """Probe that fails ``failures`` times, then succeeds."""

    def __init__(self, failures):
        self.failures = failures
        self.calls = 0

    def __call__(self, budget):
        self.calls += 1
        return self.calls > self.failures


class TestHealthGate:
    def test_ready_immediately(self, health_gate, fake_clock):
        status = health_gate.wait(HealthCheck("key", lambda budget: True))
        assert status is HealthStatus.READY
        assert fake_clock.sleeps == []

    def test_ready_after_retries(self, health_gate, fake_clock):
        probe = Flaky(3)
        status = health_gate.wait(HealthCheck("key", probe, interval=1.0, timeout=10.0))
        assert status is HealthStatus.READY
        assert probe.calls == 4
        assert fake_clock.now == 3.0

    def test_times_out(self, health_gate, fake_clock):
        status = health_gate.wait(HealthCheck("key", lambda budget: False, interval=1.0, timeout=5.0))
        assert status is HealthStatus.TIMED_OUT

    def test_wait_is_bounded(self, health_gate, fake_clock):
        """Never longer than timeout + interval."""
        health_gate.wait(HealthCheck("key", lambda budget: False, interval=3.0, timeout=10.0))
        assert fake_clock.now <= 13.0
        assert fake_clock.now >= 10.0

    def test_last_sleep_is_shortened(self, health_gate, fake_clock):
        health_gate.wait(HealthCheck("key", lambda budget: False, interval=4.0, timeout=10.0))
        assert fake_clock.sleeps == [4.0, 4.0, 2.0]

    def test_raising_probe_is_not_ready(self, health_gate):
        def probe(budget):
            raise RuntimeError("connection reset")

        status = health_gate.wait(HealthCheck("key", probe, timeout=2.0))
        assert status is HealthStatus.TIMED_OUT

    def test_require_ready_raises(self, health_gate):
        with pytest.raises(HealthGateTimeout, match="key did not become ready within 2s"):
            health_gate.require_ready(HealthCheck("key", lambda budget: False, timeout=2.0))

    def test_require_ready_passes(self, health_gate):
        health_gate.require_ready(HealthCheck("key", Flaky(1), timeout=2.0))


class TestHttpProbe:
    def session_returning(self, status_code=None, error=None):
        session = MagicMock()
        session.__enter__.return_value = session
        if error is not None:
            session.get.side_effect = error
        else:
            session.get.return_value = MagicMock(status_code=status_code)
        return session

    @pytest.mark.parametrize("status_code,ready", [(200, True), (401, True), (404, True), (500, False), (503, False)])
    def test_status_codes(self, status_code, ready):
        session = self.session_returning(status_code)
        with patch("stackup.health.requests.Session", return_value=session):
            assert http_probe("http://127.0.0.1:5000/")(1.0) is ready

    def test_ignores_proxy_environment(self):
        session = self.session_returning(200)
        with patch("stackup.health.requests.Session", return_value=session):
            http_probe("http://127.0.0.1:5000/")(1.0)
        assert session.trust_env is False

    def test_connection_error(self):
        session = self.session_returning(error=requests.ConnectionError("refused"))
        with patch("stackup.health.requests.Session", return_value=session):
            assert http_probe("http://127.0.0.1:5000/")(1.0) is False


class TestTcpProbe:
    def test_open_port(self):
        server = socket.socket()
        server.bind(("127.0.0.1", 0))
        server.listen(1)
        try:
            assert tcp_probe("127.0.0.1", server.getsockname()[1])(1.0) is True
        finally:
            server.close()

    def test_closed_port(self):
        with patch("stackup.health.socket.create_connection", side_effect=ConnectionRefusedError()):
            assert tcp_probe("127.0.0.1", 1)(1.0) is False


class TestProbeBudget:
    """Each probe call is limited to what is left of the gate's timeout."""

    def test_budget_never_exceeds_interval(self, health_gate):
        budgets = []

        def probe(budget):
            budgets.append(budget)
            return False

        health_gate.wait(HealthCheck("key", probe, interval=4.0, timeout=10.0))
        assert budgets == [4.0, 4.0, 2.0, 0.1]

    def test_slow_probe_respects_bound(self):
        """A probe that uses its whole budget still times out on schedule."""
        def probe(budget):
            time.sleep(budget)
            return False

        started = time.monotonic()
        status = HealthGate().wait(HealthCheck("key", probe, interval=0.2, timeout=0.5))
        elapsed = time.monotonic() - started

        assert status is HealthStatus.TIMED_OUT
        assert elapsed <= 0.5 + 0.2 + 0.3

    def test_silent_http_endpoint_respects_bound(self):
        """A listening socket that never answers is a daemon still starting."""
        server = socket.socket()
        server.bind(("127.0.0.1", 0))
        server.listen(8)
        url = f"http://127.0.0.1:{server.getsockname()[1]}/"
        try:
            started = time.monotonic()
            status = HealthGate().wait(HealthCheck("key", http_probe(url), interval=0.2, timeout=0.5))
            elapsed = time.monotonic() - started
        finally:
            server.close()

        assert status is HealthStatus.TIMED_OUT
        assert elapsed <= 0.5 + 0.2 + 0.3

    def test_http_timeout_is_budget(self):
        session = MagicMock()
        session.__enter__.return_value = session
        session.get.return_value = MagicMock(status_code=200)
        with patch("stackup.health.requests.Session", return_value=session):
            http_probe("http://127.0.0.1:5000/", request_timeout=5.0)(0.25)
        assert session.get.call_args.kwargs["timeout"] == 0.25

    def test_tcp_timeout_is_budget(self):
        with patch("stackup.health.socket.create_connection", side_effect=OSError()) as connect:
            tcp_probe("127.0.0.1", 5000)(0.5)
        assert connect.call_args.kwargs["timeout"] == 0.5
