import subprocess
from unittest.mock import Mock

import pytest

from stackup.config import build_config
from stackup.errors import CommandError
from stackup.health import HealthCheck, HealthGate
from stackup.stages import base
from stackup.supervisor import ProcessSupervisor


class FakeRunner:
    """Records commands instead of running them; canned results by argv prefix."""

    def __init__(self):
        self.dry_run = False
        self.sudo = False
        self.calls = []
        self._responses = []

    def respond(self, prefix, stdout="", returncode=0, stderr=""):
        self._responses.append((list(prefix), stdout, returncode, stderr))

    def run(self, command, check=True, input=None, cwd=None, env=None, privileged=False):
        argv = [str(part) for part in command]
        self.calls.append({"argv": argv, "env": dict(env or {}), "cwd": cwd, "privileged": privileged})

        stdout, returncode, stderr = "", 0, ""
        for prefix, out, code, err in reversed(self._responses):
            if argv[: len(prefix)] == prefix:
                stdout, returncode, stderr = out, code, err
                break

        if check and returncode != 0:
            raise CommandError(argv, returncode, stderr)
        return subprocess.CompletedProcess(argv, returncode, stdout=stdout, stderr=stderr)

    @property
    def commands(self):
        return [call["argv"] for call in self.calls]

    def ran(self, *prefix):
        prefix = list(prefix)
        return any(argv[: len(prefix)] == prefix for argv in self.commands)


class FakeProcess:
    def __init__(self, pid, returncode=None):
        self.pid = pid
        self.returncode = returncode

    def poll(self):
        return self.returncode


class FakePopen:
    """Stands in for subprocess.Popen; names in ``dead`` exit at once."""

    def __init__(self, dead=()):
        self.dead = set(dead)
        self.calls = []
        self.processes = {}
        self._next_pid = 1000

    def __call__(self, command, **kwargs):
        self._next_pid += 1
        self.calls.append({"command": list(command), **kwargs})
        name = command[0]
        process = FakeProcess(self._next_pid, 1 if name in self.dead else None)
        self.processes[name] = process
        return process


class FakeClock:
    """Monotonic clock that only moves when sleep() is called."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def fake_popen():
    return FakePopen()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def health_gate(fake_clock):
    return HealthGate(clock=fake_clock, sleep=fake_clock.sleep)


@pytest.fixture
def supervisor(tmp_path, fake_popen):
    return ProcessSupervisor(
        tmp_path / "home" / "sessions",
        tmp_path / "home" / "logs" / "tasks",
        popen=fake_popen,
        is_alive=lambda pid: True,
        killpg=Mock(),
    )


@pytest.fixture
def raw_config(tmp_path):
    """Minimal stack.yaml contents rooted in tmp_path."""
    return {
        "stack": {
            "name": "test-stack",
            "version": "1.0.0",
            "owner_tag": "stackup",
            "home": str(tmp_path / "home"),
            "dest": str(tmp_path / "opt"),
            "sudo": False,
        },
        "services": {"enabled": ["key", "mysql", "rabbit", "g-api", "g-reg"]},
        "database": {
            "password": "secret",
            "databases": {
                "keystone": {"service": "key"},
                "glance": {"service": "glance"},
                "nova": {"service": "nova", "charset": "latin1"},
            },
        },
        "storage": {
            "data_dir": str(tmp_path / "data" / "swift"),
            "config_dir": str(tmp_path / "etc" / "swift"),
            "loopback_size": 4096,
            "partition_power": 4,
            "replicas": 3,
        },
        "health": {"timeout": 5, "poll_interval": 1},
        "identity": {"bootstrap": ["keystone_data.sh"]},
        "daemons": [
            {"name": "key", "command": ["keystone-all"], "health": {"port": 5000}},
            {"name": "g-reg", "command": ["glance-registry"]},
            {"name": "g-api", "command": ["glance-api"], "health": {"url": "http://127.0.0.1:9292"}},
        ],
        "logging": {"console": False},
    }


@pytest.fixture
def make_config(raw_config):
    """Build a StackConfig from raw_config with optional overrides."""

    def _make(environ=None, **sections):
        raw = dict(raw_config)
        for key, value in sections.items():
            raw[key] = value
        return build_config(raw, environ=environ or {})

    return _make


@pytest.fixture
def stack_config(make_config):
    return make_config()


@pytest.fixture
def probes(monkeypatch):
    """
    Replace daemon health checks with in-memory probes.

    Map a daemon name to False to make it never become ready; anything
    not listed is ready at once.
    """
    results = {}

    def fake_check(daemon, config):
        if not daemon.network_facing:
            return None
        return HealthCheck(
            name=daemon.name,
            probe=lambda budget: results.get(daemon.name, True),
            interval=config.health.poll_interval,
            timeout=config.health.timeout,
        )

    monkeypatch.setattr(base, "daemon_health_check", fake_check)
    return results
