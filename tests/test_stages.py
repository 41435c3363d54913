"""Tests for the provisioning stages."""

import json
import os
from unittest.mock import Mock

import pytest

from stackup.collaborators import Collaborators
from stackup.errors import HealthGateTimeout, ResourceLifecycleError, TaskExitedError
from stackup.orchestrator import default_managers
from stackup.resources.ring import Ring
from stackup.stages import (
    STAGES,
    ConfigureStage,
    DatabaseStage,
    IdentityStage,
    LibrariesStage,
    PackagesStage,
    ProcessesStage,
    RunContext,
    SeedStage,
    SourcesStage,
    Stage,
    VerifyStage,
)
from stackup.supervisor import TaskState
from stackup.utils import get_logger


@pytest.fixture
def collaborators():
    mock = Mock(spec=Collaborators)
    mock.render_config.return_value = False
    return mock


@pytest.fixture
def make_context(fake_runner, supervisor, health_gate, probes, collaborators):
    def _make(config, collaborators=collaborators):
        logger = get_logger()
        return RunContext(
            config=config,
            selection=config.resolve_services(),
            runner=fake_runner,
            supervisor=supervisor,
            session=supervisor.open_session(config.session_name),
            health_gate=health_gate,
            collaborators=collaborators,
            managers=default_managers(config, fake_runner, logger),
            logger=logger,
        )

    return _make


@pytest.fixture
def real_collaborators(fake_runner):
    def _make(config):
        return Collaborators(config, fake_runner, renderers={})

    return _make


class TestStageOrder:
    def test_fixed_order(self):
        assert [stage.name for stage in STAGES] == [
            "packages",
            "sources",
            "libraries",
            "configure",
            "databases",
            "identity",
            "processes",
            "verify",
            "seed",
        ]


class TestStageRun:
    """Stage.run() turns exceptions into failed results."""

    def test_exception_becomes_failed_result(self, make_context, stack_config):
        class Exploding(Stage):
            name = "exploding"

            def execute(self):
                raise KeyError("missing")

        result = Exploding(make_context(stack_config)).run()
        assert not result.success
        assert isinstance(result.error, KeyError)
        assert result.to_dict()["error_type"] == "KeyError"

    def test_success_carries_metadata(self, make_context, stack_config):
        class Quiet(Stage):
            name = "quiet"

            def execute(self):
                return {"done": 1}

        result = Quiet(make_context(stack_config)).run()
        assert result.success
        assert not result.skipped
        assert result.metadata == {"done": 1}
        assert result.ended_at >= result.started_at

    def test_irrelevant_stage_is_skipped(self, make_context, make_config):
        config = make_config(environ={"ENABLED_SERVICES": "key,rabbit"})
        result = DatabaseStage(make_context(config)).run()
        assert result.success
        assert result.skipped


class TestInstallStages:
    def test_packages_for_enabled_services(self, make_context, make_config, real_collaborators, fake_runner):
        config = make_config(
            packages={
                "general": ["git", "curl"],
                "mysql": ["mysql-server", "git"],
                "nova": ["kvm"],
            }
        )
        result = PackagesStage(make_context(config, real_collaborators(config))).run()

        assert result.success
        assert fake_runner.commands == [["apt-get", "install", "-y", "git", "curl", "mysql-server"]]
        assert fake_runner.calls[0]["privileged"]

    def test_sources_only_for_enabled(self, make_context, make_config, real_collaborators, fake_runner, tmp_path):
        config = make_config(
            sources={
                "key": "https://example.org/keystone.git",
                "n-api": "https://example.org/nova.git",
            }
        )
        result = SourcesStage(make_context(config, real_collaborators(config))).run()

        assert result.metadata == {"sources": ["key"]}
        assert fake_runner.commands == [
            ["git", "clone", "--branch", "master", "https://example.org/keystone.git", str(tmp_path / "opt" / "keystone")]
        ]

    def test_existing_checkout_not_cloned(self, make_context, make_config, real_collaborators, fake_runner, tmp_path):
        (tmp_path / "opt" / "keystone").mkdir(parents=True)
        config = make_config(sources={"key": "https://example.org/keystone.git"})
        SourcesStage(make_context(config, real_collaborators(config))).run()
        assert fake_runner.commands == []

    def test_libraries(self, make_context, make_config, real_collaborators, fake_runner):
        config = make_config(
            sources={
                "key": "https://example.org/keystone.git",
                "g-api": {"repo": "https://example.org/glance.git", "library": False},
            }
        )
        result = LibrariesStage(make_context(config, real_collaborators(config))).run()
        assert result.metadata == {"libraries": ["key"]}
        assert fake_runner.commands[0][1:5] == ["-m", "pip", "install", "-e"]


class TestConfigureStage:
    def test_renders_enabled_services(self, make_context, stack_config, collaborators):
        collaborators.render_config.side_effect = lambda service, selection: service.value == "key"
        result = ConfigureStage(make_context(stack_config)).run()

        assert result.success
        assert result.metadata["rendered"] == ["key"]
        rendered = [call.args[0].value for call in collaborators.render_config.call_args_list]
        assert rendered == ["mysql", "rabbit", "key", "g-api", "g-reg"]

    def test_no_network_resources_without_nova(self, make_context, stack_config, fake_runner):
        ConfigureStage(make_context(stack_config)).run()
        assert fake_runner.commands == []

    def test_network_resources(self, make_context, make_config, fake_runner):
        config = make_config(environ={"ENABLED_SERVICES": "key,mysql,rabbit,n-net,n-cpu,q-agt"})
        context = make_context(config)
        result = ConfigureStage(context).run()

        assert result.success
        assert fake_runner.ran("iptables", "-t", "filter", "-S")
        assert fake_runner.ran("ip", "link", "add", "name", "br100", "type", "bridge")
        assert fake_runner.ran("ovs-vsctl", "--no-wait", "--", "--may-exist", "add-br", "br-int")
        assert "stackup:bridge:br100" in context.resources
        assert "stackup:firewall:stackup" in context.resources

    def test_compute_reset(self, make_context, make_config, fake_runner, tmp_path):
        """Old instances and their disks from an earlier run are removed."""
        fake_runner.respond(["virsh", "list"], stdout="instance-00000001\nforeign\n")
        instances_dir = tmp_path / "opt" / "data" / "nova" / "instances"
        (instances_dir / "instance-00000001").mkdir(parents=True)

        config = make_config(environ={"ENABLED_SERVICES": "key,mysql,rabbit,n-cpu"})
        context = make_context(config)
        assert ConfigureStage(context).run().success

        assert fake_runner.ran("virsh", "destroy", "instance-00000001")
        assert fake_runner.ran("virsh", "undefine", "instance-00000001")
        assert not fake_runner.ran("virsh", "destroy", "foreign")
        assert fake_runner.ran("rm", "-rf", "--", str(instances_dir))
        assert not fake_runner.ran("killall", "dnsmasq")
        assert "stackup:instances:instance-" in context.resources
        assert f"stackup:state-dir:{instances_dir}" in context.resources

    def test_network_state_reset(self, make_context, make_config, fake_runner, tmp_path):
        config = make_config(
            environ={"ENABLED_SERVICES": "key,mysql,rabbit,q-dhcp"},
            compute={"state_dir": str(tmp_path / "nova")},
        )
        context = make_context(config)
        assert ConfigureStage(context).run().success

        assert fake_runner.ran("killall", "dnsmasq")
        assert fake_runner.ran("sysctl", "-w", "net.ipv4.ip_forward=1")
        assert not fake_runner.ran("virsh")
        assert (tmp_path / "nova" / "networks").is_dir()
        assert f"stackup:state-dir:{tmp_path / 'nova' / 'networks'}" in context.resources

    def test_object_storage(self, make_context, make_config, fake_runner, tmp_path):
        config = make_config(environ={"ENABLED_SERVICES": "key,mysql,rabbit,swift"})
        result = ConfigureStage(make_context(config)).run()
        assert result.success

        data_dir = tmp_path / "data" / "swift"
        assert (data_dir / "drives" / "images" / "swift.img").stat().st_size == 4096
        assert fake_runner.ran("mkfs.xfs", "-f", "-i", "size=1024")
        for zone in ("1", "2", "3"):
            assert (data_dir / zone).is_symlink()
            assert (data_dir / zone / "node" / "sdb1").is_dir()

        config_dir = tmp_path / "etc" / "swift"
        for name, port in (("object", 6010), ("container", 6011), ("account", 6012)):
            ring = Ring.from_dict(json.loads((config_dir / f"{name}.builder.json").read_text()))
            assert ring.partition_count == 16
            assert ring.devices[0] == f"z1-127.0.0.1:{port}/sdb1"
            assert ring.devices[2] == f"z3-127.0.0.1:{port + 20}/sdb1"

    def test_rerun_recreates_storage(self, make_context, make_config, supervisor, tmp_path):
        config = make_config(environ={"ENABLED_SERVICES": "key,mysql,rabbit,swift"})
        assert ConfigureStage(make_context(config)).run().success
        supervisor.teardown(config.session_name)
        assert ConfigureStage(make_context(config)).run().success
        assert len(list((tmp_path / "etc" / "swift").glob("*.builder.json"))) == 3

    def test_resource_failure(self, make_context, make_config, fake_runner):
        fake_runner.respond(["ip", "link", "add"], returncode=2, stderr="Operation not permitted")
        config = make_config(environ={"ENABLED_SERVICES": "key,mysql,rabbit,n-net"})
        result = ConfigureStage(make_context(config)).run()

        assert not result.success
        assert isinstance(result.error, ResourceLifecycleError)
        assert "stackup:bridge:br100" in result.error_message


class TestDatabaseStage:
    def test_recreates_enabled_databases(self, make_context, stack_config, fake_runner):
        result = DatabaseStage(make_context(stack_config)).run()

        assert result.metadata == {"databases": ["keystone", "glance"]}
        statements = [argv[-1] for argv in fake_runner.commands]
        assert "CREATE DATABASE keystone CHARACTER SET utf8;" in statements
        assert "CREATE DATABASE glance CHARACTER SET utf8;" in statements
        assert not any("nova" in sql for sql in statements)

    def test_latin1_for_nova(self, make_context, make_config, fake_runner):
        config = make_config(environ={"ENABLED_SERVICES": "key,mysql,rabbit,n-api"})
        DatabaseStage(make_context(config)).run()
        assert fake_runner.ran(
            "mysql", "-uroot", "-h127.0.0.1", "-e", "CREATE DATABASE nova CHARACTER SET latin1;"
        )


class TestIdentityStage:
    def test_spawn_gate_bootstrap(self, make_context, stack_config, collaborators):
        context = make_context(stack_config)
        result = IdentityStage(context).run()

        assert result.success
        assert context.session.tasks["key"].state is TaskState.RUNNING
        assert "key" in context.gated
        collaborators.bootstrap_catalog.assert_called_once_with(context.selection)

    def test_timeout_skips_bootstrap(self, make_context, stack_config, collaborators, probes):
        probes["key"] = False
        result = IdentityStage(make_context(stack_config)).run()

        assert not result.success
        assert isinstance(result.error, HealthGateTimeout)
        collaborators.bootstrap_catalog.assert_not_called()

    def test_external_identity_service(self, make_context, make_config, monkeypatch, collaborators):
        """Without a key daemon the auth URL is still waited for."""
        urls = []

        def fake_http_probe(url):
            urls.append(url)
            return lambda budget: True

        monkeypatch.setattr("stackup.stages.identity.http_probe", fake_http_probe)
        config = make_config(daemons=[])
        context = make_context(config)
        result = IdentityStage(context).run()

        assert result.success
        assert urls == ["http://127.0.0.1:5000/v2.0/"]
        assert context.session.tasks == {}
        collaborators.bootstrap_catalog.assert_called_once()


class TestProcessesStage:
    def test_spawns_enabled_in_order(self, make_context, make_config, fake_popen, raw_config):
        daemons = raw_config["daemons"] + [{"name": "n-api", "command": ["nova-api"]}]
        context = make_context(make_config(daemons=daemons))
        result = ProcessesStage(context).run()

        assert result.metadata == {"started": ["key", "g-reg", "g-api"]}
        assert [call["command"][0] for call in fake_popen.calls] == ["keystone-all", "glance-registry", "glance-api"]
        assert all(task.state is TaskState.STARTING for task in context.session.tasks.values())

    def test_skips_already_started(self, make_context, stack_config):
        context = make_context(stack_config)
        IdentityStage(context).run()
        result = ProcessesStage(context).run()
        assert result.metadata == {"started": ["g-reg", "g-api"]}

    def test_wait_gates_immediately(self, make_context, make_config, raw_config):
        daemons = [dict(d) for d in raw_config["daemons"]]
        daemons[2]["wait"] = True
        context = make_context(make_config(daemons=daemons))
        ProcessesStage(context).run()

        assert context.session.tasks["g-api"].state is TaskState.RUNNING
        assert context.gated == {"g-api"}


class TestVerifyStage:
    def run_through(self, context, *stages):
        results = [stage(context).run() for stage in stages]
        return results[-1]

    def test_everything_running(self, make_context, stack_config):
        context = make_context(stack_config)
        result = self.run_through(context, IdentityStage, ProcessesStage, VerifyStage)

        assert result.success
        assert result.metadata["tasks"] == {"key": "running", "g-reg": "running", "g-api": "running"}
        assert result.metadata["gated"] == ["g-api", "key"]

    def test_gated_tasks_not_gated_again(self, make_context, stack_config, probes):
        context = make_context(stack_config)
        IdentityStage(context).run()
        probes["key"] = False
        result = self.run_through(context, ProcessesStage, VerifyStage)
        assert result.success

    def test_timeout(self, make_context, stack_config, probes):
        probes["g-api"] = False
        context = make_context(stack_config)
        result = self.run_through(context, IdentityStage, ProcessesStage, VerifyStage)

        assert not result.success
        assert isinstance(result.error, HealthGateTimeout)
        assert result.error.check_name == "g-api"

    def test_dead_task_fails(self, make_context, stack_config, fake_popen):
        fake_popen.dead.add("glance-registry")
        context = make_context(stack_config)
        result = self.run_through(context, IdentityStage, ProcessesStage, VerifyStage)

        assert not result.success
        assert isinstance(result.error, TaskExitedError)
        assert result.error.task_name == "g-reg"


class TestSeedStage:
    def test_commands_get_selection(self, make_context, make_config, real_collaborators, fake_runner):
        config = make_config(seed={"commands": ["upload_image.sh --default"]})
        result = SeedStage(make_context(config, real_collaborators(config))).run()

        assert result.metadata == {"commands": 1, "local_script": False}
        assert fake_runner.commands == [["upload_image.sh", "--default"]]
        assert fake_runner.calls[0]["env"]["ENABLED_SERVICES"] == "mysql,rabbit,key,g-api,g-reg"

    def test_executable_local_script(self, make_context, make_config, real_collaborators, fake_runner, tmp_path):
        script = tmp_path / "local.sh"
        script.write_text("#!/bin/sh\n")
        os.chmod(script, 0o755)
        config = make_config(seed={"local_script": str(script)})
        result = SeedStage(make_context(config, real_collaborators(config))).run()

        assert result.metadata["local_script"] is True
        assert fake_runner.commands == [[str(script)]]

    def test_non_executable_local_script(self, make_context, make_config, real_collaborators, fake_runner, tmp_path):
        script = tmp_path / "local.sh"
        script.write_text("#!/bin/sh\n")
        os.chmod(script, 0o644)
        config = make_config(seed={"local_script": str(script)})
        result = SeedStage(make_context(config, real_collaborators(config))).run()

        assert result.metadata["local_script"] is False
        assert fake_runner.commands == []
