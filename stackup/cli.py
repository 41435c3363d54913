"""
CLI interface for stackup.

Provides commands: stack, validate, services, status, logs, unstack, ring.
"""

import json
import sys
from collections import deque
from pathlib import Path

import click

from stackup import __version__
from stackup.config import load_config
from stackup.errors import StackupError
from stackup.orchestrator import Orchestrator
from stackup.resources.ring import Ring, build_ring, changed_assignments, rebalance
from stackup.utils import (
    console,
    format_duration,
    print_banner,
    print_error,
    print_info,
    print_success,
    print_warning,
    setup_logging,
)


config_option = click.option(
    "--config",
    type=click.Path(exists=True, path_type=Path),
    help="Custom configuration file (default: $STACKUP_HOME/stack.yaml)",
)


def _fail(e: StackupError, prefix: str = "Error") -> None:
    print_error(f"{prefix}: {e}")
    sys.exit(e.exit_code)


@click.group()
@click.version_option(version=__version__, prog_name="stackup")
def main():
    """
    stackup - single-host cloud provisioning.

    Resolves the enabled services, recreates the resources they need and
    starts their daemons in dependency order.
    """
    pass


@main.command()
@config_option
@click.option("--dry-run", is_flag=True, help="Run preflight and show the plan without executing")
@click.option("--verbose", is_flag=True, help="Enable debug logging")
def stack(config, dry_run, verbose):
    """
    Provision the stack.

    Examples:

      # Full run
      stackup stack

      # Preflight and plan only
      stackup stack --dry-run

      # Override the selection for one run
      ENABLED_SERVICES=key,mysql,rabbit,g-api,g-reg stackup stack
    """
    try:
        stack_config = load_config(config)
    except StackupError as e:
        _fail(e, "Configuration invalid")

    setup_logging(
        stack_config.get_log_file_path(),
        "DEBUG" if verbose else stack_config.logging.level,
        stack_config.logging.format,
        stack_config.logging.console,
    )

    result = Orchestrator(stack_config).run(dry_run=dry_run)
    if not result.success:
        print_error(result.error_message or "Run failed")
    sys.exit(result.exit_code)


@main.command()
@config_option
def validate(config):
    """
    Validate configuration and service selection without touching the host.

    Examples:

      stackup validate
      stackup validate --config ./stack.yaml
    """
    print_banner("Preflight")
    try:
        stack_config = load_config(config)
        stack_config.validate()
        print_success("Configuration valid")
        selection = stack_config.resolve_services()
        print_success(f"Service selection valid ({len(selection)} services)")
    except StackupError as e:
        _fail(e, "Validation failed")
    sys.exit(0)


@main.command()
@config_option
def services(config):
    """
    Show the resolved service selection.

    Examples:

      stackup services
      ENABLED_SERVICES=nova,-n-vol stackup services
    """
    try:
        stack_config = load_config(config)
        selection = stack_config.resolve_services()
    except StackupError as e:
        _fail(e)

    print_info(f"Enabled services ({len(selection)}):\n")
    for service in selection:
        family = f"  [dim]({service.family})[/dim]" if service.family else ""
        console.print(f"  {service.value}{family}")
    click.echo(f"\nENABLED_SERVICES={selection.to_env()}")
    sys.exit(0)


@main.command()
@config_option
def status(config):
    """
    Show the active session and the last run.

    Examples:

      stackup status
    """
    try:
        stack_config = load_config(config)
    except StackupError as e:
        _fail(e)

    orchestrator = Orchestrator(stack_config)
    session = orchestrator.status()

    if session is None:
        print_info(f"No active session '{stack_config.session_name}'")
    else:
        print_info(f"Session {session.name} (opened {session.created_at:%Y-%m-%d %H:%M:%S})\n")
        for task in session.tasks.values():
            pid = task.pid if task.pid is not None else "-"
            console.print(f"  {task.name:<12} {task.state.value:<10} pid {pid}")

    last_run = orchestrator.last_run()
    if last_run:
        console.print()
        status_text = "SUCCESS" if last_run["success"] else "FAILED"
        print_info(
            f"Last run: {status_text} at {last_run['ended_at']} "
            f"({format_duration(last_run['duration_seconds'])})"
        )
        if last_run.get("failed_stage"):
            print_warning(f"Failed stage: {last_run['failed_stage']}: {last_run.get('error_message')}")
    sys.exit(0)


@main.command()
@click.argument("task")
@config_option
@click.option("--session", "session_name", help="Session name (default: from config)")
@click.option("--lines", "-n", default=50, show_default=True, help="Number of lines to show")
def logs(task, config, session_name, lines):
    """
    Show the latest log of a supervised task.

    Examples:

      stackup logs key
      stackup logs n-api -n 200
    """
    try:
        stack_config = load_config(config)
    except StackupError as e:
        _fail(e)

    orchestrator = Orchestrator(stack_config)
    log_path = orchestrator.supervisor.latest_log(session_name or stack_config.session_name, task)
    if not log_path.exists():
        print_error(f"No log for task {task}: {log_path}")
        sys.exit(1)

    print_info(f"{log_path.resolve()}\n")
    with open(log_path, "r", errors="replace") as f:
        for line in deque(f, maxlen=lines):
            click.echo(line.rstrip("\n"))
    sys.exit(0)


@main.command()
@config_option
@click.option("--session", "session_name", help="Session name (default: from config)")
def unstack(config, session_name):
    """
    Stop every daemon of a session and close it.

    Examples:

      stackup unstack
      stackup unstack --session stack
    """
    try:
        stack_config = load_config(config)
    except StackupError as e:
        _fail(e)

    name = session_name or stack_config.session_name
    session = Orchestrator(stack_config).teardown(name)
    if session is None:
        print_warning(f"No active session '{name}'")
    else:
        print_success(f"Stopped session {name} ({len(session.tasks)} tasks)")
    sys.exit(0)


@main.group()
def ring():
    """
    Build and inspect partition rings.

    Examples:

      stackup ring build object.builder.json -p 9 -r 3 -d z1-127.0.0.1:6010/sdb1 ...
      stackup ring show object.builder.json --name /account/container/object
    """
    pass


@ring.command("build")
@click.argument("path", type=click.Path(path_type=Path))
@click.option("--part-power", "-p", type=int, help="Partitions = 2**part_power (new rings only)")
@click.option("--replicas", "-r", type=int, help="Replicas per partition (new rings only)")
@click.option("--device", "-d", "devices", multiple=True, required=True, help="Device id, in order")
def ring_build(path, part_power, replicas, devices):
    """Build a ring, or rebalance an existing one onto a new device list."""
    try:
        if path.exists():
            with open(path, "r") as f:
                old = Ring.from_dict(json.load(f))
            new = rebalance(old, devices)
            moved = len(changed_assignments(old, new))
            print_info(f"Rebalanced {path}")
            print_info(f"{moved} slots moved")
        else:
            if part_power is None or replicas is None:
                print_error("--part-power and --replicas are required for a new ring")
                sys.exit(2)
            new = build_ring(part_power, replicas, devices)
            print_info(f"Built {path}")
    except ValueError as e:
        print_error(f"Cannot build ring: {e}")
        sys.exit(2)

    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(new.to_dict(), f)
    print_success(
        f"{new.partition_count} partitions, {new.replicas} replicas, {len(new.devices)} devices"
    )
    sys.exit(0)


@ring.command("show")
@click.argument("path", type=click.Path(exists=True, path_type=Path))
@click.option("--name", help="Show the partition and devices for an object path")
def ring_show(path, name):
    """Show device loads of a ring file."""
    with open(path, "r") as f:
        loaded = Ring.from_dict(json.load(f))

    print_info(
        f"{path}: {loaded.partition_count} partitions, {loaded.replicas} replicas\n"
    )
    for device, load in loaded.device_loads().items():
        console.print(f"  {device:<32} {load}")

    if name:
        partition = loaded.partition_for(name)
        console.print(f"\n{name} -> partition {partition}")
        for device in loaded.get_nodes(partition):
            console.print(f"  {device}")
    sys.exit(0)


if __name__ == "__main__":
    main()
