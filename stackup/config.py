"""
Configuration management for stackup.

Loads stack.yaml once into frozen dataclasses. The resulting StackConfig
is passed by reference to every component and never modified.
"""

import ipaddress
import os
import shlex
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml
from dotenv import load_dotenv

from stackup.errors import ConfigError, PreflightConfigError
from stackup.services import (
    DEFAULT_CONFLICTS,
    DEFAULT_EXCLUSION_GROUPS,
    DEFAULT_META_GROUPS,
    FAMILIES,
    Service,
    ServiceSelection,
    SelectionSet,
    parse_service_list,
    parse_token,
)


DEFAULT_SUPPORTED_DISTROS = ("oneiric", "precise", "quantal", "f16", "f17")


def get_stackup_home() -> Path:
    """Directory holding stack.yaml, session manifests and run state."""
    return Path(os.environ.get("STACKUP_HOME", "~/.config/stackup")).expanduser()


def _frozen(mapping: Optional[Mapping]) -> Mapping:
    return MappingProxyType(dict(mapping or {}))


def _argv(value: Any) -> Tuple[str, ...]:
    """Accept a command as a string or a list."""
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(shlex.split(value))
    return tuple(str(part) for part in value)


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "yes", "true", "on")
    return bool(value)


@dataclass(frozen=True)
class NetworkConfig:
    """Address ranges and bridge names."""

    fixed_range: str = "10.0.0.0/24"
    floating_range: str = "172.24.4.224/28"
    host_ip: Optional[str] = None
    flat_network_bridge: str = "br100"
    ovs_bridge: str = "br-int"

    def validate(self) -> None:
        """
        Raises:
            PreflightConfigError: If ranges are invalid or overlap, or if
                host_ip falls inside one of them
        """
        try:
            fixed = ipaddress.ip_network(self.fixed_range, strict=False)
            floating = ipaddress.ip_network(self.floating_range, strict=False)
        except ValueError as e:
            raise PreflightConfigError(f"Invalid network range: {e}")

        if fixed.overlaps(floating):
            raise PreflightConfigError(
                f"fixed_range {self.fixed_range} overlaps floating_range {self.floating_range}"
            )

        if self.host_ip:
            try:
                host = ipaddress.ip_address(self.host_ip)
            except ValueError as e:
                raise PreflightConfigError(f"Invalid host_ip: {e}")
            if host in fixed or host in floating:
                raise PreflightConfigError(
                    f"host_ip {self.host_ip} must not be inside fixed_range "
                    f"{self.fixed_range} or floating_range {self.floating_range}"
                )


@dataclass(frozen=True)
class DatabaseSpec:
    """One service database."""

    name: str
    service: Union[Service, str]
    charset: str = "utf8"


@dataclass(frozen=True)
class DatabaseConfig:
    user: str = "root"
    password: str = ""
    host: str = "127.0.0.1"
    databases: Tuple[DatabaseSpec, ...] = ()


@dataclass(frozen=True)
class StorageConfig:
    """Object storage layout: loopback disk and rings."""

    data_dir: Path = Path("/opt/stack/data/swift")
    config_dir: Path = Path("/etc/swift")
    loopback_size: int = 1000000 * 1024
    partition_power: int = 9
    replicas: int = 3
    mount_options: str = "loop,noatime,nodiratime,nobarrier,logbufs=8"

    @property
    def image_path(self) -> Path:
        return self.data_dir / "drives" / "images" / "swift.img"

    @property
    def mount_point(self) -> Path:
        return self.data_dir / "drives" / "sdb1"

    def validate(self) -> None:
        if not 1 <= self.partition_power <= 32:
            raise ConfigError(f"partition_power must be between 1 and 32, got {self.partition_power}")
        if self.replicas < 1:
            raise ConfigError(f"replicas must be at least 1, got {self.replicas}")
        if self.loopback_size <= 0:
            raise ConfigError("loopback_size must be positive")


@dataclass(frozen=True)
class ComputeConfig:
    """Hypervisor instance naming and compute state directories."""

    instance_name_prefix: str = "instance-"
    state_dir: Path = Path("/opt/stack/data/nova")

    @property
    def instances_dir(self) -> Path:
        return self.state_dir / "instances"

    @property
    def networks_dir(self) -> Path:
        return self.state_dir / "networks"


@dataclass(frozen=True)
class HealthConfig:
    timeout: float = 60.0
    poll_interval: float = 1.0


@dataclass(frozen=True)
class DaemonConfig:
    """A long-running service process started under supervision."""

    name: str
    service: Service
    command: Tuple[str, ...]
    cwd: Optional[Path] = None
    env: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    health_url: Optional[str] = None
    health_port: Optional[int] = None
    health_host: str = "127.0.0.1"
    wait: bool = False

    @property
    def network_facing(self) -> bool:
        return bool(self.health_url or self.health_port)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DaemonConfig":
        if "name" not in data:
            raise ConfigError(f"Daemon entry without 'name': {data}")
        if not data.get("command"):
            raise ConfigError(f"Daemon {data['name']}: missing 'command'")
        health = data.get("health") or {}
        return cls(
            name=data["name"],
            service=parse_token(data.get("service", data["name"])),
            command=_argv(data["command"]),
            cwd=Path(data["cwd"]).expanduser() if data.get("cwd") else None,
            env=_frozen({k: str(v) for k, v in (data.get("env") or {}).items()}),
            health_url=health.get("url"),
            health_port=health.get("port"),
            health_host=health.get("host", "127.0.0.1"),
            wait=bool(data.get("wait", False)),
        )


@dataclass(frozen=True)
class SourceSpec:
    """A source checkout for one service."""

    service: Service
    repo: str
    dest: Path
    branch: str = "master"
    library: bool = True


@dataclass(frozen=True)
class IdentityConfig:
    service_token: str = ""
    admin_password: str = ""
    auth_url: str = "http://127.0.0.1:5000/v2.0/"
    bootstrap: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SeedConfig:
    commands: Tuple[Tuple[str, ...], ...] = ()
    local_script: Optional[Path] = None


@dataclass(frozen=True)
class LoggingConfig:
    output: str = "logs/stack-{date}.log"
    level: str = "INFO"
    format: str = "structured"
    console: bool = True
    task_log_dir: Optional[Path] = None
    logdays: int = 7


@dataclass(frozen=True)
class StackConfig:
    """Complete, immutable configuration for one run."""

    name: str = "stack"
    version: str = "0.0.0"
    owner_tag: str = "stackup"
    session_name: str = "stack"
    home: Path = field(default_factory=get_stackup_home)
    dest: Path = Path("/opt/stack")
    distro: Optional[str] = None
    supported_distros: Tuple[str, ...] = DEFAULT_SUPPORTED_DISTROS
    force: bool = False
    sudo: bool = True
    enabled_services: Tuple[str, ...] = ()
    meta_groups: Mapping[str, Tuple[str, ...]] = field(
        default_factory=lambda: _frozen(DEFAULT_META_GROUPS)
    )
    exclusion_groups: Mapping[str, Tuple[str, ...]] = field(
        default_factory=lambda: _frozen(DEFAULT_EXCLUSION_GROUPS)
    )
    conflicts: Tuple[Tuple[str, str], ...] = DEFAULT_CONFLICTS
    network: NetworkConfig = field(default_factory=NetworkConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    compute: ComputeConfig = field(default_factory=ComputeConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    identity: IdentityConfig = field(default_factory=IdentityConfig)
    daemons: Tuple[DaemonConfig, ...] = ()
    packages: Mapping[str, Tuple[str, ...]] = field(default_factory=lambda: _frozen({}))
    package_command: Tuple[str, ...] = ("apt-get", "install", "-y")
    sources: Tuple[SourceSpec, ...] = ()
    seed: SeedConfig = field(default_factory=SeedConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    config_path: Optional[Path] = None

    def new_selection(self) -> ServiceSelection:
        """A fresh, unresolved selection built from enabled_services."""
        selection = ServiceSelection(self.meta_groups, self.exclusion_groups, self.conflicts)
        parse_service_list(self.enabled_services, selection)
        return selection

    def resolve_services(self) -> SelectionSet:
        """Resolve and validate the service selection."""
        return self.new_selection().resolve()

    def get_daemon(self, name: str) -> Optional[DaemonConfig]:
        for daemon in self.daemons:
            if daemon.name == name:
                return daemon
        return None

    @property
    def sessions_dir(self) -> Path:
        return self.home / "sessions"

    def get_log_file_path(self) -> Path:
        """Get log file path with date interpolation."""
        output = self.logging.output.replace("{date}", datetime.now().strftime("%Y-%m-%d"))
        path = Path(output).expanduser()
        if not path.is_absolute():
            path = self.home / path
        return path

    def get_task_log_dir(self) -> Path:
        """Directory for supervised task output."""
        if self.logging.task_log_dir:
            return self.logging.task_log_dir
        return self.get_log_file_path().parent / "tasks"

    def get_state_file(self) -> Path:
        return self.get_log_file_path().parent / "state.json"

    def validate(self) -> None:
        """
        Validate everything that can be checked without touching the host.

        Raises:
            PreflightConfigError: On any invalid setting
        """
        if not self.name:
            raise ConfigError("Stack name is required")
        if not self.owner_tag:
            raise ConfigError("owner_tag is required")
        if not self.compute.instance_name_prefix:
            raise ConfigError("compute.instance_name_prefix is required")

        if self.distro and self.distro not in self.supported_distros and not self.force:
            raise PreflightConfigError(
                f"Distribution '{self.distro}' is not supported "
                f"({', '.join(self.supported_distros)}). "
                "Set force: true (or FORCE=yes) to run anyway."
            )

        self.network.validate()
        self.storage.validate()

        if self.health.timeout <= 0 or self.health.poll_interval <= 0:
            raise ConfigError("health timeout and poll_interval must be positive")

        seen = set()
        for daemon in self.daemons:
            if daemon.name in seen:
                raise ConfigError(f"Duplicate daemon name: {daemon.name}")
            seen.add(daemon.name)

    def __repr__(self) -> str:
        return f"StackConfig(name={self.name}, owner_tag={self.owner_tag}, daemons={len(self.daemons)})"


def _load_yaml(config_path: Path) -> Dict[str, Any]:
    """Load and parse YAML configuration file."""
    if not config_path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, "r") as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax: {e}")

    if not config:
        raise ConfigError("Configuration file is empty")
    if not isinstance(config, dict):
        raise ConfigError("Configuration file must contain a mapping")
    return config


def _service_or_family(name: str) -> Union[Service, str]:
    """A service token, or a family name such as ``nova``."""
    if name in FAMILIES:
        return name
    return parse_token(name)


def _parse_databases(data: Dict[str, Any]) -> Tuple[DatabaseSpec, ...]:
    databases = []
    for name, spec in (data.get("databases") or {}).items():
        spec = spec or {}
        databases.append(
            DatabaseSpec(
                name=name,
                service=_service_or_family(spec.get("service", name)),
                charset=spec.get("charset", "utf8"),
            )
        )
    return tuple(databases)


def _parse_sources(data: Dict[str, Any], dest: Path) -> Tuple[SourceSpec, ...]:
    sources = []
    for service, spec in (data or {}).items():
        if isinstance(spec, str):
            spec = {"repo": spec}
        if not spec.get("repo"):
            raise ConfigError(f"Source for {service}: missing 'repo'")
        default_dest = dest / Path(spec["repo"].rstrip("/")).stem
        sources.append(
            SourceSpec(
                service=parse_token(service),
                repo=spec["repo"],
                dest=Path(spec["dest"]).expanduser() if spec.get("dest") else default_dest,
                branch=spec.get("branch", "master"),
                library=bool(spec.get("library", True)),
            )
        )
    return tuple(sources)


def build_config(raw: Dict[str, Any], environ: Optional[Mapping[str, str]] = None, config_path: Optional[Path] = None) -> StackConfig:
    """
    Build a StackConfig from parsed YAML and environment overrides.

    Args:
        raw: Parsed stack.yaml
        environ: Environment to read overrides from (defaults to os.environ)
        config_path: Where raw came from, for diagnostics

    Raises:
        ConfigError: If a section is malformed
    """
    environ = os.environ if environ is None else environ

    try:
        stack = raw.get("stack") or {}
        services = raw.get("services") or {}
        network = raw.get("network") or {}
        database = raw.get("database") or {}
        storage = raw.get("storage") or {}
        compute = raw.get("compute") or {}
        health = raw.get("health") or {}
        identity = raw.get("identity") or {}
        seed = raw.get("seed") or {}
        logging_cfg = raw.get("logging") or {}

        enabled = services.get("enabled", [])
        if "ENABLED_SERVICES" in environ:
            enabled = environ["ENABLED_SERVICES"]
        if isinstance(enabled, str):
            enabled = [item.strip() for item in enabled.split(",") if item.strip()]

        timeout = float(environ.get("SERVICE_TIMEOUT", health.get("timeout", 60)))
        partition_power = int(
            environ.get("SWIFT_PARTITION_POWER_SIZE", storage.get("partition_power", 9))
        )
        replicas = int(environ.get("SWIFT_REPLICAS", storage.get("replicas", 3)))
        force = _truthy(environ.get("FORCE", stack.get("force", False)))

        dest = Path(stack.get("dest", "/opt/stack")).expanduser()
        home = Path(stack["home"]).expanduser() if stack.get("home") else get_stackup_home()

        meta_groups = services.get("meta_groups")
        exclusion_groups = services.get("exclusion_groups")
        conflicts = services.get("conflicts")

        task_log_dir = logging_cfg.get("task_log_dir")
        local_script = seed.get("local_script")

        return StackConfig(
            name=stack.get("name", "stack"),
            version=str(stack.get("version", "0.0.0")),
            owner_tag=stack.get("owner_tag", "stackup"),
            session_name=stack.get("session_name", "stack"),
            home=home,
            dest=dest,
            distro=stack.get("distro"),
            supported_distros=tuple(stack.get("supported_distros", DEFAULT_SUPPORTED_DISTROS)),
            force=force,
            sudo=bool(stack.get("sudo", True)),
            enabled_services=tuple(enabled),
            meta_groups=_frozen(
                {k: tuple(v) for k, v in (DEFAULT_META_GROUPS if meta_groups is None else meta_groups).items()}
            ),
            exclusion_groups=_frozen(
                {k: tuple(v) for k, v in (DEFAULT_EXCLUSION_GROUPS if exclusion_groups is None else exclusion_groups).items()}
            ),
            conflicts=tuple(tuple(pair) for pair in (DEFAULT_CONFLICTS if conflicts is None else conflicts)),
            network=NetworkConfig(
                fixed_range=network.get("fixed_range", "10.0.0.0/24"),
                floating_range=network.get("floating_range", "172.24.4.224/28"),
                host_ip=network.get("host_ip"),
                flat_network_bridge=network.get("flat_network_bridge", "br100"),
                ovs_bridge=network.get("ovs_bridge", "br-int"),
            ),
            database=DatabaseConfig(
                user=database.get("user", "root"),
                password=str(database.get("password", "")),
                host=database.get("host", "127.0.0.1"),
                databases=_parse_databases(database),
            ),
            storage=StorageConfig(
                data_dir=Path(storage.get("data_dir", dest / "data" / "swift")).expanduser(),
                config_dir=Path(storage.get("config_dir", "/etc/swift")).expanduser(),
                loopback_size=int(storage.get("loopback_size", 1000000 * 1024)),
                partition_power=partition_power,
                replicas=replicas,
                mount_options=storage.get("mount_options", "loop,noatime,nodiratime,nobarrier,logbufs=8"),
            ),
            compute=ComputeConfig(
                instance_name_prefix=compute.get("instance_name_prefix", "instance-"),
                state_dir=Path(compute.get("state_dir", dest / "data" / "nova")).expanduser(),
            ),
            health=HealthConfig(
                timeout=timeout,
                poll_interval=float(health.get("poll_interval", 1.0)),
            ),
            identity=IdentityConfig(
                service_token=str(identity.get("service_token", "")),
                admin_password=str(identity.get("admin_password", "")),
                auth_url=identity.get("auth_url", "http://127.0.0.1:5000/v2.0/"),
                bootstrap=_argv(identity.get("bootstrap")),
            ),
            daemons=tuple(DaemonConfig.from_dict(d) for d in raw.get("daemons") or []),
            packages=_frozen({k: tuple(v) for k, v in (raw.get("packages") or {}).items()}),
            package_command=_argv(raw.get("package_command", ["apt-get", "install", "-y"])),
            sources=_parse_sources(raw.get("sources"), dest),
            seed=SeedConfig(
                commands=tuple(_argv(cmd) for cmd in seed.get("commands", [])),
                local_script=Path(local_script).expanduser() if local_script else None,
            ),
            logging=LoggingConfig(
                output=logging_cfg.get("output", "logs/stack-{date}.log"),
                level=str(logging_cfg.get("level", "INFO")).upper(),
                format=logging_cfg.get("format", "structured"),
                console=bool(logging_cfg.get("console", True)),
                task_log_dir=Path(task_log_dir).expanduser() if task_log_dir else None,
                logdays=int(logging_cfg.get("logdays", 7)),
            ),
            config_path=config_path,
        )
    except PreflightConfigError:
        raise
    except (TypeError, ValueError, AttributeError) as e:
        raise ConfigError(f"Invalid configuration: {e}")


def load_config(config_path: Optional[Path] = None) -> StackConfig:
    """
    Load stack configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to $STACKUP_HOME/stack.yaml

    Returns:
        StackConfig instance

    Raises:
        ConfigError: If config is invalid or missing
    """
    if config_path is None:
        config_path = get_stackup_home() / "stack.yaml"

    raw = _load_yaml(Path(config_path))

    env_file = (raw.get("stack") or {}).get("env_file")
    if env_file:
        env_path = Path(env_file).expanduser()
        if not env_path.is_absolute():
            env_path = Path(config_path).parent / env_path
        if env_path.exists():
            load_dotenv(env_path)

    return build_config(raw, config_path=Path(config_path))
