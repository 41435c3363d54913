"""
Collaborators for work outside the orchestration core.

Package installation, source checkout, library registration, per-service
config rendering, catalog bootstrap and example-data seeding are not
stackup's business. Stages only decide *when* to call them. The default
implementations shell out through the CommandRunner. Config renderers
come from installed packages through the ``stackup.renderers`` entry
point group.
"""

import logging
import sys
from importlib.metadata import entry_points
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Sequence

from stackup.config import SourceSpec, StackConfig
from stackup.errors import PreflightConfigError
from stackup.services import SelectionSet, Service, parse_token
from stackup.utils import CommandRunner, get_logger


Renderer = Callable[[Service, StackConfig, SelectionSet], None]

RENDERER_GROUP = "stackup.renderers"


def discover_renderers(logger: Optional[logging.Logger] = None) -> Dict[Service, Renderer]:
    """
    Load config renderers registered by installed packages.

    Each entry point name is a service token, its value a callable
    ``renderer(service, config, selection)``.
    """
    logger = logger or get_logger()
    renderers: Dict[Service, Renderer] = {}
    for ep in entry_points(group=RENDERER_GROUP):
        try:
            service = parse_token(ep.name)
        except PreflightConfigError:
            logger.warning(f"Ignoring renderer for unknown service {ep.name!r}")
            continue
        renderers[service] = ep.load()
    return renderers


class Collaborators:
    """Default hooks, driven by the stack configuration."""

    def __init__(
        self,
        config: StackConfig,
        runner: CommandRunner,
        logger: Optional[logging.Logger] = None,
        renderers: Optional[Mapping[Service, Renderer]] = None,
    ):
        self.config = config
        self.runner = runner
        self.logger = logger or get_logger()
        self.renderers = dict(renderers) if renderers is not None else discover_renderers(self.logger)

    def install_packages(self, packages: Sequence[str]) -> None:
        if not packages:
            return
        self.runner.run(list(self.config.package_command) + list(packages), privileged=True)

    def fetch_source(self, source: SourceSpec) -> None:
        """Clone a repository unless the checkout already exists."""
        if source.dest.exists():
            self.logger.info(
                f"{source.dest} already present, not cloning",
                extra={"event": "source_present", "metadata": {"repo": source.repo}},
            )
            return
        source.dest.parent.mkdir(parents=True, exist_ok=True)
        self.runner.run(["git", "clone", "--branch", source.branch, source.repo, str(source.dest)])

    def register_library(self, source: SourceSpec) -> None:
        """Install a checkout in development mode."""
        self.runner.run([sys.executable, "-m", "pip", "install", "-e", str(source.dest)], privileged=True)

    def render_config(self, service: Service, selection: SelectionSet) -> bool:
        """Render config for one service; False when no renderer is registered."""
        renderer = self.renderers.get(service)
        if renderer is None:
            return False
        renderer(service, self.config, selection)
        return True

    def bootstrap_catalog(self, selection: SelectionSet) -> None:
        """Create users, tenants, roles and the service catalog."""
        if not self.config.identity.bootstrap:
            return
        identity = self.config.identity
        self.runner.run(
            identity.bootstrap,
            env={
                "SERVICE_TOKEN": identity.service_token,
                "ADMIN_PASSWORD": identity.admin_password,
                "SERVICE_ENDPOINT": identity.auth_url,
                "ENABLED_SERVICES": selection.to_env(),
            },
        )

    def seed(self, command: Sequence[str], selection: SelectionSet) -> None:
        self.runner.run(command, env={"ENABLED_SERVICES": selection.to_env()})

    def run_local_script(self, script: Path) -> None:
        self.runner.run([str(script)], cwd=script.parent)
