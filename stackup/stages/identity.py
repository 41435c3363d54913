"""Identity service: start it, wait for it, then create the catalog."""

from typing import Any, Dict

from stackup.health import HealthCheck, http_probe
from stackup.services import Service
from stackup.stages.base import Stage


IDENTITY_TASK = "key"


class IdentityStage(Stage):
    """
    Launch the identity daemon and bootstrap users, roles and endpoints.

    Every later service authenticates against it, so the catalog is only
    created once the daemon answers. Without a ``key`` daemon entry the
    service is assumed to be managed elsewhere; the stage still waits for
    the configured auth URL.
    """

    name = "identity"
    services = (Service.KEYSTONE,)

    def execute(self) -> Dict[str, Any]:
        supervisor = self.context.supervisor
        session = self.context.session
        daemon = self.config.get_daemon(IDENTITY_TASK)

        if daemon is not None:
            supervisor.spawn(session, daemon.name, daemon.command, cwd=daemon.cwd, env=daemon.env)

        if daemon is None or not self.gate(daemon):
            self.context.health_gate.require_ready(
                HealthCheck(
                    name=IDENTITY_TASK,
                    probe=http_probe(self.config.identity.auth_url),
                    interval=self.config.health.poll_interval,
                    timeout=self.config.health.timeout,
                )
            )
            if daemon is not None:
                supervisor.mark_running(session, daemon.name)
                self.context.gated.add(daemon.name)

        self.context.collaborators.bootstrap_catalog(self.selection)
        return {"auth_url": self.config.identity.auth_url, "supervised": daemon is not None}
