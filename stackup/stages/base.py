"""
Base classes for provisioning stages.

All stages inherit from Stage and return StageResult. A stage body
raises on failure; run() turns the exception into a failed result and
the orchestrator stops there.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set, Tuple

from stackup.collaborators import Collaborators
from stackup.config import DaemonConfig, StackConfig
from stackup.health import HealthCheck, HealthGate, http_probe, tcp_probe
from stackup.resources.base import Resource, ResourceManager
from stackup.services import SelectionSet, Service
from stackup.supervisor import ProcessSupervisor, Session
from stackup.utils import CommandRunner


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StageResult:
    """Result of stage execution."""

    stage_name: str
    success: bool
    duration_seconds: float = 0.0
    skipped: bool = False
    error: Optional[BaseException] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "stage_name": self.stage_name,
            "success": self.success,
            "skipped": self.skipped,
            "duration_seconds": self.duration_seconds,
            "error_type": type(self.error).__name__ if self.error else None,
            "error_message": self.error_message,
            "metadata": self.metadata,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
        }


@dataclass
class RunContext:
    """
    Everything a stage may touch during one run.

    ``selection`` is frozen before the first stage starts. ``gated``
    holds the names of tasks that already passed their health gate, so
    each network-facing task is gated once.
    """

    config: StackConfig
    selection: SelectionSet
    runner: CommandRunner
    supervisor: ProcessSupervisor
    session: Session
    health_gate: HealthGate
    collaborators: Collaborators
    managers: Dict[str, ResourceManager]
    logger: logging.Logger
    resources: Dict[str, Resource] = field(default_factory=dict)
    gated: Set[str] = field(default_factory=set)

    def record(self, resource: Resource) -> Resource:
        self.resources[str(resource.key)] = resource
        return resource


def daemon_health_check(daemon: DaemonConfig, config: StackConfig) -> Optional[HealthCheck]:
    """HTTP check when the daemon has a URL, TCP when it has a port, else None."""
    if daemon.health_url:
        probe = http_probe(daemon.health_url)
    elif daemon.health_port:
        probe = tcp_probe(daemon.health_host, int(daemon.health_port))
    else:
        return None
    return HealthCheck(
        name=daemon.name,
        probe=probe,
        interval=config.health.poll_interval,
        timeout=config.health.timeout,
    )


class Stage(ABC):
    """
    Abstract base class for stages.

    Subclasses set ``name`` and ``services`` (the tokens that make the
    stage relevant; empty means it always runs) and implement execute().
    """

    name = "stage"
    services: Tuple[Service, ...] = ()

    def __init__(self, context: RunContext):
        self.context = context
        self.config = context.config
        self.selection = context.selection
        self.logger = context.logger

    def should_run(self) -> bool:
        """Decided from the frozen selection only."""
        return not self.services or self.selection.is_enabled(*self.services)

    @abstractmethod
    def execute(self) -> Dict[str, Any]:
        """
        Execute the stage.

        Returns:
            Metadata describing what was done

        Raises:
            Exception: If the stage fails
        """
        pass

    def run(self) -> StageResult:
        """
        Run the stage unless the selection makes it irrelevant.

        Returns:
            StageResult with execution details
        """
        started_at = _utcnow()

        if not self.should_run():
            self.logger.info(
                f"Skipping stage {self.name}",
                extra={"stage": self.name, "event": "stage_skipped"},
            )
            return StageResult(
                stage_name=self.name,
                success=True,
                skipped=True,
                started_at=started_at,
                ended_at=started_at,
            )

        self.logger.info(
            f"Starting stage: {self.name}",
            extra={"stage": self.name, "event": "stage_started"},
        )
        start_time = time.monotonic()

        try:
            metadata = self.execute() or {}
        except Exception as e:
            duration = time.monotonic() - start_time
            self.logger.error(
                f"Stage {self.name} failed: {e}",
                extra={
                    "stage": self.name,
                    "event": "stage_failed",
                    "metadata": {"exception": type(e).__name__, "error": str(e)},
                },
                exc_info=True,
            )
            return StageResult(
                stage_name=self.name,
                success=False,
                duration_seconds=duration,
                error=e,
                error_message=str(e),
                started_at=started_at,
                ended_at=_utcnow(),
            )

        duration = time.monotonic() - start_time
        self.logger.info(
            f"Stage {self.name} completed successfully",
            extra={
                "stage": self.name,
                "event": "stage_completed",
                "metadata": dict(metadata, duration_seconds=duration),
            },
        )
        return StageResult(
            stage_name=self.name,
            success=True,
            duration_seconds=duration,
            metadata=metadata,
            started_at=started_at,
            ended_at=_utcnow(),
        )

    def gate(self, daemon: DaemonConfig) -> bool:
        """
        Block until a network-facing daemon answers, then mark it RUNNING.

        Returns:
            False if the daemon has no health endpoint

        Raises:
            HealthGateTimeout: If it never became ready
        """
        check = daemon_health_check(daemon, self.config)
        if check is None:
            return False
        self.context.health_gate.require_ready(check)
        self.context.supervisor.mark_running(self.context.session, daemon.name)
        self.context.gated.add(daemon.name)
        return True

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name})"
