"""
Run orchestrator for stackup.

Resolves the service selection once, runs preflight, opens the
supervision session and drives the stages in their fixed order. The
first failing stage ends the run; nothing is rolled back.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Type

from stackup.collaborators import Collaborators
from stackup.config import StackConfig
from stackup.errors import SessionConflictError, StackupError, UnhandledStageFailure
from stackup.health import HealthGate
from stackup.resources import (
    BridgeManager,
    DatabaseManager,
    FirewallManager,
    InstanceManager,
    LoopbackFilesystemManager,
    OvsBridgeManager,
    ResourceManager,
    RingManager,
    StateDirectoryManager,
)
from stackup.services import SelectionSet
from stackup.stages import STAGES, RunContext, Stage, StageResult
from stackup.supervisor import ProcessSupervisor, Session
from stackup.utils import (
    CommandRunner,
    format_duration,
    get_logger,
    print_banner,
    print_error,
    print_info,
    print_success,
)


PREFLIGHT = "preflight"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RunResult:
    """Result of a complete run."""

    success: bool
    started_at: datetime
    ended_at: datetime
    duration_seconds: float
    services: List[str] = field(default_factory=list)
    stages: Dict[str, StageResult] = field(default_factory=dict)
    failed_stage: Optional[str] = None
    error: Optional[StackupError] = None
    error_message: Optional[str] = None
    planned: List[str] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        if self.success:
            return 0
        return self.error.exit_code if self.error is not None else 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "success": self.success,
            "exit_code": self.exit_code,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "services": self.services,
            "stages": {name: result.to_dict() for name, result in self.stages.items()},
            "failed_stage": self.failed_stage,
            "error_type": type(self.error).__name__ if self.error else None,
            "error_message": self.error_message,
        }


def default_managers(config: StackConfig, runner: CommandRunner, logger: logging.Logger) -> Dict[str, ResourceManager]:
    """Resource managers for every kind of resource a stage may recreate."""
    owner = config.owner_tag
    common = {"runner": runner, "logger": logger}
    return {
        "database": DatabaseManager(
            owner,
            user=config.database.user,
            password=config.database.password,
            host=config.database.host,
            **common,
        ),
        "bridge": BridgeManager(owner, **common),
        "ovs": OvsBridgeManager(owner, **common),
        "firewall": FirewallManager(owner, **common),
        "loopback": LoopbackFilesystemManager(owner, config.storage.mount_point, **common),
        "ring": RingManager(owner, config.storage.config_dir, **common),
        "instances": InstanceManager(owner, **common),
        "state_dir": StateDirectoryManager(owner, **common),
    }


class Orchestrator:
    """
    Main run orchestrator.

    Every collaborator can be injected; the defaults act on the real host.
    """

    def __init__(
        self,
        config: StackConfig,
        runner: Optional[CommandRunner] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        health_gate: Optional[HealthGate] = None,
        collaborators: Optional[Collaborators] = None,
        managers: Optional[Dict[str, ResourceManager]] = None,
        stages: Sequence[Type[Stage]] = STAGES,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.logger = logger or get_logger()
        self.runner = runner or CommandRunner(self.logger, sudo=config.sudo)
        self.supervisor = supervisor or ProcessSupervisor(
            config.sessions_dir, config.get_task_log_dir(), self.logger
        )
        self.health_gate = health_gate or HealthGate(self.logger)
        self._collaborators = collaborators
        self._managers = managers
        self.stages = tuple(stages)

    @property
    def collaborators(self) -> Collaborators:
        if self._collaborators is None:
            self._collaborators = Collaborators(self.config, self.runner, self.logger)
        return self._collaborators

    @property
    def managers(self) -> Dict[str, ResourceManager]:
        if self._managers is None:
            self._managers = default_managers(self.config, self.runner, self.logger)
        return self._managers

    def preflight(self) -> SelectionSet:
        """
        Validate everything before the host is touched.

        Returns:
            The frozen selection for the run

        Raises:
            PreflightConfigError: On invalid config or selection
            SessionConflictError: If the run's session is still active
        """
        self.config.validate()
        selection = self.config.resolve_services()

        if self.supervisor.is_session_active(self.config.session_name):
            raise SessionConflictError(self.config.session_name)

        self.logger.info(
            f"Preflight passed: {selection.to_env()}",
            extra={"event": "preflight_passed", "metadata": {"services": selection.to_env()}},
        )
        return selection

    def plan(self, selection: SelectionSet) -> List[str]:
        """Names of the stages that would run for a selection."""
        return [
            stage_cls.name
            for stage_cls in self.stages
            if not stage_cls.services or selection.is_enabled(*stage_cls.services)
        ]

    def run(self, dry_run: bool = False) -> RunResult:
        """
        Run preflight and then every stage, stopping at the first failure.

        Args:
            dry_run: Preflight and plan only

        Returns:
            RunResult; its exit_code is the process exit status
        """
        started_at = _utcnow()
        start_time = time.monotonic()

        self.logger.info(
            f"Starting run: {self.config.name} v{self.config.version}",
            extra={"event": "run_started", "metadata": {"dry_run": dry_run}},
        )
        print_banner(f"{self.config.name} v{self.config.version}")

        try:
            selection = self.preflight()
        except StackupError as e:
            print_error(f"Preflight failed: {e}")
            self.logger.error(
                f"Preflight failed: {e}",
                extra={"event": "preflight_failed", "stage": PREFLIGHT},
            )
            return self._finish(
                RunResult(
                    success=False,
                    started_at=started_at,
                    ended_at=_utcnow(),
                    duration_seconds=time.monotonic() - start_time,
                    failed_stage=PREFLIGHT,
                    error=e,
                    error_message=str(e),
                ),
                save=False,
            )

        services = [service.value for service in selection]
        print_info(f"Services: {selection.to_env()}")

        if dry_run:
            planned = self.plan(selection)
            print_info("Dry run mode - preflight complete, skipping execution")
            for name in planned:
                print_info(f"  would run: {name}")
            return RunResult(
                success=True,
                started_at=started_at,
                ended_at=_utcnow(),
                duration_seconds=time.monotonic() - start_time,
                services=services,
                planned=planned,
            )

        try:
            session = self.supervisor.open_session(self.config.session_name)
        except SessionConflictError as e:
            print_error(str(e))
            return self._finish(
                RunResult(
                    success=False,
                    started_at=started_at,
                    ended_at=_utcnow(),
                    duration_seconds=time.monotonic() - start_time,
                    services=services,
                    failed_stage=PREFLIGHT,
                    error=e,
                    error_message=str(e),
                ),
                save=False,
            )

        pruned = self.supervisor.prune_logs(self.config.logging.logdays)
        if pruned:
            self.logger.debug(f"Pruned {pruned} old task logs", extra={"event": "logs_pruned"})

        context = self._context(selection, session)
        results: Dict[str, StageResult] = {}

        for stage_cls in self.stages:
            stage = stage_cls(context)
            result = stage.run()
            results[stage.name] = result

            if result.skipped:
                continue

            if result.success:
                print_success(f"{stage.name}: {format_duration(result.duration_seconds)}")
                continue

            error = result.error
            if not isinstance(error, StackupError):
                error = UnhandledStageFailure(stage.name, error)
            print_error(f"{stage.name}: {result.error_message}")
            self.logger.error(
                f"Run failed at stage {stage.name}",
                extra={
                    "event": "run_failed",
                    "stage": stage.name,
                    "metadata": {"error": result.error_message, "exit_code": error.exit_code},
                },
            )
            return self._finish(
                RunResult(
                    success=False,
                    started_at=started_at,
                    ended_at=_utcnow(),
                    duration_seconds=time.monotonic() - start_time,
                    services=services,
                    stages=results,
                    failed_stage=stage.name,
                    error=error,
                    error_message=f"Stage {stage.name} failed: {result.error_message}",
                )
            )

        duration = time.monotonic() - start_time
        print_success(f"Stack is up in {format_duration(duration)}")
        self.logger.info(
            "Run completed successfully",
            extra={"event": "run_completed", "metadata": {"duration_seconds": duration}},
        )
        return self._finish(
            RunResult(
                success=True,
                started_at=started_at,
                ended_at=_utcnow(),
                duration_seconds=duration,
                services=services,
                stages=results,
            )
        )

    def status(self) -> Optional[Session]:
        """The active session with task liveness refreshed, or None."""
        session = self.supervisor.load_session(self.config.session_name)
        if session is None:
            return None
        return self.supervisor.refresh(session)

    def last_run(self) -> Optional[Dict[str, Any]]:
        """State saved by the previous run, or None."""
        state_file = self.config.get_state_file()
        if not state_file.exists():
            return None
        try:
            with open(state_file, "r") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            self.logger.warning(f"Could not load run state: {e}")
            return None

    def teardown(self, session_name: Optional[str] = None) -> Optional[Session]:
        """Stop every task of a session and close it."""
        return self.supervisor.teardown(session_name or self.config.session_name)

    def _context(self, selection: SelectionSet, session: Session) -> RunContext:
        return RunContext(
            config=self.config,
            selection=selection,
            runner=self.runner,
            supervisor=self.supervisor,
            session=session,
            health_gate=self.health_gate,
            collaborators=self.collaborators,
            managers=self.managers,
            logger=self.logger,
        )

    def _finish(self, result: RunResult, save: bool = True) -> RunResult:
        if save:
            self._save_state(result)
        return result

    def _save_state(self, result: RunResult) -> None:
        state_file = self.config.get_state_file()
        try:
            state_file.parent.mkdir(parents=True, exist_ok=True)
            with open(state_file, "w") as f:
                json.dump(result.to_dict(), f, indent=2)
            self.logger.debug(
                f"Saved run state to {state_file}",
                extra={"event": "state_saved", "metadata": {"file": str(state_file)}},
            )
        except OSError as e:
            self.logger.warning(
                f"Could not save run state: {e}",
                extra={"event": "state_save_failed", "metadata": {"error": str(e)}},
            )
