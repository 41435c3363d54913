"""Start service daemons and verify they came up."""

from typing import Any, Dict, List

from stackup.errors import TaskExitedError
from stackup.stages.base import Stage
from stackup.supervisor import TaskState


class ProcessesStage(Stage):
    """
    Spawn every enabled daemon in declared order.

    Daemons marked ``wait`` are gated before the next one starts; the
    rest are left STARTING for the verify stage.
    """

    name = "processes"

    def execute(self) -> Dict[str, Any]:
        supervisor = self.context.supervisor
        session = self.context.session
        started: List[str] = []

        for daemon in self.config.daemons:
            if daemon.name in session.tasks or not self.selection.is_enabled(daemon.service):
                continue
            supervisor.spawn(session, daemon.name, daemon.command, cwd=daemon.cwd, env=daemon.env)
            started.append(daemon.name)

            if daemon.wait:
                self.gate(daemon)

        return {"started": started}


class VerifyStage(Stage):
    """Gate every network-facing task not gated yet; any dead task fails the run."""

    name = "verify"

    def execute(self) -> Dict[str, Any]:
        supervisor = self.context.supervisor
        session = self.context.session

        self._check_alive()

        for daemon in self.config.daemons:
            task = session.tasks.get(daemon.name)
            if task is None or daemon.name in self.context.gated:
                continue
            if not self.gate(daemon) and task.state is TaskState.STARTING:
                supervisor.mark_running(session, daemon.name)

        self._check_alive()
        return {
            "tasks": {name: task.state.value for name, task in session.tasks.items()},
            "gated": sorted(self.context.gated),
        }

    def _check_alive(self) -> None:
        session = self.context.supervisor.refresh(self.context.session)
        for task in session.tasks.values():
            if task.state is TaskState.FAILED:
                raise TaskExitedError(task.name, task.log_path)
