"""
Process supervision for long-running service daemons.

All daemons of one run belong to a named Session. Each daemon is
started in its own process group, so it keeps running after stackup
exits. The session manifest (JSON, one per session) lets later
commands inspect, reattach to the logs of, or tear down those daemons.

A session is active while its manifest exists. Opening an active session
again is a SessionConflictError. The old session has to be torn down
first.
"""

import json
import logging
import os
import signal
import subprocess
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from stackup.errors import SessionConflictError
from stackup.utils import get_logger


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class TaskState(str, Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    RUNNING = "running"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass
class SupervisedTask:
    """One daemon in a session."""

    name: str
    command: List[str]
    state: TaskState = TaskState.NOT_STARTED
    pid: Optional[int] = None
    log_path: Optional[Path] = None
    cwd: Optional[str] = None
    started_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "command": self.command,
            "state": self.state.value,
            "pid": self.pid,
            "log_path": str(self.log_path) if self.log_path else None,
            "cwd": self.cwd,
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SupervisedTask":
        return cls(
            name=data["name"],
            command=list(data["command"]),
            state=TaskState(data.get("state", TaskState.NOT_STARTED.value)),
            pid=data.get("pid"),
            log_path=Path(data["log_path"]) if data.get("log_path") else None,
            cwd=data.get("cwd"),
            started_at=datetime.fromisoformat(data["started_at"]) if data.get("started_at") else None,
        )


@dataclass
class Session:
    """All supervised tasks of one run."""

    name: str
    created_at: datetime = field(default_factory=_utcnow)
    tasks: Dict[str, SupervisedTask] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "created_at": self.created_at.isoformat(),
            "tasks": [task.to_dict() for task in self.tasks.values()],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        tasks = [SupervisedTask.from_dict(t) for t in data.get("tasks", [])]
        return cls(
            name=data["name"],
            created_at=datetime.fromisoformat(data["created_at"]),
            tasks={task.name: task for task in tasks},
        )


class ProcessSupervisor:
    """
    Starts and tracks session tasks.

    Args:
        sessions_dir: Where session manifests live
        log_dir: Root of per-session task logs
        popen: Process factory (subprocess.Popen)
        is_alive: Liveness check for a pid not started by this process
        killpg: Process group signaller (os.killpg)
    """

    def __init__(
        self,
        sessions_dir: Path,
        log_dir: Path,
        logger: Optional[logging.Logger] = None,
        popen: Callable[..., Any] = subprocess.Popen,
        is_alive: Callable[[int], bool] = _pid_alive,
        killpg: Callable[[int, int], None] = os.killpg,
    ):
        self.sessions_dir = Path(sessions_dir)
        self.log_dir = Path(log_dir)
        self.logger = logger or get_logger()
        self._popen = popen
        self._is_alive = is_alive
        self._killpg = killpg
        self._processes: Dict[tuple, Any] = {}

    def manifest_path(self, name: str) -> Path:
        return self.sessions_dir / f"{name}.json"

    def is_session_active(self, name: str) -> bool:
        return self.manifest_path(name).exists()

    def open_session(self, name: str) -> Session:
        """
        Create a new, empty session.

        Raises:
            SessionConflictError: If a session of this name is active
        """
        if self.is_session_active(name):
            raise SessionConflictError(name)

        session = Session(name=name)
        self._save(session)
        self.logger.info(
            f"Opened session {name}",
            extra={"event": "session_opened", "metadata": {"manifest": str(self.manifest_path(name))}},
        )
        return session

    def load_session(self, name: str) -> Optional[Session]:
        path = self.manifest_path(name)
        if not path.exists():
            return None
        with open(path, "r") as f:
            return Session.from_dict(json.load(f))

    def spawn(
        self,
        session: Session,
        task_name: str,
        command: Sequence[str],
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> SupervisedTask:
        """
        Start a task and return immediately with it in STARTING.

        Raises:
            SessionConflictError: If the session already has a task of this name
            OSError: If the process could not be started
        """
        if task_name in session.tasks:
            raise SessionConflictError(
                session.name,
                f"Task '{task_name}' already exists in session '{session.name}'",
            )

        task = SupervisedTask(
            name=task_name,
            command=[str(part) for part in command],
            cwd=str(cwd) if cwd else None,
        )
        session.tasks[task_name] = task
        task.log_path = self._new_log_path(session.name, task_name)

        full_env = None
        if env:
            full_env = dict(os.environ)
            full_env.update(env)

        try:
            with open(task.log_path, "ab") as log_file:
                process = self._popen(
                    task.command,
                    cwd=task.cwd,
                    env=full_env,
                    stdin=subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError:
            task.state = TaskState.FAILED
            self._save(session)
            raise

        self._processes[(session.name, task_name)] = process
        task.pid = process.pid
        task.state = TaskState.STARTING
        task.started_at = _utcnow()
        self._save(session)

        self.logger.info(
            f"Started {task_name} (pid {task.pid})",
            extra={
                "event": "task_starting",
                "task": task_name,
                "metadata": {"command": task.command, "log": str(task.log_path)},
            },
        )
        return task

    def is_task_alive(self, session: Session, task: SupervisedTask) -> bool:
        process = self._processes.get((session.name, task.name))
        if process is not None:
            return process.poll() is None
        return task.pid is not None and self._is_alive(task.pid)

    def refresh(self, session: Session) -> Session:
        """Mark STARTING/RUNNING tasks whose process has exited as FAILED."""
        changed = False
        for task in session.tasks.values():
            if task.state in (TaskState.STARTING, TaskState.RUNNING) and not self.is_task_alive(session, task):
                task.state = TaskState.FAILED
                changed = True
                self.logger.error(
                    f"Task {task.name} exited",
                    extra={"event": "task_failed", "task": task.name},
                )
        if changed and self.is_session_active(session.name):
            self._save(session)
        return session

    def mark_running(self, session: Session, task_name: str) -> SupervisedTask:
        task = session.tasks[task_name]
        task.state = TaskState.RUNNING
        self._save(session)
        return task

    def teardown(self, name: str, sig: int = signal.SIGTERM) -> Optional[Session]:
        """
        Stop every task of a session and remove its manifest.

        Returns:
            The stopped session, or None if it was not active
        """
        session = self.load_session(name)
        if session is None:
            return None

        for task in session.tasks.values():
            if task.pid is not None and task.state in (TaskState.STARTING, TaskState.RUNNING):
                try:
                    self._killpg(task.pid, sig)
                except ProcessLookupError:
                    pass
                self.logger.info(
                    f"Stopped {task.name} (pid {task.pid})",
                    extra={"event": "task_stopped", "task": task.name},
                )
            if task.state is not TaskState.FAILED:
                task.state = TaskState.STOPPED

        self.manifest_path(name).unlink()
        self.logger.info(f"Closed session {name}", extra={"event": "session_closed"})
        return session

    def latest_log(self, session_name: str, task_name: str) -> Path:
        """Symlink to the most recent log of a task."""
        return self.log_dir / session_name / f"{task_name}.log"

    def prune_logs(self, days: int) -> int:
        """Delete timestamped task logs older than ``days``; returns how many."""
        if not self.log_dir.exists():
            return 0
        cutoff = time.time() - days * 86400
        removed = 0
        for path in self.log_dir.glob("*/*-*.log"):
            if path.is_symlink():
                continue
            if path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
        return removed

    def _new_log_path(self, session_name: str, task_name: str) -> Path:
        directory = self.log_dir / session_name
        directory.mkdir(parents=True, exist_ok=True)
        timestamp = _utcnow().strftime("%Y%m%d-%H%M%S")
        path = directory / f"{task_name}-{timestamp}.log"

        link = self.latest_log(session_name, task_name)
        if link.is_symlink() or link.exists():
            link.unlink()
        link.symlink_to(path.name)
        return path

    def _save(self, session: Session) -> None:
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        path = self.manifest_path(session.name)
        tmp = path.with_suffix(".json.tmp")
        with open(tmp, "w") as f:
            json.dump(session.to_dict(), f, indent=2)
        tmp.replace(path)
