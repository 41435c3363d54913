"""
Error classes for stackup runs.

Every failure the orchestrator can report maps to one class here, and
every class carries the process exit code the CLI returns for it:

- PreflightConfigError: invalid selection or environment, raised before
  anything on the host is touched
- SessionConflictError: a supervision session with the same name is
  already active
- ResourceLifecycleError: creating or destroying an external resource failed
- HealthGateTimeout: a daemon never became ready within its timeout
- TaskExitedError: a supervised daemon died before the run finished
- UnhandledStageFailure: anything else a stage raised

Error handling contract:
- Stage bodies raise; Stage.run() turns the exception into a failed
  StageResult
- The orchestrator stops at the first failed StageResult
- Nothing is rolled back
"""


class StackupError(Exception):
    """Base exception for stackup."""

    exit_code = 1


class PreflightConfigError(StackupError):
    """
    Preflight error - the run must not start.

    Examples:
    - Zero or several members of an exclusion group enabled
    - Two conflicting services enabled together
    - Overlapping network ranges
    - Unsupported distribution without ``force``
    """

    exit_code = 2


class ConfigError(PreflightConfigError):
    """Configuration file missing or invalid."""
    pass


class SelectionFrozenError(PreflightConfigError):
    """A resolved service selection was modified."""
    pass


class SessionConflictError(StackupError):
    """
    A supervision session of the same name is already active.

    The caller must tear the old session down (``stackup unstack``)
    before starting a new run.
    """

    exit_code = 3

    def __init__(self, session_name: str, message: str = None):
        self.session_name = session_name
        if message is None:
            message = (
                f"Session '{session_name}' is already active. "
                f"To destroy it, run 'stackup unstack --session {session_name}'."
            )
        super().__init__(message)


class ResourceLifecycleError(StackupError):
    """Creating or destroying an external resource failed."""

    exit_code = 4

    def __init__(self, resource: str, message: str):
        self.resource = resource
        super().__init__(f"{resource}: {message}")


class HealthGateTimeout(StackupError):
    """A health check did not succeed within its timeout."""

    exit_code = 5

    def __init__(self, check_name: str, timeout: float):
        self.check_name = check_name
        self.timeout = timeout
        super().__init__(f"{check_name} did not become ready within {timeout:g}s")


class UnhandledStageFailure(StackupError):
    """A stage raised an error that is not otherwise classified."""

    exit_code = 1

    def __init__(self, stage_name: str, cause: BaseException):
        self.stage_name = stage_name
        self.cause = cause
        super().__init__(f"Stage {stage_name} failed: {cause}")


class CommandError(StackupError):
    """An external command exited with a non-zero status."""

    def __init__(self, command, returncode: int, stderr: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        detail = f": {stderr.strip()}" if stderr and stderr.strip() else ""
        super().__init__(
            f"Command '{' '.join(self.command)}' exited with {returncode}{detail}"
        )


class TaskExitedError(StackupError):
    """A supervised task died before the run finished."""

    exit_code = 1

    def __init__(self, task_name: str, log_path=None):
        self.task_name = task_name
        self.log_path = log_path
        detail = f" (see {log_path})" if log_path else ""
        super().__init__(f"Task {task_name} exited{detail}")
