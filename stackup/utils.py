"""
Utility functions for stackup.

Includes logging, console output, and external command execution.
"""

import json
import logging
import os
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

from rich.console import Console
from rich.logging import RichHandler

from stackup.errors import CommandError


# Global console for pretty output
console = Console()

LOGGER_NAME = "stackup"


def get_logger() -> logging.Logger:
    """Return the shared stackup logger."""
    return logging.getLogger(LOGGER_NAME)


def setup_logging(log_file: Path, log_level: str = "INFO", log_format: str = "structured", console_output: bool = True) -> logging.Logger:
    """
    Set up logging for a provisioning run.

    Args:
        log_file: Path to log file
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: "structured" (JSON) or "pretty" (human-readable)
        console_output: Also log to console

    Returns:
        Configured logger
    """
    log_file.parent.mkdir(parents=True, exist_ok=True)

    logger = get_logger()
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.handlers = []  # Clear existing handlers

    file_handler = logging.FileHandler(log_file)
    if log_format == "structured":
        file_handler.setFormatter(StructuredFormatter())
    else:
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
    logger.addHandler(file_handler)

    if console_output:
        if log_format == "pretty":
            console_handler = RichHandler(rich_tracebacks=True, show_time=False)
        else:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(
                logging.Formatter("%(levelname)s: %(message)s")
            )

        logger.addHandler(console_handler)

    return logger


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    EXTRA_FIELDS = ("stage", "event", "resource", "task", "metadata")

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
        }

        for name in self.EXTRA_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class CommandRunner:
    """
    Runs external commands for resource managers and collaborators.

    All host mutation goes through one of these, so tests can swap in a
    recording fake and ``dry_run`` can log commands without running them.
    """

    def __init__(self, logger: Optional[logging.Logger] = None, dry_run: bool = False, sudo: bool = False):
        self.logger = logger or get_logger()
        self.dry_run = dry_run
        self.sudo = sudo

    def run(
        self,
        command: Sequence[str],
        check: bool = True,
        input: Optional[str] = None,
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
        privileged: bool = False,
    ) -> subprocess.CompletedProcess:
        """
        Run a command and capture its output.

        Args:
            command: Argument vector
            check: Raise CommandError on non-zero exit
            input: Text passed on stdin
            cwd: Working directory
            env: Extra environment variables (merged over os.environ)
            privileged: Prefix with sudo when the runner is configured for it

        Returns:
            CompletedProcess with text stdout/stderr

        Raises:
            CommandError: If check is set and the command fails
        """
        argv: List[str] = [str(part) for part in command]
        if privileged and self.sudo:
            argv = ["sudo"] + argv

        self.logger.debug(
            f"Running: {' '.join(argv)}",
            extra={"event": "command", "metadata": {"cwd": str(cwd) if cwd else None}},
        )

        if self.dry_run:
            return subprocess.CompletedProcess(argv, 0, stdout="", stderr="")

        full_env: Optional[Dict[str, str]] = None
        if env:
            full_env = dict(os.environ)
            full_env.update({k: str(v) for k, v in env.items()})

        result = subprocess.run(
            argv,
            cwd=cwd,
            env=full_env,
            input=input,
            capture_output=True,
            text=True,
            check=False,
        )

        if check and result.returncode != 0:
            raise CommandError(argv, result.returncode, result.stderr)

        return result


def format_duration(seconds: float) -> str:
    """
    Format duration in seconds to human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string (e.g., "1m 23s", "45s")
    """
    if seconds < 60:
        return f"{int(seconds)}s"

    minutes = int(seconds // 60)
    remaining_seconds = int(seconds % 60)

    if minutes < 60:
        return f"{minutes}m {remaining_seconds}s"

    hours = minutes // 60
    remaining_minutes = minutes % 60
    return f"{hours}h {remaining_minutes}m {remaining_seconds}s"


def print_banner(title: str) -> None:
    """
    Print a banner to console.

    Args:
        title: Banner title
    """
    console.rule(f"[bold blue]{title}[/bold blue]")


def print_success(message: str) -> None:
    """Print success message to console."""
    console.print(f"[bold green]✓[/bold green] {message}")


def print_error(message: str) -> None:
    """Print error message to console."""
    console.print(f"[bold red]✗[/bold red] {message}")


def print_warning(message: str) -> None:
    """Print warning message to console."""
    console.print(f"[bold yellow]⚠[/bold yellow] {message}")


def print_info(message: str) -> None:
    """Print info message to console."""
    console.print(f"[bold cyan]ℹ[/bold cyan] {message}")
