"""Console output formatting utilities for RelayCI."""

from __future__ import annotations

import sys
import threading
from typing import Dict, Optional

from relayci.model import FAILED, SKIPPED, SUCCEEDED_WITH_ISSUES


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, stream=None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            stream: Where normal output goes (defaults to sys.stdout at print time)
        """
        self.debug = debug
        self._stream = stream
        # jobs may run in worker threads
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        target = sys.stderr if err else (self._stream or sys.stdout)
        with self._lock:
            for line in lines:
                print(line, file=target)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        repository: str,
        pipeline: str,
        run_id: str,
        stage_count: int,
    ) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED",
            f"Repository: {repository}",
            f"Pipeline: {pipeline}",
            f"Run ID: {run_id}",
            f"Stages: {stage_count}",
            "",
        )

    def print_not_triggered(self, branch: str, patterns: list[str]) -> None:
        shown = ", ".join(patterns) if patterns else "none"
        self._out(
            f"NOT TRIGGERED: branch '{branch}' does not match trigger ({shown})",
            "Use --force to run anyway.",
        )

    def print_stage_start(self, name: str) -> None:
        self._out(f"\nSTAGE STARTED: {name}")

    def print_stage_skipped(self, name: str, reason: str) -> None:
        self._out(f"\nSTAGE SKIPPED: {name} ({reason})")

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._out(f"JOB STARTED: {name}")

    def print_job_skipped(self, name: str, reason: str) -> None:
        self._out(f"JOB SKIPPED: {name} ({reason})")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._out(f"[{job}] STEP: {name}")

    def print_step_skipped(self, job: str, name: str, reason: str) -> None:
        self._out(f"[{job}] STEP SKIPPED: {name} ({reason})")

    def print_success(self, name: str) -> None:
        self._out(f"[{name}] STATUS: success")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # first line only outside debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        self._out(*lines)

    def print_log_tail(self, text: str, lines: int = 30) -> None:
        tail = text.strip().splitlines()[-lines:]
        if tail:
            self._out(*(f"  | {line}" for line in tail))

    def print_plan_stage(self, name: str, reason: str) -> None:
        """Print stage selection plan."""
        self._out(f"  {name} ({reason})")

    def print_results(self, results: Dict[str, str], status: str | None = None) -> None:
        """Print final results summary."""
        lines = ["\n" + "=" * 40, "RESULTS", "=" * 40]
        for stage, st in results.items():
            lines.append(f"  {stage}: {_display(st)}")
        if status is not None:
            lines.append(f"\nRUN: {_display(status)}")
        self._out(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        lines.extend(f"  {d}" for d in details or [])
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


def _display(status: str) -> str:
    if status in (FAILED, SKIPPED, SUCCEEDED_WITH_ISSUES):
        return status.upper()
    return "SUCCESS"


# Global console instance (initialized by the CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
