"""Console output formatting utilities for relayci."""

from __future__ import annotations

import sys
import threading
from typing import Dict, List, Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        # jobs report from worker threads
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        run_id: str,
        repository: str,
        workflow: str,
        job_count: int,
        revision: str,
        ref: str,
    ) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED",
            f"Run: {run_id}",
            f"Repository: {repository}",
            f"Workflow: {workflow}",
            f"Revision: {revision} ({ref})",
            f"Jobs: {job_count}",
            "",
        )

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._out(f"JOB STARTED: {name}")

    def print_job_finished(self, name: str, label: str, duration: Optional[float] = None) -> None:
        took = f" in {duration:.1f}s" if duration is not None else ""
        self._out(f"JOB {label.upper()}: {name}{took}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
        """
        lines = [f"JOB FAILED: {name}"]
        if exit_code is not None:
            lines.append(f"  Exit code: {exit_code}")
        if hint:
            lines.append(f"  Hint: {hint}")
        if self.debug:
            lines.append(f"  Error details: {reason}")
        else:
            # first line only outside debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"  Error: {error_line}")
        self._out(*lines)

    def print_job_skipped(self, name: str, cause: str, reason: Optional[str] = None) -> None:
        """Print job skipped message."""
        suffix = f": {reason}" if reason else ""
        self._out(f"JOB SKIPPED ({cause}): {name}{suffix}")

    def print_plan_stage(self, index: int, jobs: List[str]) -> None:
        self._out(f"Stage {index}: {', '.join(jobs)}")

    def print_plan_job(self, name: str, reason: str) -> None:
        """Print job selection plan."""
        self._out(f"  {name} ({reason})")

    def print_results(self, results: Dict[str, str], status: str) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for job, label in results.items():
            lines.append(f"  {job}: {label.upper()}")
        lines.append(f"\nRUN {status.upper()}")
        self._out(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[List[str]] = None,
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
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
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


# Global console instance (will be initialized by CLI)
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
