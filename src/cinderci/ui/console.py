"""Console output formatting utilities for cinderci."""

from __future__ import annotations

import sys
import threading
from typing import Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, do not echo step output (it still goes to the step logs)
        """
        self.debug = debug
        self.quiet = quiet
        # jobs run on worker threads; keep their lines whole
        self._lock = threading.Lock()

    def _print(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._print("", title, "-" * len(title))

    def print_run_started(
        self,
        repository: str,
        workflow: str,
        branch: str,
        revision: str,
        job_count: int,
    ) -> None:
        """Print run start information."""
        self._print(
            "",
            "RUN STARTED",
            f"Repository: {repository}",
            f"Workflow: {workflow}",
            f"Branch: {branch}",
            f"Revision: {revision[:12]}",
            f"Jobs: {job_count}",
            "",
        )

    def print_job_start(self, name: str, executor: str) -> None:
        """Print job start message."""
        self._print("", f"JOB STARTED: {name} ({executor})")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._print(f"[{job}] STEP: {name}")

    def print_step_skipped(self, job: str, name: str, reason: str) -> None:
        self._print(f"[{job}] STEP SKIPPED: {name} ({reason})")

    def print_output(self, job: str, line: str) -> None:
        """Echo one line of step output."""
        if not self.quiet:
            self._print(f"[{job}]   {line}")

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
        self._print(*lines)

    def print_warning(self, job: str, message: str) -> None:
        self._print(f"[{job}] WARNING: {message}")

    def print_cache_hit(self, job: str, key: str, reason: str) -> None:
        """Print cache hit message."""
        self._print(f"[{job}] CACHE: {reason} ({key})")

    def print_cache_miss(self, job: str, keys: list[str]) -> None:
        """Print cache miss message."""
        self._print(f"[{job}] CACHE: miss ({', '.join(keys)})")

    def print_cache_saved(self, job: str, key: str, size: int) -> None:
        """Print cache save message."""
        self._print(f"[{job}] CACHE: saved {key} ({_human_size(size)})")

    def print_job_finished(self, name: str, status: str, duration: float) -> None:
        self._print(f"[{name}] STATUS: {status} ({duration:.1f}s)")

    def print_plan_job(self, name: str, reason: str) -> None:
        """Print job selection plan."""
        self._print(f"  {name} ({reason})")

    def print_plan_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped in plan."""
        self._print(f"  {name} (skipped: {reason})")

    def print_results(self, results: dict[str, str]) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for job, status in results.items():
            status_display = status.upper() if status != "ok" else "SUCCESS"
            lines.append(f"  {job}: {status_display}")
        self._print(*lines)

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
        lines = ["", f"ERROR: {title}", message]
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.extend(["", suggestion])
        self._print(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._print(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._print(f"[DEBUG] {message}", err=True)


def _human_size(n: int) -> str:
    size = float(n)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{n}B"


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
