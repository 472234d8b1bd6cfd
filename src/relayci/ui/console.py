"""Console output formatting utilities for relayci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, List, Optional, TextIO

if TYPE_CHECKING:
    from ..summary import RunSummary


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False, stream: Optional[TextIO] = None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including step output and stack traces
            quiet: If True, only the final results and errors are printed
            stream: Where progress goes (defaults to stdout at print time)
        """
        self.debug = debug
        self.quiet = quiet
        self._stream = stream
        # jobs report from worker threads; keep multi-line blocks together
        self._lock = threading.Lock()

    @property
    def stream(self) -> TextIO:
        return self._stream or sys.stdout

    def _emit(self, *lines: str, force: bool = False) -> None:
        if self.quiet and not force:
            return
        with self._lock:
            for line in lines:
                print(line, file=self.stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._emit(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        repository: str,
        workflow: str,
        job_count: int,
    ) -> None:
        """Print run start information."""
        self._emit(
            "\nRUN STARTED",
            f"Repository: {repository}",
            f"Workflow: {workflow}",
            f"Jobs: {job_count}",
            "",
        )

    def print_plan(self, levels: List[List[str]]) -> None:
        """Print the expanded job instances stage by stage."""
        for i, level in enumerate(levels, start=1):
            self._emit(f"=== Stage {i} ===", *(f"  {name}" for name in level), force=True)

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._emit(f"JOB STARTED: {name}")

    def print_step(self, name: str) -> None:
        """Print step start message."""
        if self.debug:
            self._emit(f"STEP: {name}")

    def print_success(self, name: str) -> None:
        """Print success message."""
        self._emit(f"JOB SUCCEEDED: {name}")

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
            reason: Failure reason/error message (step output for steps)
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
            # last non-empty line is usually the useful one
            tail = [ln for ln in (reason or "").splitlines() if ln.strip()]
            if tail:
                lines.append(f"Error: {tail[-1]}")
        self._emit(*lines, force=is_job)

    def print_cache_hit(self, job: str, key: str) -> None:
        """Print cache hit message."""
        self._emit(f"[{job}] CACHE: hit ({_short(key)})")

    def print_cache_miss(self, job: str) -> None:
        """Print cache miss message."""
        self._emit(f"[{job}] CACHE: miss")

    def print_cache_saved(self, job: str, key: str) -> None:
        """Print cache save message."""
        self._emit(f"[{job}] CACHE: saved ({_short(key)})")

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._emit(f"JOB SKIPPED: {name} ({reason})")

    def print_summary(self, summary: "RunSummary") -> None:
        """Print final results, with every skip attributed to what caused it."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        attribution = summary.attribution()
        for report in summary.instances:
            line = f"  {report.name}: {report.state.upper()}"
            if report.duration is not None:
                line += f" ({report.duration:.1f}s)"
            if report.id in attribution:
                line += f" <- {', '.join(attribution[report.id])}"
            lines.append(line)
        lines.append("")
        if summary.cancelled:
            lines.append("Run cancelled.")
        lines.append(
            f"{len(summary.succeeded)} succeeded, {len(summary.failed)} failed, {len(summary.skipped)} skipped"
        )
        self._emit(*lines, force=True)

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
        with self._lock:
            print(f"\nERROR: {title}", file=sys.stderr)
            print(f"{message}", file=sys.stderr)
            if details:
                for detail in details:
                    print(f"  {detail}", file=sys.stderr)
            if suggestion:
                print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._emit(message, force=True)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


def _short(key: str) -> str:
    return key[:40] + "..." if len(key) > 40 else key


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
