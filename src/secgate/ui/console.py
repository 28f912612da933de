"""Console output formatting utilities for secgate."""

from __future__ import annotations

import sys
import threading
from typing import Iterable, Mapping, Optional


class Console:
    """Centralized console output formatting.

    Jobs run on worker threads, so every write goes through one lock and every
    line is prefixed with the job it belongs to.
    """

    def __init__(self, debug: bool = False):
        """`debug` turns on tracebacks and full multi-line error reasons."""
        self.debug = debug
        self._lock = threading.Lock()
        self._masks: set[str] = set()

    def add_masks(self, values: Iterable[str]) -> None:
        """Register secret values that must never be printed."""
        with self._lock:
            self._masks.update(v for v in values if v)

    def mask(self, text: str) -> str:
        for value in sorted(tuple(self._masks), key=len, reverse=True):
            text = text.replace(value, "***")
        return text

    def _emit(self, text: str, *, err: bool = False) -> None:
        with self._lock:
            print(self.mask(text), file=sys.stderr if err else sys.stdout, flush=True)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._emit(f"\n{title}\n" + "-" * len(title))

    def print_run_started(
        self,
        run_id: str,
        workflow: str,
        job_count: int,
    ) -> None:
        """Banner printed once per run, before the first job is scheduled."""
        self._emit(f"\nRUN STARTED\nRun ID: {run_id}\nWorkflow: {workflow}\nJobs: {job_count}\n")

    def print_job_start(self, name: str) -> None:
        self._emit(f"[{name}] JOB STARTED")

    def print_step(self, job: str, name: str) -> None:
        self._emit(f"[{job}] ▶ {name}")

    def print_step_skipped(self, job: str, name: str) -> None:
        self._emit(f"[{job}] ⏭ {name}")

    def print_job_finished(self, name: str, status: str) -> None:
        self._emit(f"[{name}] STATUS: {status}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
        output: str = "",
    ) -> None:
        """
        Report a failed step (or a job that failed before its steps ran).

        Only the first line of `reason` is shown unless debug is on; `output`
        is the tail of what the failing command printed.
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
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        if output:
            lines.append(output.rstrip())
        self._emit("\n".join(lines), err=True)

    def print_cache_hit(self, job: str, key: str, exact: bool) -> None:
        kind = "hit" if exact else "partial hit"
        self._emit(f"[{job}] CACHE: {kind} ({key})")

    def print_cache_miss(self, job: str, key: str) -> None:
        self._emit(f"[{job}] CACHE: miss ({key})")

    def print_cache_saved(self, job: str, key: str) -> None:
        self._emit(f"[{job}] CACHE: saved ({key})")

    def print_artifact_uploaded(self, job: str, name: str, count: int) -> None:
        self._emit(f"[{job}] ARTIFACT: {name} ({count} file(s))")

    def print_job_skipped(self, name: str, reason: str) -> None:
        self._emit(f"[{name}] STATUS: {reason} (not started)")

    def print_plan(self, levels: list[list[str]]) -> None:
        """Print the stage plan computed from the DAG."""
        for idx, level in enumerate(levels):
            self._emit(f"=== Stage {idx + 1}: {', '.join(level)} ===")

    def print_gate(self, name: str, verdict: str, statuses: Mapping[str, str], failed: list[str]) -> None:
        lines = [f"[{name}] GATE: {verdict.upper()}"]
        for job, status in statuses.items():
            lines.append(f"  {job}: {status}")
        if failed:
            lines.append(f"❌ Security checks failed in: {' '.join(failed)}")
        else:
            lines.append("✅ All security checks passed!")
        self._emit("\n".join(lines))

    def print_results(self, results: Mapping[str, str]) -> None:
        """Final status table, one line per job."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for job, status in results.items():
            lines.append(f"  {job}: {status.upper()}")
        self._emit("\n".join(lines))

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """Error block for problems outside a run (workflow discovery, loading, lookups)."""
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit("\n".join(lines), err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            self._emit("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)), err=True)
        else:
            self._emit(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._emit(message)

    def print_warning(self, message: str) -> None:
        self._emit(f"WARNING: {message}", err=True)


# Process-wide console; the CLI replaces it to honour --debug
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
