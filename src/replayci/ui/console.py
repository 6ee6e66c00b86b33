# ui/console.py
"""Console output formatting utilities for replayci."""

from __future__ import annotations

import sys
from typing import Dict, List, Optional

from ..scheduler import RunEvent
from ..store import SecretStore

STATUS_LABELS = {
    "succeeded": "SUCCESS",
    "failed": "FAILED",
    "skipped": "SKIPPED",
    "pending": "PENDING",
    "running": "RUNNING",
}


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, secrets: Optional[SecretStore] = None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            secrets: Values in this store are masked in everything printed
        """
        self.debug = debug
        self.secrets = secrets

    def _out(self, text: str = "", *, err: bool = False) -> None:
        if self.secrets is not None:
            text = self.secrets.redact(text)
        print(text, file=sys.stderr if err else sys.stdout)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}")
        self._out("-" * len(title))

    def print_run_started(
        self,
        workflow: str,
        event: str,
        job_count: int,
        concurrency: int,
    ) -> None:
        """Print run start information."""
        self._out("\nRUN STARTED")
        self._out(f"Workflow: {workflow}")
        self._out(f"Event: {event}")
        self._out(f"Jobs: {job_count}")
        self._out(f"Concurrency: {concurrency}")
        self._out()

    def print_plan(self, levels: List[List[str]]) -> None:
        """Print the stages of a dependency graph."""
        for idx, level in enumerate(levels):
            self._out(f"=== Stage {idx + 1}: {', '.join(level)} ===")

    def handle_event(self, event: RunEvent) -> None:
        """Scheduler listener: print a line per state transition."""
        if event.kind == "job_started":
            self._out(f"\nJOB STARTED: {event.job}")
        elif event.kind == "step_started":
            self._out(f"[{event.job}] STEP: {event.step}")
        elif event.kind == "step_finished" and event.status == "failed":
            self.print_failure(event.step or "", event.detail or "", prefix=f"[{event.job}] STEP FAILED")
        elif event.kind == "step_finished" and event.status == "skipped":
            self._out(f"[{event.job}] STEP SKIPPED: {event.step}")
        elif event.kind == "job_finished":
            label = STATUS_LABELS.get(event.status or "", event.status)
            line = f"JOB {label}: {event.job}"
            if event.detail:
                line += f" ({event.detail})"
            self._out(line)
        elif event.kind == "job_skipped":
            self._out(f"\nJOB SKIPPED: {event.job} ({event.detail})")

    def print_failure(self, name: str, reason: str, prefix: str = "STEP FAILED") -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure output; only the last line is shown outside debug mode
            prefix: Line prefix
        """
        self._out(f"{prefix}: {name}")
        if not reason:
            return
        if self.debug:
            self._out(f"Output:\n{reason}")
        else:
            lines = [line for line in reason.splitlines() if line.strip()]
            if lines:
                self._out(f"Error: {lines[-1]}")

    def print_results(self, results: Dict[str, str], run_status: str) -> None:
        """Print final results summary."""
        self._out("\n" + "=" * 40)
        self._out(f"RESULTS ({run_status.upper()})")
        self._out("=" * 40)
        for job, status in results.items():
            self._out(f"  {job}: {STATUS_LABELS.get(status, status.upper())}")

    def print_runs(self, runs: List[dict]) -> None:
        """Print archived runs, newest first."""
        if not runs:
            self._out("No archived runs.")
            return
        for r in runs:
            failed = [n for n, j in r["jobs"].items() if j["status"] == "failed"]
            line = f"{r['run_id'][:12]}  {r['status']:<10} {r['workflow']} ({r['event']})  {r['started_at'] or '-'}"
            if failed:
                line += f"  failed: {', '.join(failed)}"
            self._out(line)

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
        self._out(f"\nERROR: {title}", err=True)
        self._out(f"{message}", err=True)
        if details:
            for detail in details:
                self._out(f"  {detail}", err=True)
        if suggestion:
            self._out(f"\n{suggestion}", err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            self._out("".join(traceback.format_exception(exc)), err=True)
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
