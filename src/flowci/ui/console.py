"""Console output formatting utilities for flowci."""

from __future__ import annotations

import sys
import threading
from typing import Dict, List, Optional, Protocol


class EventSink(Protocol):
    """Where job run status transitions and captured step output go."""

    def job_status(self, run: str, status: str, reason: str = "") -> None: ...

    def step_started(self, run: str, step: str) -> None: ...

    def step_output(self, run: str, step: str, line: str) -> None: ...


class CaptureSink:
    """
    Buffers everything per job run, for shipping logs somewhere else
    (the agent sends them with the completion call).
    """

    def __init__(self, forward: Optional[EventSink] = None):
        self.forward = forward
        self.logs: Dict[str, List[str]] = {}
        self.transitions: List[tuple] = []
        self._lock = threading.Lock()

    def job_status(self, run: str, status: str, reason: str = "") -> None:
        with self._lock:
            self.transitions.append((run, status, reason))
            self.logs.setdefault(run, []).append(f"STATUS: {status}" + (f" ({reason})" if reason else ""))
        if self.forward is not None:
            self.forward.job_status(run, status, reason)

    def step_started(self, run: str, step: str) -> None:
        with self._lock:
            self.logs.setdefault(run, []).append(f"STEP: {step}")
        if self.forward is not None:
            self.forward.step_started(run, step)

    def step_output(self, run: str, step: str, line: str) -> None:
        with self._lock:
            self.logs.setdefault(run, []).append(line)
        if self.forward is not None:
            self.forward.step_output(run, step, line)

    def text(self, run: str) -> str:
        with self._lock:
            return "\n".join(self.logs.get(run, []))


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, show_output: bool = True):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            show_output: If True, echo captured step output as it arrives
        """
        self.debug = debug
        self.show_output = show_output
        # job runs print from worker threads
        self._lock = threading.Lock()

    def _out(self, text: str, *, err: bool = False) -> None:
        with self._lock:
            print(text, file=sys.stderr if err else sys.stdout, flush=True)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}\n" + "-" * len(title))

    def print_run_started(
        self,
        invocation_id: str,
        pipeline: str,
        branch: str,
        workflows: List[str],
    ) -> None:
        """Print invocation start information."""
        self._out(
            "\nPIPELINE STARTED\n"
            f"Invocation: {invocation_id}\n"
            f"Pipeline: {pipeline}\n"
            f"Branch: {branch}\n"
            f"Workflows: {', '.join(workflows) if workflows else '(none eligible)'}\n"
        )

    # ---- EventSink ----

    def job_status(self, run: str, status: str, reason: str = "") -> None:
        if status == "running":
            self._out(f"\nJOB STARTED: {run}")
        elif status == "success":
            self._out(f"[{run}] STATUS: success")
        elif status == "failed":
            self._out(f"[{run}] JOB FAILED" + (f": {reason}" if reason else ""))
        else:
            self._out(f"[{run}] STATUS: {status}" + (f" ({reason})" if reason else ""))

    def step_started(self, run: str, step: str) -> None:
        self._out(f"[{run}] STEP: {step}")

    def step_output(self, run: str, step: str, line: str) -> None:
        if self.show_output:
            self._out(f"[{run}] {line}")

    # ---- plan / results ----

    def print_plan_job(self, name: str, reason: str) -> None:
        """Print job selection plan."""
        self._out(f"  {name} ({reason})")

    def print_plan_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped in plan."""
        self._out(f"  {name} (skipped: {reason})")

    def print_results(self, report) -> None:
        """Print final results summary from an InvocationReport."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for run in report.job_runs:
            line = f"  {run.key}: {run.status.upper()}"
            if run.reason:
                line += f" ({run.reason})"
            lines.append(line)
            if run.status == "failed" and run.detail:
                lines.append(f"      {run.detail.splitlines()[0]}")
        for wf, status in report.workflows.items():
            lines.append(f"WORKFLOW {wf}: {status.upper()}")
        lines.append(f"PIPELINE: {report.status.upper()}")
        self._out("\n".join(lines))

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
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out("\n".join(lines), err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_agent_started(
        self,
        agent_id: str,
        api: str,
        poll_interval: int,
    ) -> None:
        """Print agent start information."""
        self._out(f"\nAGENT STARTED\nAgent ID: {agent_id}\nAPI: {api}\nPolling every: {poll_interval}s\n")

    def print_lease_acquired(self, invocation_id: str, branch: str) -> None:
        """Print lease acquisition message."""
        self._out(f"\nLEASE ACQUIRED\nInvocation: {invocation_id}\nBranch: {branch}")

    def print_execution_complete(
        self,
        status: str,
        duration: Optional[float] = None,
    ) -> None:
        """Print execution completion message."""
        text = f"\nEXECUTION COMPLETE\nStatus: {status}"
        if duration is not None:
            text += f"\nDuration: {duration:.1f}s"
        self._out(text)

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
