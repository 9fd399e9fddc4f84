"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import threading
import traceback
from typing import TYPE_CHECKING, List, Optional, Sequence

import click

if TYPE_CHECKING:
    from ..aggregate import PipelineVerdict
    from ..model import JobInstance, StepResult

_STATUS_COLORS = {
    "succeeded": "green",
    "failed": "red",
    "errored": "magenta",
    "skipped": "yellow",
    "cancelled": "magenta",
}


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, color: Optional[bool] = None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show full step output and stack traces
            color: Force color on/off; None lets click decide from the terminal
        """
        self.debug = debug
        self.color = color
        # Lines from concurrent job instances must not interleave mid-line.
        # Re-entrant: the CLI signal handler prints from the main thread.
        self._lock = threading.RLock()

    def _echo(self, message: str = "", *, err: bool = False) -> None:
        with self._lock:
            click.echo(message, err=err, color=self.color)

    def _status(self, status: str) -> str:
        return click.style(status.upper(), fg=_STATUS_COLORS.get(status), bold=True)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._echo(f"\n{title}\n{'-' * len(title)}")

    def print_run_started(
        self,
        workflow: str,
        event: str,
        instance_count: int,
        ref: Optional[str] = None,
    ) -> None:
        """Print run start information."""
        lines = ["", click.style("RUN STARTED", bold=True), f"Workflow: {workflow}", f"Event: {event}"]
        if ref:
            lines.append(f"Ref: {ref}")
        lines += [f"Job instances: {instance_count}", ""]
        self._echo("\n".join(lines))

    def print_not_triggered(self, workflow: str, event: str, triggers: Sequence[str]) -> None:
        self._echo(f"{workflow}: not triggered by '{event}' (on: {', '.join(triggers) or '-'})")

    def print_plan(self, stages: List[List["JobInstance"]], skipped_steps: dict) -> None:
        """Print the execution plan for --dry-run."""
        self.print_header("PLAN")
        for idx, stage in enumerate(stages, start=1):
            self._echo(f"Stage {idx}:")
            for inst in stage:
                self._echo(f"  {inst.display_name}  [{inst.id}]  runs-on: {inst.runs_on or inst.job.runs_on}")
                for n, bound in enumerate(inst.steps, start=1):
                    note = skipped_steps.get((inst.id, n - 1))
                    suffix = click.style(f"  (skipped: {note})", fg="yellow") if note else ""
                    self._echo(f"    {n}. {bound.step.display_name}{suffix}")

    def print_job_start(self, inst: "JobInstance") -> None:
        """Print job start message."""
        self._echo(f"\n{click.style('JOB STARTED', bold=True)}: {inst.display_name} [{inst.id}]")

    def print_step(self, inst: "JobInstance", result: "StepResult") -> None:
        """Print one finished step, with its output tail when it did not succeed."""
        line = f"[{inst.id}] STEP {result.step}: {self._status(result.status.value)}"
        if result.duration:
            line += f" ({result.duration:.1f}s)"
        if result.reason and result.status.value != "succeeded":
            line += f" - {result.reason}"
        show_output = self.debug or result.status.value in ("failed", "errored")
        if show_output and result.output.strip():
            body = "\n".join(f"[{inst.id}]   | {ln}" for ln in result.output.rstrip().splitlines())
            line = f"{line}\n{body}"
        self._echo(line)

    def print_job_finished(self, inst: "JobInstance") -> None:
        line = f"[{inst.id}] JOB {self._status(inst.state.value)}"
        if inst.duration is not None:
            line += f" ({inst.duration:.1f}s)"
        if inst.reason:
            line += f" - {inst.reason}"
        self._echo(line)

    def print_results(self, verdict: "PipelineVerdict", instances: Sequence["JobInstance"]) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for inst in instances:
            status = inst.state.value
            row = f"  {inst.display_name} [{inst.id}]: {self._status(status)}"
            if inst.reason and status != "succeeded":
                row += f" ({inst.reason})"
            lines.append(row)
        lines.append("")
        lines.append(f"PIPELINE: {self._status(verdict.status.value)}")
        self._echo("\n".join(lines))

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
        lines = [f"\n{click.style('ERROR', fg='red', bold=True)}: {title}", message]
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._echo("\n".join(lines), err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            self._echo("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)), err=True)
        else:
            self._echo(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._echo(message)

    def print_warning(self, message: str) -> None:
        self._echo(f"{click.style('WARNING', fg='yellow', bold=True)}: {message}", err=True)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._echo(f"[DEBUG] {message}", err=True)


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
