# executor.py
from __future__ import annotations

import os
import platform
import shlex
import shutil
import signal
import subprocess
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from . import expr
from .actions import ActionContext, resolve_action
from .environment import Environment
from .errors import CancellationError, StepError, StepFailure, hint_for
from .model import CancellationToken, Step, StepResult, StepStatus, Trigger

POLL_INTERVAL = 0.1
KILL_GRACE = 5.0

# Exit statuses a POSIX shell uses when it cannot run the command at all.
SHELL_NOT_EXECUTABLE = 126
SHELL_NOT_FOUND = 127

_SKIP_REASONS = {"success": "condition is false", "cancelled": "run cancelled"}


def runner_os() -> str:
    return {"Darwin": "macOS"}.get(platform.system(), platform.system())


def expression_context(
    trigger: Trigger,
    env: Mapping[str, str],
    axes: Mapping[str, Any],
    *,
    job_status: str = "success",
    workspace: Optional[Path] = None,
) -> Dict[str, Any]:
    """The contexts an `if:` or `${{ }}` expression can read."""
    return {
        "matrix": dict(axes),
        "env": dict(env),
        "runner": {"os": runner_os(), "arch": platform.machine()},
        "github": {
            "event_name": trigger.event,
            "ref": trigger.ref,
            "sha": trigger.sha,
            "workspace": str(workspace) if workspace else None,
        },
        "job": {"status": job_status},
    }


def shell_command(shell: str, script: str, scratch: Path) -> List[str]:
    """argv that runs `script` with the named shell."""
    if shell == "bash":
        return ["bash", "--noprofile", "--norc", "-eo", "pipefail", "-c", script]
    if shell == "sh":
        return ["sh", "-e", "-c", script]
    if shell == "python":
        return ["python3", "-c", script]
    if "{0}" in shell:
        # Custom template, e.g. `shell: perl {0}`.
        script_path = scratch / "step-script"
        script_path.write_text(script, encoding="utf-8")
        return [part.replace("{0}", str(script_path)) for part in shlex.split(shell)]
    raise ValueError(f"unsupported shell {shell!r}")


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    try:
        if os.name == "posix":
            os.killpg(proc.pid, sig)
        else:
            proc.terminate()
    except (ProcessLookupError, PermissionError):
        pass


def _stop(proc: subprocess.Popen) -> str:
    """Terminate the process (and its children); return what it printed."""
    _signal_group(proc, signal.SIGTERM)
    try:
        out, _ = proc.communicate(timeout=KILL_GRACE)
    except subprocess.TimeoutExpired:
        _signal_group(proc, signal.SIGKILL if os.name == "posix" else signal.SIGTERM)
        out, _ = proc.communicate()
    return out or ""


class StepExecutor:
    """
    Runs one step at a time for the scheduler.

    Each call gets its own scratch directory (exported as RUNNER_TEMP) that is
    removed when the step ends, whatever the outcome. Results come back as
    StepResult; only cancellation of a running step propagates as an
    exception. After cancellation, steps guarded by always() or cancelled()
    still run.
    """

    def __init__(
        self,
        *,
        trigger: Trigger,
        repo_root: str | Path = ".",
        shell: str = "bash",
        output_tail: int = 4000,
    ):
        self.trigger = trigger
        self.repo_root = Path(repo_root).resolve()
        self.shell = shell
        self.output_tail = output_tail

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def should_run(
        self,
        step: Step,
        env: Mapping[str, str],
        axes: Mapping[str, Any],
        *,
        job_status: str = "success",
        workspace: Optional[Path] = None,
    ) -> bool:
        ctx = expression_context(self.trigger, env, axes, job_status=job_status, workspace=workspace)
        return expr.guard_passes(step.condition, ctx)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run(
        self,
        step: Step,
        env: Environment,
        axes: Mapping[str, Any],
        *,
        workspace: Path,
        job_status: str = "success",
        cancel: Optional[CancellationToken] = None,
        timeout: Optional[float] = None,
    ) -> StepResult:
        name = step.display_name

        if cancel is not None and cancel.is_set():
            job_status = "cancelled"
            # A cleanup step that runs after cancellation is not interrupted by it.
            cancel = None

        if not self.should_run(step, env, axes, job_status=job_status, workspace=workspace):
            reason = _SKIP_REASONS.get(job_status, "previous step failed")
            return StepResult(step=name, status=StepStatus.SKIPPED, reason=reason)

        limit = timeout
        if step.timeout_minutes is not None:
            own = step.timeout_minutes * 60
            limit = own if limit is None else min(limit, own)

        started = time.monotonic()
        try:
            with tempfile.TemporaryDirectory(prefix="matrixci-step-") as scratch:
                step_env = env.merged({"RUNNER_TEMP": scratch})
                output = self._invoke(step, step_env, Path(workspace), Path(scratch), cancel, limit)
        except StepFailure as e:
            return StepResult(
                step=name,
                status=StepStatus.FAILED,
                exit_code=e.exit_code,
                output=self._tail(e.output),
                reason=str(e),
                duration=time.monotonic() - started,
            )
        except StepError as e:
            return StepResult(
                step=name,
                status=StepStatus.ERRORED,
                output=self._tail(e.output),
                reason=str(e),
                duration=time.monotonic() - started,
            )

        return StepResult(
            step=name,
            status=StepStatus.SUCCEEDED,
            exit_code=0,
            output=self._tail(output),
            duration=time.monotonic() - started,
        )

    def _tail(self, text: str) -> str:
        if self.output_tail and len(text) > self.output_tail:
            return text[-self.output_tail:]
        return text

    def _commands(self, step: Step, workspace: Path, scratch: Path) -> List[Tuple[List[str], bool]]:
        """[(argv, is_shell)] to run for `step`."""
        name = step.display_name
        if step.uses:
            handler = resolve_action(step.uses, step=name)
            ctx = ActionContext(step=name, workspace=workspace, repo_root=self.repo_root, trigger=self.trigger)
            return [(argv, False) for argv in handler(step.params, ctx)]

        shell = step.shell or self.shell
        try:
            return [(shell_command(shell, step.run or "", scratch), True)]
        except ValueError as e:
            raise StepError(step=name, message=str(e), hint="use bash, sh, python or a '<cmd> {0}' template") from e

    def _invoke(
        self,
        step: Step,
        env: Environment,
        workspace: Path,
        scratch: Path,
        cancel: Optional[CancellationToken],
        limit: Optional[float],
    ) -> str:
        name = step.display_name
        cwd = (workspace / (step.working_directory or ".")).resolve()
        if not cwd.is_dir():
            raise StepError(step=name, message=f"working directory not found: {cwd}")

        deadline = None if limit is None else time.monotonic() + limit
        outputs: List[str] = []
        for argv, is_shell in self._commands(step, workspace, scratch):
            tool = argv[0]
            if shutil.which(tool, path=env.get("PATH")) is None:
                raise StepError(step=name, message=f"'{tool}' is not available", hint=hint_for(tool))

            code, out = self._spawn(name, argv, cwd, env, cancel, deadline)
            outputs.append(out)
            joined = "".join(outputs)

            if is_shell and code in (SHELL_NOT_EXECUTABLE, SHELL_NOT_FOUND):
                raise StepError(
                    step=name,
                    message=f"command not found or not executable (exit={code})",
                    output=joined,
                )
            if code != 0:
                shown = (step.run or "").strip() if is_shell else shlex.join(argv)
                raise StepFailure(step=name, message=shown, exit_code=code, output=joined)
        return "".join(outputs)

    def _spawn(
        self,
        name: str,
        argv: List[str],
        cwd: Path,
        env: Environment,
        cancel: Optional[CancellationToken],
        deadline: Optional[float],
    ) -> Tuple[int, str]:
        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(cwd),
                env=env.to_dict(),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                start_new_session=os.name == "posix",
            )
        except (FileNotFoundError, PermissionError) as e:
            raise StepError(step=name, message=f"cannot execute '{argv[0]}': {e}", hint=hint_for(argv[0])) from e

        while True:
            try:
                out, _ = proc.communicate(timeout=POLL_INTERVAL)
                return proc.returncode, out or ""
            except subprocess.TimeoutExpired:
                pass

            if cancel is not None and cancel.is_set():
                _stop(proc)
                raise CancellationError(step=name, reason=cancel.reason)
            if deadline is not None and time.monotonic() >= deadline:
                out = _stop(proc)
                raise StepFailure(step=name, message="timed out", output=out)
