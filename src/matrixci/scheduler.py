# scheduler.py
from __future__ import annotations

import os
import re
import tempfile
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Deque, Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

from . import expr
from .dag import build_dag, topo_levels
from .environment import Environment
from .errors import CancellationError, ConfigError, MatrixCIError
from .executor import StepExecutor, expression_context, runner_os
from .matrix import expand
from .model import (
    BoundStep,
    CancellationToken,
    InstanceState,
    Job,
    JobInstance,
    StepResult,
    StepStatus,
    Verdict,
    frozen_map,
)
from .services import provision
from .ui.console import Console, get_console

_TARGET_OS = (("ubuntu", "Linux"), ("linux", "Linux"), ("macos", "macOS"), ("windows", "Windows"))


def target_os(label: str) -> Optional[str]:
    """'ubuntu-latest' -> 'Linux'; None for labels we cannot place."""
    lowered = label.lower()
    for prefix, family in _TARGET_OS:
        if lowered.startswith(prefix):
            return family
    return None


class JobScheduler:
    """
    Owns every job instance of one pipeline run.

    `prepare()` expands matrices and binds each instance to its environment
    before anything runs, so configuration errors surface first. `run_all()`
    then runs instances on a thread pool, releasing a job's dependents once
    all of its instances are terminal. Instances never share an environment,
    a workspace or service containers, and one instance's failure never stops
    a sibling.
    """

    def __init__(
        self,
        executor: StepExecutor,
        *,
        base_env: Optional[Environment] = None,
        workflow_env: Optional[Mapping[str, str]] = None,
        max_workers: Optional[int] = None,
        cancel: Optional[CancellationToken] = None,
        console: Optional[Console] = None,
        workspace_root: Optional[Path] = None,
    ):
        self.executor = executor
        self.base_env = base_env if base_env is not None else Environment(os.environ)
        self.workflow_env = dict(workflow_env or {})
        if max_workers is None:
            c = os.cpu_count() or 2
            max_workers = max(1, c - 1)
        self.max_workers = max_workers
        self.cancel = cancel or CancellationToken()
        self.console = console or get_console()
        self.workspace_root = workspace_root

        self.instances: List[JobInstance] = []
        # Skipped instances that do not count against the pipeline.
        self.neutral: Set[str] = set()
        self._order: List[str] = []
        self._adj: Dict[str, set] = {}
        self._indeg: Dict[str, int] = {}
        self._levels: List[List[str]] = []

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def prepare(self, jobs: Iterable[Job]) -> List[JobInstance]:
        jobs = list(jobs)
        self._adj, self._indeg = build_dag(jobs)
        self._order = [j.id for j in jobs]
        self._levels = topo_levels(self._adj, self._indeg, order=self._order)
        self.neutral = set()

        instances: List[JobInstance] = []
        for job in jobs:
            for inst in expand(job):
                instances.append(self._bind(inst))
        self.instances = instances
        return instances

    def stages(self) -> List[List[JobInstance]]:
        by_job = self._by_job()
        return [[inst for jid in level for inst in by_job[jid]] for level in self._levels]

    def _by_job(self) -> Dict[str, List[JobInstance]]:
        by_job: Dict[str, List[JobInstance]] = {jid: [] for jid in self._order}
        for inst in self.instances:
            by_job[inst.job.id].append(inst)
        return by_job

    def _runner_vars(self, inst: JobInstance) -> Dict[str, str]:
        trigger = self.executor.trigger
        return {
            "CI": "true",
            "MATRIXCI": "true",
            "CI_EVENT_NAME": trigger.event,
            "CI_REF": trigger.ref or "",
            "CI_SHA": trigger.sha or "",
            "CI_JOB": inst.job.id,
            "RUNNER_OS": runner_os(),
        }

    def _bind(self, inst: JobInstance) -> JobInstance:
        """Interpolate `${{ }}` and resolve the layered environment for one instance."""
        job = inst.job
        trigger = self.executor.trigger
        where = f"jobs.{job.id}"

        def render(text: Optional[str], env: Environment) -> Optional[str]:
            if text is None:
                return None
            return expr.interpolate(text, expression_context(trigger, env, inst.axes))

        try:
            # process < runner facts < workflow env < job env < step env
            job_env = self.base_env.merged(self._runner_vars(inst))
            job_env = job_env.layer(
                {k: render(v, job_env) for k, v in self.workflow_env.items()},
                source="env",
            )
            job_env = job_env.layer({k: render(v, job_env) for k, v in job.env.items()}, source=f"{where}.env")

            bound: List[BoundStep] = []
            for idx, step in enumerate(job.steps):
                step_env = job_env.layer(
                    {k: render(v, job_env) for k, v in step.env.items()},
                    source=f"{where}.steps[{idx}].env",
                )
                resolved = replace(
                    step,
                    name=render(step.name, step_env),
                    run=render(step.run, step_env),
                    working_directory=render(step.working_directory, step_env),
                    params=frozen_map({k: render(v, step_env) for k, v in step.params.items()}),
                )
                bound.append(BoundStep(step=resolved, env=step_env))

            display = render(job.name, job_env) if job.name and "${{" in job.name else None
            runs_on = render(job.runs_on, job_env)
        except ConfigError as e:
            if e.source is None:
                e.source = where
            raise

        return replace(inst, env=job_env, steps=tuple(bound), display=display, runs_on=runs_on)

    def preview(self) -> Dict[Tuple[str, int], str]:
        """(instance id, step index) -> reason, for steps a guard would skip."""
        skipped: Dict[Tuple[str, int], str] = {}
        for inst in self.instances:
            for idx, bound in enumerate(inst.steps):
                if not self.executor.should_run(bound.step, bound.env, inst.axes):
                    skipped[(inst.id, idx)] = "condition is false"
        return skipped

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run_all(self, jobs: Optional[Iterable[Job]] = None) -> Dict[str, Verdict]:
        if jobs is not None:
            self.prepare(jobs)

        by_job = self._by_job()
        pending = {jid: len(insts) for jid, insts in by_job.items()}
        indeg = dict(self._indeg)
        ready: Deque[str] = deque(jid for jid in self._order if indeg[jid] == 0)
        in_flight: Dict[Future, JobInstance] = {}

        def settle(inst: JobInstance) -> None:
            jid = inst.job.id
            pending[jid] -= 1
            if pending[jid] == 0:
                for child in sorted(self._adj[jid], key=self._order.index):
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        ready.append(child)

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            while ready or in_flight:
                # schedule every instance of every ready job
                while ready:
                    jid = ready.popleft()
                    for inst in by_job[jid]:
                        if self._admit(inst, by_job):
                            in_flight[pool.submit(self._run_instance, inst)] = inst
                        else:
                            settle(inst)

                if not in_flight:
                    break

                # wait for one completion, then loop to schedule newly-ready jobs
                fut = next(as_completed(list(in_flight.keys())))
                inst = in_flight.pop(fut)
                try:
                    fut.result()
                except Exception as e:
                    self.console.print_exception(e)
                    if not inst.state.terminal:
                        inst.finish(InstanceState.ERRORED, f"internal error: {e}")
                settle(inst)

        return {inst.id: inst.verdict for inst in self.instances}

    def _needs_status(self, job: Job, by_job: Dict[str, List[JobInstance]]) -> str:
        """success, failure or cancelled; "skipped" when a need was skipped without failing."""
        if self.cancel.is_set():
            return "cancelled"
        skipped = False
        for need in job.needs:
            for i in by_job[need]:
                if i.state == InstanceState.SKIPPED and i.id in self.neutral:
                    skipped = True
                elif i.state != InstanceState.SUCCEEDED:
                    return "failure"
        return "skipped" if skipped else "success"

    def _skip(self, inst: JobInstance, reason: str, *, neutral: bool) -> None:
        inst.finish(InstanceState.SKIPPED, reason)
        if neutral:
            self.neutral.add(inst.id)
        self.console.print_job_finished(inst)

    def _admit(self, inst: JobInstance, by_job: Dict[str, List[JobInstance]]) -> bool:
        """Decide whether `inst` runs; finalize it here if it does not."""
        if self.cancel.is_set():
            inst.finish(InstanceState.ERRORED, f"{self.cancel.reason} before start")
            self.console.print_job_finished(inst)
            return False

        status = self._needs_status(inst.job, by_job)
        condition = inst.job.condition
        try:
            if status == "skipped" and not (condition and expr.parse(condition).uses_status_function()):
                self._skip(inst, "a needed job was skipped", neutral=True)
                return False
            ctx = expression_context(
                self.executor.trigger,
                inst.env,
                inst.axes,
                job_status="success" if status == "skipped" else status,
            )
            passed = expr.guard_passes(condition, ctx)
        except MatrixCIError as e:
            inst.finish(InstanceState.ERRORED, f"if: {e}")
            self.console.print_job_finished(inst)
            return False

        if passed:
            return True
        if status in ("success", "skipped"):
            self._skip(inst, "condition is false", neutral=True)
        else:
            self._skip(inst, "a needed job did not succeed", neutral=False)
        return False

    @contextmanager
    def _workspace(self, inst: JobInstance) -> Iterator[Path]:
        slug = re.sub(r"[^A-Za-z0-9]+", "-", inst.id).strip("-")
        if self.workspace_root is not None:
            Path(self.workspace_root).mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(
            prefix=f"matrixci-{slug}-",
            dir=self.workspace_root,
            ignore_cleanup_errors=True,
        ) as ws:
            yield Path(ws)

    def _run_instance(self, inst: JobInstance) -> None:
        if self.cancel.is_set():
            inst.finish(InstanceState.ERRORED, f"{self.cancel.reason} before start")
            self.console.print_job_finished(inst)
            return

        inst.start()
        self.console.print_job_start(inst)
        target = inst.runs_on or inst.job.runs_on
        family = target_os(target)
        if family is not None and family != runner_os():
            self.console.print_warning(f"[{inst.id}] targets '{target}' but is running on {runner_os()}")

        try:
            state, reason = self._execute(inst)
        except CancellationError:
            state, reason = InstanceState.ERRORED, self.cancel.reason
        except MatrixCIError as e:
            state, reason = InstanceState.ERRORED, str(e)
        except Exception as e:
            self.console.print_exception(e)
            state, reason = InstanceState.ERRORED, f"internal error: {e}"

        inst.finish(state, reason)
        self.console.print_job_finished(inst)

    def _execute(self, inst: JobInstance) -> Tuple[InstanceState, Optional[str]]:
        job = inst.job
        deadline = None if job.timeout_minutes is None else time.monotonic() + job.timeout_minutes * 60
        outcome: Tuple[InstanceState, Optional[str]] = (InstanceState.SUCCEEDED, None)
        status = "success"

        with self._workspace(inst) as ws, provision(job.services, inst.id) as service_env:
            runtime = {"CI_WORKSPACE": str(ws), **service_env}
            for bound in inst.steps:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return InstanceState.FAILED, f"job timed out after {job.timeout_minutes:g} minute(s)"

                # Once cancelled, only always()/cancelled() steps still run.
                if self.cancel.is_set() and status != "cancelled":
                    status = "cancelled"
                    outcome = (InstanceState.ERRORED, self.cancel.reason)

                try:
                    result = self.executor.run(
                        bound.step,
                        bound.env.merged(runtime),
                        inst.axes,
                        workspace=ws,
                        job_status=status,
                        cancel=self.cancel,
                        timeout=remaining,
                    )
                except CancellationError as e:
                    result = StepResult(step=bound.step.display_name, status=StepStatus.ERRORED, reason=str(e))
                    status = "cancelled"
                    outcome = (InstanceState.ERRORED, self.cancel.reason)
                inst.results.append(result)
                self.console.print_step(inst, result)

                if result.blocking and not bound.step.continue_on_error and status == "success":
                    status = "failure"
                    state = InstanceState.FAILED if result.status == StepStatus.FAILED else InstanceState.ERRORED
                    outcome = (state, f"step '{result.step}' {result.status.value}")

        return outcome
