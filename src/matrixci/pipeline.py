# pipeline.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Mapping, Optional

from .actions import split_ref
from .aggregate import PipelineVerdict, aggregate
from .config import Settings
from .environment import Environment
from .errors import ConfigError
from .executor import StepExecutor
from .git_facts.git import describe_checkout
from .model import CancellationToken, Job, JobInstance, Trigger, Workflow
from .scheduler import JobScheduler
from .ui.console import Console, get_console


@dataclass
class PipelineResult:
    verdict: PipelineVerdict
    instances: List[JobInstance] = field(default_factory=list)
    triggered: bool = True

    @property
    def exit_code(self) -> int:
        return self.verdict.exit_code


def detect_trigger(
    event: str,
    *,
    ref: Optional[str] = None,
    sha: Optional[str] = None,
    cwd: Optional[str | Path] = None,
) -> Trigger:
    """Fill in ref/sha from the local checkout when the caller did not."""
    if ref is None or sha is None:
        _root, git_ref, git_sha, _dirty = describe_checkout(cwd)
        ref = ref if ref is not None else git_ref
        sha = sha if sha is not None else git_sha
    return Trigger(event=event, ref=ref, sha=sha)


def select_jobs(workflow: Workflow, names: Optional[Iterable[str]] = None) -> List[Job]:
    """
    The jobs to run: all of them, or the named ones plus everything they need.
    Declaration order is preserved.
    """
    names = list(names or [])
    if not names:
        return list(workflow.jobs)

    known = {j.id for j in workflow.jobs}
    unknown = [n for n in names if n not in known]
    if unknown:
        raise ConfigError(
            f"unknown job(s): {', '.join(unknown)}",
            source=workflow.source,
            details=[f"known jobs: {', '.join(j.id for j in workflow.jobs)}"],
        )

    wanted = set()
    stack = list(names)
    while stack:
        jid = stack.pop()
        if jid in wanted:
            continue
        wanted.add(jid)
        stack.extend(workflow.job(jid).needs)
    return [j for j in workflow.jobs if j.id in wanted]


def _uses_checkout(jobs: Iterable[Job]) -> bool:
    return any(s.uses and split_ref(s.uses)[0] == "actions/checkout" for j in jobs for s in j.steps)


class Pipeline:
    """Wires trigger, environment, scheduler and aggregator for one run."""

    def __init__(
        self,
        workflow: Workflow,
        trigger: Trigger,
        *,
        repo_root: str | Path = ".",
        settings: Optional[Settings] = None,
        console: Optional[Console] = None,
        cancel: Optional[CancellationToken] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.workflow = workflow
        self.trigger = trigger
        self.repo_root = Path(repo_root).resolve()
        self.settings = settings or Settings()
        self.console = console or get_console()
        self.cancel = cancel or CancellationToken()
        self.environ = os.environ if environ is None else environ

    @property
    def label(self) -> str:
        if self.workflow.name:
            return self.workflow.name
        return Path(self.workflow.source).name if self.workflow.source else "workflow"

    def plan(self, only: Optional[Iterable[str]] = None) -> JobScheduler:
        """
        Select, expand and bind every job instance.

        Raises ConfigError before anything has run.
        """
        jobs = select_jobs(self.workflow, only)
        executor = StepExecutor(
            trigger=self.trigger,
            repo_root=self.repo_root,
            shell=self.settings.shell,
            output_tail=self.settings.output_tail,
        )
        scheduler = JobScheduler(
            executor,
            base_env=Environment(self.environ),
            workflow_env=self.workflow.env,
            max_workers=self.settings.workers,
            cancel=self.cancel,
            console=self.console,
            workspace_root=self.settings.workspace_root,
        )
        scheduler.prepare(jobs)
        return scheduler

    def dry_run(self, only: Optional[Iterable[str]] = None) -> JobScheduler:
        scheduler = self.plan(only)
        self.console.print_plan(scheduler.stages(), scheduler.preview())
        return scheduler

    def run(self, only: Optional[Iterable[str]] = None) -> PipelineResult:
        # Configuration errors are reported whatever the event.
        scheduler = self.plan(only)
        if not self.workflow.triggered_by(self.trigger.event):
            self.console.print_not_triggered(self.label, self.trigger.event, self.workflow.triggers)
            return PipelineResult(verdict=aggregate({}), triggered=False)

        _root, _ref, _sha, dirty = describe_checkout(self.repo_root)
        if dirty and _uses_checkout(self.workflow.jobs):
            self.console.print_warning("uncommitted changes are not part of the checked-out tree")

        self.console.print_run_started(
            workflow=self.label,
            event=self.trigger.event,
            instance_count=len(scheduler.instances),
            ref=self.trigger.ref or self.trigger.sha,
        )
        results = scheduler.run_all()
        verdict = aggregate(results, neutral=scheduler.neutral)
        self.console.print_results(verdict, scheduler.instances)
        return PipelineResult(verdict=verdict, instances=list(scheduler.instances))
