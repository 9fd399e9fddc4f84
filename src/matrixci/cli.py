# cli.py
from __future__ import annotations

import signal
import sys
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Iterator, Optional

import click

from matrixci.config import DEFAULT_WORKFLOW_FILES, WORKFLOW_DIR, Settings
from matrixci.errors import ConfigError
from matrixci.loader import load_workflow
from matrixci.model import CancellationToken
from matrixci.pipeline import Pipeline, detect_trigger
from matrixci.ui.console import Console, get_console, set_console

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def find_workflow_files(root: Path = Path(".")) -> list[Path]:
    """
    Candidate workflow files: matrixci.yml and friends in `root`, otherwise
    the YAML files under .github/workflows/.
    """
    for name in DEFAULT_WORKFLOW_FILES:
        candidate = root / name
        if candidate.is_file():
            return [candidate]

    wf_dir = root / WORKFLOW_DIR
    if not wf_dir.is_dir():
        return []
    return sorted(p for p in wf_dir.iterdir() if p.suffix in (".yml", ".yaml") and p.is_file())


def discover_workflow(workflow_arg: Optional[Path]) -> Path:
    """
    Resolve the workflow file from the argument or by discovery.

    Raises:
        ConfigError: no workflow or more than one candidate
    """
    if workflow_arg is not None:
        if not workflow_arg.is_file():
            raise ConfigError(f"workflow file not found: {workflow_arg}")
        return workflow_arg

    files = find_workflow_files()
    if not files:
        raise ConfigError(
            "no workflow file found",
            details=["looked for:", *(f"  {n}" for n in DEFAULT_WORKFLOW_FILES), f"  {WORKFLOW_DIR}/*.yml"],
        )
    if len(files) > 1:
        raise ConfigError(
            "multiple workflow files found; pass one explicitly",
            details=[str(f) for f in files],
        )
    return files[0]


def _report_config_error(console: Console, e: ConfigError) -> None:
    console.print_error(
        "Invalid configuration",
        e.message if e.source is None else f"{e.source}: {e.message}",
        details=e.details or None,
    )


@contextmanager
def cancel_on_signals(token: CancellationToken, console: Console) -> Iterator[None]:
    """
    First SIGINT/SIGTERM cancels the run (running jobs are stopped and
    reported as errored); a second SIGINT aborts immediately.
    """

    def handler(signum, frame):
        if token.is_set():
            raise KeyboardInterrupt
        console.print_info(f"\nReceived signal {signum}, cancelling running jobs...")
        token.cancel(f"cancelled by signal {signum}")

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, handler)
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (full step output and stack traces)",
)
@click.pass_context
def cli(ctx, debug):
    """matrixci: run CI workflows (jobs, steps, matrices) locally."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("workflow", required=False, type=click.Path(dir_okay=False, path_type=Path))
@click.option("--job", "jobs", multiple=True, help="Run only this job (and the jobs it needs). Repeatable.")
@click.option("--dry-run", is_flag=True, default=False, help="Print the plan without running anything")
@click.option(
    "--event",
    type=click.Choice(["push", "pull_request"]),
    default="push",
    show_default=True,
    help="Trigger event to simulate",
)
@click.option("--ref", default=None, help="Git ref of the trigger (defaults to the current branch)")
@click.option("--sha", default=None, help="Commit to check out (defaults to HEAD)")
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Number of parallel job instances")
@click.option("--color/--no-color", default=None, help="Force colored output on or off")
@click.pass_context
def run(ctx, workflow, jobs, dry_run, event, ref, sha, workers, color):
    """Run a workflow; exit 0 on success, 1 on failure, 2 on configuration errors."""
    console = get_console()

    try:
        settings = Settings.from_env()
        if color is not None or settings.color is not None:
            console.color = color if color is not None else settings.color
        workflow_path = discover_workflow(workflow)
        wf = load_workflow(workflow_path)
        console.print_debug(f"Loaded {len(wf.jobs)} job(s) from {workflow_path}")

        if workers is not None:
            settings = replace(settings, workers=workers)

        trigger = detect_trigger(event, ref=ref, sha=sha)
        token = CancellationToken()
        pipeline = Pipeline(wf, trigger, repo_root=".", settings=settings, console=console, cancel=token)

        if dry_run:
            pipeline.dry_run(jobs)
            if not wf.triggered_by(event):
                console.print_not_triggered(pipeline.label, event, wf.triggers)
            sys.exit(EXIT_OK)

        with cancel_on_signals(token, console):
            result = pipeline.run(jobs)
        sys.exit(result.exit_code)

    except ConfigError as e:
        _report_config_error(console, e)
        sys.exit(EXIT_CONFIG)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)


@cli.command()
@click.argument("workflow", required=False, type=click.Path(dir_okay=False, path_type=Path))
def validate(workflow):
    """Load a workflow and expand its matrices without running anything."""
    console = get_console()
    try:
        workflow_path = discover_workflow(workflow)
        wf = load_workflow(workflow_path)
        trigger = detect_trigger(wf.triggers[0] if wf.triggers else "push")
        scheduler = Pipeline(wf, trigger, console=console).plan()
    except ConfigError as e:
        _report_config_error(console, e)
        sys.exit(EXIT_CONFIG)

    console.print_info(
        f"{workflow_path}: OK ({len(wf.jobs)} job(s), {len(scheduler.instances)} instance(s))"
    )


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
