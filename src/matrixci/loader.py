# loader.py
from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, List, Optional

from pydantic import ValidationError
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from . import expr
from .errors import ConfigError
from .model import Job, Matrix, Service, Step, Workflow, frozen_map
from .schema import JobSpec, StepSpec, WorkflowSpec

# Contexts an expression may read from.
CONTEXTS = {"matrix", "env", "runner", "github", "job"}


# ----------------------------------------------------------------------
# Entry points
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> Workflow:
    """
    Load a workflow description from a YAML file.

    Raises:
      ConfigError: the file is missing, is not valid YAML, or describes an
        inconsistent workflow.
    """
    wf_path = Path(path).expanduser()
    if not wf_path.is_file():
        raise ConfigError(f"workflow file not found: {wf_path}")
    try:
        text = wf_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot read workflow file: {e}", source=str(wf_path)) from e
    return parse_workflow(text, source=str(wf_path))


def parse_workflow(text: str, *, source: Optional[str] = None) -> Workflow:
    try:
        data = YAML(typ="safe", pure=True).load(text)
    except YAMLError as e:
        raise ConfigError("invalid YAML", source=source, details=[str(e)]) from e

    if not isinstance(data, dict):
        raise ConfigError("workflow must be a mapping with a 'jobs' key", source=source)
    # YAML 1.1 readers turn a bare `on` key into True.
    if True in data and "on" not in data:
        data["on"] = data.pop(True)

    try:
        spec = WorkflowSpec.model_validate(data)
    except ValidationError as e:
        raise ConfigError("invalid workflow", source=source, details=_describe(e)) from e

    return build_workflow(spec, source=source)


def _describe(err: ValidationError) -> List[str]:
    lines = []
    for item in err.errors():
        loc = ".".join(str(p) for p in item["loc"]) or "<root>"
        lines.append(f"{loc}: {item['msg']}")
    return lines


# ----------------------------------------------------------------------
# Spec -> model
# ----------------------------------------------------------------------

def build_workflow(spec: WorkflowSpec, *, source: Optional[str] = None) -> Workflow:
    jobs = tuple(_build_job(job_id, js, source) for job_id, js in spec.jobs.items())

    known = {j.id for j in jobs}
    for j in jobs:
        for need in j.needs:
            if need not in known:
                raise ConfigError(
                    f"job '{j.id}' needs unknown job '{need}'",
                    source=source,
                    details=[f"known jobs: {sorted(known)}"],
                )
            if need == j.id:
                raise ConfigError(f"job '{j.id}' needs itself", source=source)

    for key, value in spec.env.items():
        _check_text(value, f"env.{key}", None, source)

    return Workflow(
        name=spec.name,
        triggers=tuple(spec.on),
        jobs=jobs,
        env=frozen_map(spec.env),
        source=source,
    )


def _build_job(job_id: str, spec: JobSpec, source: Optional[str]) -> Job:
    matrix = None
    if spec.strategy is not None:
        m = spec.strategy.matrix
        matrix = Matrix(
            axes=tuple(m.axes()),
            include=tuple(frozen_map(e) for e in m.include),
            exclude=tuple(frozen_map(e) for e in m.exclude),
        )

    steps = tuple(_build_step(s) for s in spec.steps)
    ids = [s.id for s in steps if s.id]
    if len(set(ids)) != len(ids):
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        raise ConfigError(f"job '{job_id}': duplicate step ids {dupes}", source=source)

    job = Job(
        id=job_id,
        name=spec.name,
        steps=steps,
        runs_on=spec.target,
        matrix=matrix,
        needs=tuple(dict.fromkeys(spec.needs)),
        env=frozen_map(spec.env),
        services=tuple(
            Service(id=sid, image=s.image, env=frozen_map(s.env), ports=tuple(s.ports))
            for sid, s in spec.services.items()
        ),
        condition=spec.if_,
        timeout_minutes=spec.timeout_minutes,
    )
    _check_expressions(job, source)
    return job


def _build_step(spec: StepSpec) -> Step:
    return Step(
        name=spec.name,
        run=spec.run,
        uses=spec.uses,
        params=frozen_map(spec.with_),
        env=frozen_map(spec.env),
        condition=spec.if_,
        id=spec.id,
        working_directory=spec.working_directory,
        shell=spec.shell,
        timeout_minutes=spec.timeout_minutes,
        continue_on_error=spec.continue_on_error,
    )


# ----------------------------------------------------------------------
# Expression validation
# ----------------------------------------------------------------------

def _check_refs(nodes: Iterable[expr.Expr], where: str, job: Optional[Job], source: Optional[str]) -> None:
    matrix_keys = job.matrix.keys if job is not None and job.matrix is not None else set()
    for node in nodes:
        for n in node.walk():
            if isinstance(n, expr.NameExpr) and n.name.lower() not in CONTEXTS:
                raise ConfigError(f"{where}: unknown context '{n.name}'", source=source)
        for path in node.references():
            if path[0] != "matrix":
                continue
            if job is None or job.matrix is None:
                raise ConfigError(f"{where}: 'matrix.{path[1]}' used outside a matrix job", source=source)
            if path[1] not in matrix_keys:
                raise ConfigError(
                    f"{where}: matrix has no axis '{path[1]}'",
                    source=source,
                    details=[f"axes: {sorted(matrix_keys)}"],
                )


def _check_text(text: Any, where: str, job: Optional[Job], source: Optional[str]) -> None:
    if isinstance(text, str) and "${{" in text:
        try:
            nodes = expr.placeholders(text)
        except ConfigError as e:
            raise ConfigError(f"{where}: {e.message}", source=source) from e
        _check_refs(nodes, where, job, source)


def _check_guard(condition: Optional[str], where: str, job: Job, source: Optional[str]) -> None:
    if condition is None:
        return
    try:
        node = expr.parse(condition)
    except ConfigError as e:
        raise ConfigError(f"{where}: {e.message}", source=source) from e
    _check_refs([node], where, job, source)


def _check_expressions(job: Job, source: Optional[str]) -> None:
    prefix = f"jobs.{job.id}"
    _check_guard(job.condition, f"{prefix}.if", job, source)
    _check_text(job.name, f"{prefix}.name", job, source)
    _check_text(job.runs_on, f"{prefix}.runs-on", job, source)
    for key, value in job.env.items():
        _check_text(value, f"{prefix}.env.{key}", job, source)

    for idx, step in enumerate(job.steps):
        where = f"{prefix}.steps[{idx}]"
        _check_guard(step.condition, f"{where}.if", job, source)
        _check_text(step.name, f"{where}.name", job, source)
        _check_text(step.run, f"{where}.run", job, source)
        _check_text(step.working_directory, f"{where}.working-directory", job, source)
        for key, value in step.params.items():
            _check_text(value, f"{where}.with.{key}", job, source)
        for key, value in step.env.items():
            _check_text(value, f"{where}.env.{key}", job, source)
