from .aggregate import PipelineVerdict, aggregate
from .environment import Environment, resolve
from .errors import CancellationError, ConfigError, MatrixCIError, StepError, StepFailure
from .executor import StepExecutor
from .loader import load_workflow, parse_workflow
from .matrix import expand
from .model import (
    CancellationToken,
    InstanceState,
    Job,
    JobInstance,
    Step,
    StepResult,
    StepStatus,
    Trigger,
    Verdict,
    Workflow,
)
from .pipeline import Pipeline, PipelineResult
from .scheduler import JobScheduler

__all__ = [
    "aggregate",
    "expand",
    "load_workflow",
    "parse_workflow",
    "resolve",
    "CancellationError",
    "CancellationToken",
    "ConfigError",
    "Environment",
    "InstanceState",
    "Job",
    "JobInstance",
    "JobScheduler",
    "MatrixCIError",
    "Pipeline",
    "PipelineResult",
    "PipelineVerdict",
    "Step",
    "StepError",
    "StepExecutor",
    "StepFailure",
    "StepResult",
    "StepStatus",
    "Trigger",
    "Verdict",
    "Workflow",
]
