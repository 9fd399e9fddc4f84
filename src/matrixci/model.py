# model.py
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, List, Mapping, Optional, Tuple

from .environment import Environment


def frozen_map(data: Optional[Mapping[str, Any]] = None) -> Mapping[str, Any]:
    """Read-only view over a private copy of `data`."""
    return MappingProxyType(dict(data or {}))


# ---------------------------------------------------------------------
# Load-time description (immutable)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Trigger:
    """The event that started the pipeline."""
    event: str
    ref: str | None = None
    sha: str | None = None


@dataclass(frozen=True)
class Step:
    """
    A single action inside a job: either a setup action (`uses`) with opaque
    parameters, or a shell command (`run`).
    """
    name: str | None = None
    run: str | None = None
    uses: str | None = None
    params: Mapping[str, str] = field(default_factory=frozen_map)
    env: Mapping[str, str] = field(default_factory=frozen_map)
    condition: str | None = None
    id: str | None = None
    working_directory: str | None = None
    shell: str | None = None
    timeout_minutes: float | None = None
    continue_on_error: bool = False

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        if self.uses:
            return self.uses
        first = (self.run or "").strip().splitlines()
        return first[0] if first else "<empty step>"


@dataclass(frozen=True)
class Matrix:
    """Ordered axes plus optional include/exclude entries."""
    axes: Tuple[Tuple[str, Tuple[Any, ...]], ...] = ()
    include: Tuple[Mapping[str, Any], ...] = ()
    exclude: Tuple[Mapping[str, Any], ...] = ()

    @property
    def axis_names(self) -> List[str]:
        return [name for name, _ in self.axes]

    @property
    def keys(self) -> set[str]:
        """Every key a matrix.<key> reference may legally use."""
        names = set(self.axis_names)
        for entry in self.include:
            names.update(entry)
        return names


@dataclass(frozen=True)
class Service:
    """A container started next to each instance of a job."""
    id: str
    image: str
    env: Mapping[str, str] = field(default_factory=frozen_map)
    ports: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Job:
    """A CI job declaration: ordered steps plus matrix, needs and runtime target."""
    id: str
    steps: Tuple[Step, ...]
    name: str | None = None
    runs_on: str = "ubuntu-latest"
    matrix: Optional[Matrix] = None
    needs: Tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=frozen_map)
    services: Tuple[Service, ...] = ()
    condition: str | None = None
    timeout_minutes: float | None = None


@dataclass(frozen=True)
class Workflow:
    name: str | None
    triggers: Tuple[str, ...]
    jobs: Tuple[Job, ...]
    env: Mapping[str, str] = field(default_factory=frozen_map)
    source: str | None = None

    def job(self, job_id: str) -> Job:
        for j in self.jobs:
            if j.id == job_id:
                return j
        raise KeyError(job_id)

    def triggered_by(self, event: str) -> bool:
        return event in self.triggers


# ---------------------------------------------------------------------
# Runtime state
# ---------------------------------------------------------------------

class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ERRORED = "errored"
    SKIPPED = "skipped"


class Verdict(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ERRORED = "errored"
    SKIPPED = "skipped"


class InstanceState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ERRORED = "errored"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self not in (InstanceState.PENDING, InstanceState.RUNNING)


_TRANSITIONS = {
    InstanceState.PENDING: {InstanceState.RUNNING, InstanceState.SKIPPED, InstanceState.ERRORED},
    InstanceState.RUNNING: {InstanceState.SUCCEEDED, InstanceState.FAILED, InstanceState.ERRORED},
}


@dataclass
class StepResult:
    step: str
    status: StepStatus
    exit_code: int | None = None
    output: str = ""
    reason: str | None = None
    duration: float = 0.0

    @property
    def blocking(self) -> bool:
        """Whether this result stops the rest of the job."""
        return self.status in (StepStatus.FAILED, StepStatus.ERRORED)


@dataclass(frozen=True)
class BoundStep:
    """A step with its expressions interpolated and its environment resolved."""
    step: Step
    env: Environment


@dataclass
class JobInstance:
    """
    One concrete execution of a Job for one matrix point.

    Created by the matrix expander, bound to its environment by the scheduler,
    and mutated only through `start()` / `finish()`.
    """
    job: Job
    axes: Mapping[str, Any] = field(default_factory=frozen_map)
    env: Environment = field(default_factory=Environment)
    steps: Tuple[BoundStep, ...] = ()
    display: str | None = None
    runs_on: str | None = None
    state: InstanceState = InstanceState.PENDING
    results: List[StepResult] = field(default_factory=list)
    reason: str | None = None
    started_at: float | None = None
    finished_at: float | None = None

    @property
    def id(self) -> str:
        if not self.axes:
            return self.job.id
        point = ",".join(f"{k}={v}" for k, v in self.axes.items())
        return f"{self.job.id}[{point}]"

    @property
    def display_name(self) -> str:
        if self.display:
            return self.display
        base = self.job.name or self.job.id
        if not self.axes:
            return base
        return f"{base} ({', '.join(str(v) for v in self.axes.values())})"

    @property
    def verdict(self) -> Verdict:
        if not self.state.terminal:
            raise RuntimeError(f"instance {self.id} has no verdict yet (state={self.state.value})")
        return Verdict(self.state.value)

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def _move(self, new: InstanceState) -> None:
        allowed = _TRANSITIONS.get(self.state, set())
        if new not in allowed:
            raise RuntimeError(f"illegal transition for {self.id}: {self.state.value} -> {new.value}")
        self.state = new

    def start(self) -> None:
        self._move(InstanceState.RUNNING)
        self.started_at = time.monotonic()

    def finish(self, state: InstanceState, reason: str | None = None) -> None:
        self._move(state)
        self.reason = reason
        self.finished_at = time.monotonic()


class CancellationToken:
    """Shared stop signal for every instance of one pipeline run."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason = "cancelled"

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)
