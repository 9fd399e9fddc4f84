# schema.py
from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

Scalar = Union[str, int, float, bool]


def stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def env_map(value: Any) -> Dict[str, str]:
    """YAML env blocks may hold numbers and booleans; steps only see strings."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError("must be a mapping of NAME: value")
    return {str(k): stringify(v) for k, v in value.items()}


class _Spec(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


# -------------------- Steps --------------------

class StepSpec(_Spec):
    id: Optional[str] = None
    name: Optional[str] = None
    uses: Optional[str] = None
    run: Optional[str] = None
    with_: Dict[str, str] = Field(default_factory=dict, alias="with")
    env: Dict[str, str] = Field(default_factory=dict)
    if_: Optional[str] = Field(default=None, alias="if")
    working_directory: Optional[str] = Field(default=None, alias="working-directory")
    shell: Optional[str] = None
    timeout_minutes: Optional[float] = Field(default=None, alias="timeout-minutes", gt=0)
    continue_on_error: bool = Field(default=False, alias="continue-on-error")

    @field_validator("env", "with_", mode="before")
    @classmethod
    def coerce_env(cls, value: Any) -> Dict[str, str]:
        return env_map(value)

    @field_validator("if_", mode="before")
    @classmethod
    def coerce_guard(cls, value: Any) -> Optional[str]:
        return None if value is None else stringify(value)

    @model_validator(mode="after")
    def check_action(self) -> "StepSpec":
        if bool(self.uses) == bool(self.run):
            raise ValueError("a step needs exactly one of 'uses' or 'run'")
        if self.with_ and not self.uses:
            raise ValueError("'with' is only valid on 'uses' steps")
        return self


# -------------------- Jobs --------------------

class MatrixSpec(BaseModel):
    """Axis names map to value lists; `include` and `exclude` are reserved."""
    model_config = ConfigDict(extra="allow")

    include: List[Dict[str, Scalar]] = Field(default_factory=list)
    exclude: List[Dict[str, Scalar]] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_axes(self) -> "MatrixSpec":
        for name, values in (self.model_extra or {}).items():
            if not isinstance(values, list):
                raise ValueError(f"matrix axis '{name}' must be a list")
            for v in values:
                if not isinstance(v, (str, int, float, bool)):
                    raise ValueError(f"matrix axis '{name}' values must be scalars")
        return self

    def axes(self) -> List[Tuple[str, Tuple[Any, ...]]]:
        return [(name, tuple(values)) for name, values in (self.model_extra or {}).items()]


class StrategySpec(_Spec):
    matrix: MatrixSpec
    # Accepted so existing files load; sibling instances are always isolated.
    fail_fast: Optional[bool] = Field(default=None, alias="fail-fast")


class ServiceSpec(_Spec):
    image: str
    env: Dict[str, str] = Field(default_factory=dict)
    ports: List[str] = Field(default_factory=list)

    @field_validator("env", mode="before")
    @classmethod
    def coerce_env(cls, value: Any) -> Dict[str, str]:
        return env_map(value)

    @field_validator("ports", mode="before")
    @classmethod
    def coerce_ports(cls, value: Any) -> List[str]:
        return [stringify(p) for p in (value or [])]


class JobSpec(_Spec):
    name: Optional[str] = None
    runs_on: Union[str, List[str]] = Field(default="ubuntu-latest", alias="runs-on")
    needs: List[str] = Field(default_factory=list)
    if_: Optional[str] = Field(default=None, alias="if")
    env: Dict[str, str] = Field(default_factory=dict)
    strategy: Optional[StrategySpec] = None
    services: Dict[str, ServiceSpec] = Field(default_factory=dict)
    timeout_minutes: Optional[float] = Field(default=None, alias="timeout-minutes", gt=0)
    steps: List[StepSpec] = Field(min_length=1)

    @field_validator("env", mode="before")
    @classmethod
    def coerce_env(cls, value: Any) -> Dict[str, str]:
        return env_map(value)

    @field_validator("if_", mode="before")
    @classmethod
    def coerce_guard(cls, value: Any) -> Optional[str]:
        return None if value is None else stringify(value)

    @field_validator("needs", mode="before")
    @classmethod
    def coerce_needs(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value

    @property
    def target(self) -> str:
        return self.runs_on if isinstance(self.runs_on, str) else ",".join(self.runs_on)


# -------------------- Workflow --------------------

class WorkflowSpec(_Spec):
    name: Optional[str] = None
    on: List[str] = Field(default_factory=lambda: ["push", "pull_request"])
    env: Dict[str, str] = Field(default_factory=dict)
    jobs: Dict[str, JobSpec] = Field(min_length=1)

    @field_validator("env", mode="before")
    @classmethod
    def coerce_env(cls, value: Any) -> Dict[str, str]:
        return env_map(value)

    @field_validator("on", mode="before")
    @classmethod
    def coerce_triggers(cls, value: Any) -> List[str]:
        # `on: push`, `on: [push, pull_request]` or `on: {push: {...}}`
        if isinstance(value, str):
            return [value]
        if isinstance(value, dict):
            return [str(k) for k in value]
        return value
