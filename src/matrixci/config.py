# config.py
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .errors import ConfigError

DEFAULT_WORKFLOW_FILES = ("matrixci.yml", "matrixci.yaml", ".matrixci.yml", ".matrixci.yaml")
WORKFLOW_DIR = Path(".github") / "workflows"


def _int(environ: Mapping[str, str], name: str, default: Optional[int]) -> Optional[int]:
    raw = environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None
    if value < 0:
        raise ConfigError(f"{name} must not be negative, got {value}")
    return value


def _color(environ: Mapping[str, str]) -> Optional[bool]:
    if environ.get("NO_COLOR"):
        return False
    raw = environ.get("MATRIXCI_COLOR", "auto").strip().lower()
    if raw in ("", "auto"):
        return None
    if raw in ("always", "true", "1"):
        return True
    if raw in ("never", "false", "0"):
        return False
    raise ConfigError(f"MATRIXCI_COLOR must be always, never or auto, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    """Engine settings read from MATRIXCI_* variables; CLI flags override them."""
    workers: Optional[int] = None
    color: Optional[bool] = None
    workspace_root: Optional[Path] = None
    shell: str = "bash"
    output_tail: int = 4000

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        workers = _int(env, "MATRIXCI_WORKERS", None)
        if workers == 0:
            raise ConfigError("MATRIXCI_WORKERS must be at least 1")
        workspace = env.get("MATRIXCI_WORKSPACE_DIR", "").strip()
        return cls(
            workers=workers,
            color=_color(env),
            workspace_root=Path(workspace).expanduser() if workspace else None,
            shell=env.get("MATRIXCI_SHELL", "").strip() or "bash",
            output_tail=_int(env, "MATRIXCI_OUTPUT_TAIL", 4000),
        )
