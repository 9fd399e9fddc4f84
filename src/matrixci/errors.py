# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


class MatrixCIError(Exception):
    """Base class for every error raised by matrixci."""


@dataclass
class ConfigError(MatrixCIError):
    """
    The workflow description is malformed or inconsistent.

    Always raised before any job starts, so the CLI can report it and exit
    with status 2 without leaving half-run instances behind.
    """
    message: str
    source: Optional[str] = None
    details: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        head = f"{self.source}: {self.message}" if self.source else self.message
        if not self.details:
            return head
        return "\n".join([head, *(f"  {d}" for d in self.details)])


@dataclass
class StepFailure(MatrixCIError):
    """The step's command ran and reported failure."""
    step: str
    message: str
    exit_code: Optional[int] = None
    output: str = ""

    def __str__(self) -> str:
        if self.exit_code is None:
            return f"step '{self.step}' failed: {self.message}"
        return f"step '{self.step}' failed (exit={self.exit_code}): {self.message}"


@dataclass
class StepError(MatrixCIError):
    """
    The step could not be executed at all: missing tool, missing shell,
    unknown action, unreachable service. Reported as `errored`, not `failed`.
    """
    step: str
    message: str
    hint: Optional[str] = None
    output: str = ""

    def __str__(self) -> str:
        s = f"step '{self.step}' errored: {self.message}"
        if self.hint:
            s += f" (hint: {self.hint})"
        return s


@dataclass
class CancellationError(MatrixCIError):
    """The pipeline was cancelled while this step was in flight."""
    step: Optional[str] = None
    reason: str = "cancelled"

    def __str__(self) -> str:
        if self.step:
            return f"step '{self.step}' {self.reason}"
        return self.reason


# Install hints for tools that workflows commonly shell out to.
TOOL_HINTS = {
    "bash": "Install bash or set MATRIXCI_SHELL=sh.",
    "cargo": "Install Rust via rustup (https://rustup.rs) or fix PATH.",
    "rustup": "Install rustup (https://rustup.rs) or fix PATH.",
    "git": "Install Git or fix PATH.",
    "docker": "Install Docker and ensure the daemon is running.",
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "ruff": "Install ruff (e.g., pip install ruff).",
}


def hint_for(tool: str) -> str:
    return TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")
