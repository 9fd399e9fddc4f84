# actions/__init__.py
"""
Handlers for `uses:` steps.

A handler turns the step's opaque `with:` parameters into the commands that
perform the action. The executor runs those commands in order, in the step's
working directory, with the step's environment.

    @register("owner/name")
    def my_action(params, ctx):
        return [["tool", "arg"]]
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Tuple

from ..errors import StepError
from ..model import Trigger


@dataclass(frozen=True)
class ActionContext:
    step: str
    workspace: Path
    repo_root: Path
    trigger: Trigger


Handler = Callable[[Mapping[str, str], ActionContext], List[List[str]]]

_HANDLERS: Dict[str, Handler] = {}


def register(*names: str) -> Callable[[Handler], Handler]:
    def deco(fn: Handler) -> Handler:
        for n in names:
            _HANDLERS[n.lower()] = fn
        return fn
    return deco


def split_ref(uses: str) -> Tuple[str, str | None]:
    """'actions/checkout@v2' -> ('actions/checkout', 'v2')"""
    name, _, version = uses.partition("@")
    return name.strip().lower(), (version.strip() or None)


def known_actions() -> List[str]:
    return sorted(_HANDLERS)


def resolve_action(uses: str, *, step: str) -> Handler:
    name, _version = split_ref(uses)
    handler = _HANDLERS.get(name)
    if handler is None:
        raise StepError(
            step=step,
            message=f"no handler for action '{uses}'",
            hint=f"supported actions: {', '.join(known_actions())}",
        )
    return handler


def flag(value: str | None) -> bool:
    return (value or "").strip().lower() in ("true", "1", "yes")


def split_list(value: str | None) -> List[str]:
    """'rustfmt, clippy' or 'rustfmt clippy' -> ['rustfmt', 'clippy']"""
    if not value:
        return []
    return [v for v in value.replace(",", " ").split() if v]


# Importing the modules registers their handlers.
from . import cargo, checkout, toolchain  # noqa: E402,F401
