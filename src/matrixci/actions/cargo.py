# actions/cargo.py
from __future__ import annotations

import shlex
from typing import List, Mapping

from ..errors import StepError
from . import ActionContext, flag, register


@register("actions-rs/cargo")
def cargo(params: Mapping[str, str], ctx: ActionContext) -> List[List[str]]:
    """`cargo [+toolchain] <command> <args>`; `use-cross: true` swaps in cross."""
    command = (params.get("command") or "").strip()
    if not command:
        raise StepError(step=ctx.step, message="actions-rs/cargo requires a 'command' parameter")

    cmd = ["cross" if flag(params.get("use-cross")) else "cargo"]
    if params.get("toolchain"):
        cmd.append(f"+{params['toolchain']}")
    cmd.append(command)
    cmd += shlex.split(params.get("args") or "")
    return [cmd]
