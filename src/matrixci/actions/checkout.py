# actions/checkout.py
from __future__ import annotations

from typing import List, Mapping

from . import ActionContext, register


def _target_ref(params: Mapping[str, str], ctx: ActionContext) -> str:
    if params.get("ref"):
        return params["ref"]
    if ctx.trigger.sha:
        return ctx.trigger.sha
    if ctx.trigger.ref:
        # A fresh clone only knows the source's branches as origin/<name>.
        branch = ctx.trigger.ref
        if branch.startswith("refs/heads/"):
            branch = branch[len("refs/heads/"):]
        return f"origin/{branch}"
    return "HEAD"


@register("actions/checkout")
def checkout(params: Mapping[str, str], ctx: ActionContext) -> List[List[str]]:
    """
    Clone the repository under test into the instance workspace and detach
    at the triggering commit.

    The clone is taken from the local repository the pipeline was started
    in, so each instance builds from a pristine tree of committed files.
    """
    dest = (ctx.workspace / params.get("path", ".")).resolve()
    ref = _target_ref(params, ctx)
    return [
        ["git", "clone", "--quiet", "--no-checkout", str(ctx.repo_root), str(dest)],
        ["git", "-C", str(dest), "checkout", "--quiet", "--detach", ref],
    ]
