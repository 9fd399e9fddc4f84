# actions/toolchain.py
from __future__ import annotations

from typing import List, Mapping

from . import ActionContext, flag, register, split_list


@register("actions-rs/toolchain", "dtolnay/rust-toolchain")
def toolchain(params: Mapping[str, str], ctx: ActionContext) -> List[List[str]]:
    """Install a Rust toolchain with rustup, optionally pinning it for the workspace."""
    name = params.get("toolchain") or "stable"

    install = ["rustup", "toolchain", "install", name, "--profile", params.get("profile") or "minimal"]
    for component in split_list(params.get("components")):
        install += ["--component", component]
    for target in split_list(params.get("target") or params.get("targets")):
        install += ["--target", target]

    commands = [install]
    if flag(params.get("override")):
        commands.append(["rustup", "override", "set", name, "--path", str(ctx.workspace)])
    if flag(params.get("default")):
        commands.append(["rustup", "default", name])
    return commands
