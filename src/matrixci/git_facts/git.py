# git.py
# Small, focused wrapper around the Git CLI.
# The rest of the codebase never calls subprocess("git ...") directly,
# except for the commands the checkout action hands to the step executor.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Args:
        args: List of git arguments (e.g. ["rev-parse", "HEAD"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError: git exited non-zero
        FileNotFoundError: git is not installed
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """Absolute path of the repository containing `cwd`."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of HEAD; what the checkout action detaches at by default."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_ref(cwd: Optional[str | Path] = None) -> str:
    """
    The current branch as refs/heads/<name>, or "HEAD" when detached.
    """
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return "HEAD" if name == "HEAD" else f"refs/heads/{name}"


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    """True if the working tree has staged, unstaged or untracked changes."""
    return _git(["status", "--porcelain"], cwd=cwd) != ""


def describe_checkout(cwd: Optional[str | Path] = None) -> tuple[Optional[Path], Optional[str], Optional[str], bool]:
    """
    Best-effort (root, ref, sha, dirty) for `cwd`.

    Everything is None/False outside a git repository or without git.
    """
    try:
        root = repo_root(cwd)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None, None, None, False
    try:
        sha = head_sha(root)
        ref = current_ref(root)
    except subprocess.CalledProcessError:
        # Repository without commits yet.
        return root, None, None, is_dirty(root)
    return root, ref, sha, is_dirty(root)
