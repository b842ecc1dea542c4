# git.py
# Small, focused wrapper around the Git CLI.
# All Git interactions live here so the rest of the codebase
# never needs to call subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Dict, Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Args:
        args: List of git arguments (e.g. ["status", "--porcelain"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError: git exited non-zero.
        FileNotFoundError: git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def repo_root(cwd: Optional[str] = None) -> Path:
    """Absolute path to the root of the current Git repository."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str] = None) -> str:
    """Full SHA of the current HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_branch(cwd: Optional[str] = None) -> str:
    """
    Current branch name, or the short SHA when HEAD is detached.
    """
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    if name == "HEAD":
        return _git(["rev-parse", "--short", "HEAD"], cwd=cwd)
    return name


def is_dirty(cwd: Optional[str] = None) -> bool:
    """True if the working tree has modified, staged or untracked files."""
    return _git(["status", "--porcelain"], cwd=cwd) != ""


def source_facts(cwd: Optional[str] = None) -> Dict[str, str]:
    """
    Branch/commit facts for predefined pipeline variables.

    Outside a git checkout (or without git installed) the values are "unknown".
    """
    try:
        branch = current_branch(cwd)
        sha = head_sha(cwd)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return {"branch": "unknown", "sha": "unknown"}
    return {"branch": branch, "sha": sha}
