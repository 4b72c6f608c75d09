# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions on the host so the rest of the
# codebase never needs to call subprocess("git ...") directly.

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    This is the single low-level entry point for all Git operations in this file.

    Args:
        args: List of git arguments (e.g. ["status", "--porcelain"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.
    """
    # check_output raises CalledProcessError on a non-zero exit,
    # which is what callers want for CI tooling.
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.PIPE,
    )
    return out.strip()


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """Absolute path to the root of the Git repository containing cwd."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of the current HEAD commit. Used as the pipeline revision."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_branch(cwd: Optional[str | Path] = None) -> str:
    """
    Name of the checked-out branch.

    A detached HEAD (what most CI checkouts look like) has no branch name, so the
    CIRCLE_BRANCH environment variable is used when set, otherwise "HEAD".
    """
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    if name != "HEAD":
        return name
    return os.environ.get("CIRCLE_BRANCH", "HEAD")


def status_porcelain(cwd: Optional[str | Path] = None) -> str:
    """Machine-readable working tree status (empty when clean)."""
    return _git(["status", "--porcelain"], cwd=cwd)


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    """
    Check whether the working tree has uncommitted changes.

    This includes modified, staged and untracked (non-ignored) files.
    """
    return status_porcelain(cwd=cwd) != ""


def get_remote_url(remote: str = "origin", cwd: Optional[str | Path] = None) -> str:
    """URL of a remote (raises CalledProcessError when it does not exist)."""
    return _git(["remote", "get-url", remote], cwd=cwd)
