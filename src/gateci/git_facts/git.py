# git.py
# Small wrapper around the Git CLI. Used to fill in trigger events
# (which branch are we on) when the caller does not say.

from __future__ import annotations

import subprocess
from typing import Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError on a non-zero exit and
    FileNotFoundError when git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def current_branch(cwd: Optional[str] = None) -> Optional[str]:
    """
    Return the checked-out branch name, or None on a detached HEAD.
    """
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return None if name == "HEAD" else name


def has_changes_since(ref: str, cwd: Optional[str] = None) -> bool:
    """
    True when HEAD differs from ``ref``. A scheduled run without
    ``always`` only fires when this is True.
    """
    return _git(["rev-parse", "HEAD"], cwd=cwd) != _git(["rev-parse", ref], cwd=cwd)
