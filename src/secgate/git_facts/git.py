# git.py
# Git lookups for trigger matching (branch) and run provenance (HEAD sha).

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


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of HEAD, recorded in run summaries for provenance."""
    return _git(["rev-parse", "HEAD"], cwd)


def current_branch(cwd: Optional[str | Path] = None) -> Optional[str]:
    """
    Name of the checked-out branch, or None on a detached HEAD.

    Used to decide whether a push trigger matches when the CLI runs a
    workflow locally.
    """
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd)
    return None if name == "HEAD" else name


def branch_from_ref(ref: str) -> str:
    """`refs/heads/main` -> `main`; other refs are returned unchanged."""
    prefix = "refs/heads/"
    return ref[len(prefix):] if ref.startswith(prefix) else ref


def try_head_sha(cwd: Optional[str | Path] = None) -> Optional[str]:
    try:
        return head_sha(cwd)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None
