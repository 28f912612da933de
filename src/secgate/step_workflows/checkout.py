# step_workflows/checkout.py
from __future__ import annotations

import shutil
from pathlib import Path
from typing import TYPE_CHECKING, List

from ..model import Job, Step

if TYPE_CHECKING:
    from ..runner import JobContext


def checkout(name: str = "Checkout", *, path: str | None = None) -> Step:
    """Copy the repository into the job workspace (optionally into a subdirectory)."""
    return Step(name=name, kind="checkout", data={"path": path} if path else {})


def run_step(job: Job, step: Step, ctx: "JobContext") -> None:
    src = ctx.run.repo_root
    dest = ctx.workspace / (step.data.get("path") or ".")
    ignored = set(ctx.run.ignore_paths)

    def _ignore(dirpath: str, names: List[str]) -> List[str]:
        base = Path(dirpath).resolve()
        return [n for n in names if (base / n) in ignored]

    shutil.copytree(src, dest, symlinks=True, ignore=_ignore, dirs_exist_ok=True)
    ctx.log(f"checked out {src} -> {dest}")
