# src/secgate/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from .gate import DEFAULT_POLICY, GatePolicy
from .model import Job, RunCondition, Step, StepCondition, Trigger, Workflow
from .step_workflows.cache import cache_hit, cache_miss


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    id: str | None = None,
    env: Optional[Dict[str, str]] = None,
    run_on: StepCondition = StepCondition.ON_SUCCESS,
    when=None,
    timeout: float | None = None,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        id=id,
        env=env or {},
        run_on=run_on,
        when=when,
        timeout=timeout,
    )


def always(step: Step) -> Step:
    """Run `step` even after an earlier step of the job failed."""
    return replace(step, run_on=StepCondition.ALWAYS)


def on_failure(step: Step) -> Step:
    """Run `step` only after an earlier step of the job failed."""
    return replace(step, run_on=StepCondition.ON_FAILURE)


# ---------------------------------------------------------------------
# Job helpers
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    label: str | None = None,
    condition: RunCondition = RunCondition.RUN_IF_ALL_SUCCEEDED,
    env: Optional[Dict[str, str]] = None,
    secrets: Optional[List[str]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(steps_list)
    steps_final.extend(steps)

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        label=label,
        condition=condition,
        env={k: str(v) for k, v in (env or {}).items()},
        secrets=list(secrets or []),
    )


def gate(
    name: str,
    watch: Iterable[str],
    *,
    label: str | None = None,
    policy: GatePolicy = DEFAULT_POLICY,
    step_name: str = "Check Previous Jobs Status",
) -> Job:
    """
    Aggregate job: waits for every watched job, always runs, and fails only
    if one of them ended in a status listed by `policy` (Failure by default).
    """
    watched = list(watch)
    if not watched:
        raise ValueError(f"gate({name!r}) must watch at least one job")
    return Job(
        name=name,
        label=label,
        needs=watched,
        condition=RunCondition.RUN_ALWAYS,
        steps=[Step(name=step_name, kind="gate", data={"watch": watched, "policy": policy})],
    )


# ---------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------

def on_push(*branches: str) -> Trigger:
    return Trigger("push", tuple(branches))


def on_pull_request(*branches: str) -> Trigger:
    return Trigger("pull_request", tuple(branches))


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(*jobs: Job, name: str = "workflow", on: Optional[List[Trigger]] = None) -> Workflow:
    """
    Workflow definition helper.

    Users can write:
        from secgate import wf, job, sh, on_push

        def workflow():
            return wf(
                job(...),
                job(...),
                name="pipeline",
                on=[on_push("main")],
            )

    Or define WORKFLOW = wf(...) / JOBS = [job(...), ...] directly.
    """
    return Workflow(name=name, jobs=list(jobs), triggers=list(on or []))


__all__ = [
    "sh",
    "always",
    "on_failure",
    "job",
    "gate",
    "on_push",
    "on_pull_request",
    "wf",
    "cache_hit",
    "cache_miss",
]
