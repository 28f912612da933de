# dag.py
from __future__ import annotations

import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from .errors import WorkflowError
from .model import Job, JobState, RunCondition, Status
from .ui.console import get_console

RunFn = Callable[[Job, Dict[str, Status]], Status]


def build_dag(jobs: List[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs: iterable[str] (names of jobs that must finish BEFORE this job)
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise WorkflowError(f"Duplicate job names found: {dupes}")

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in name_set}
    indeg: Dict[str, int] = {n: 0 for n in name_set}

    for job in jobs:
        for need in job.needs or []:
            if need not in name_set:
                raise WorkflowError(
                    f"Job '{job.name}' needs missing job '{need}'. "
                    f"Known jobs: {sorted(name_set)}"
                )
            # Edge need -> job.name (need must finish before job)
            if job.name not in adj[need]:
                adj[need].add(job.name)
                indeg[job.name] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Jobs of one stage have no edges between them.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted([n for n, d in indeg.items() if d == 0]))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = sorted([n for n, d in indeg.items() if d > 0])
        raise WorkflowError(f"DAG has a cycle. Stuck jobs: {remaining}")

    return levels


def validate_workflow(jobs: List[Job]) -> List[List[str]]:
    """
    Load-time checks: unique names, known needs, no cycles, unique step ids,
    at least one step per job. Returns the stage plan.
    """
    for job in jobs:
        if not job.steps:
            raise WorkflowError(f"Job '{job.name}' has no steps")
        seen: Set[str] = set()
        for step in job.steps:
            if step.id is None:
                continue
            if step.id in seen:
                raise WorkflowError(f"Job '{job.name}' has duplicate step id '{step.id}'")
            seen.add(step.id)

    adj, indeg = build_dag(jobs)
    return topo_levels(adj, indeg)


def entry_status(
    job: Job,
    needs: Mapping[str, Status],
    *,
    aborted: bool = False,
    failed_fast: bool = False,
) -> Optional[Status]:
    """
    Decide whether a job whose needs are all terminal may start.

    Returns None if it should run, otherwise the terminal status it takes
    without running (Skipped or Cancelled).
    """
    if aborted:
        return Status.CANCELLED
    if job.condition is RunCondition.RUN_ALWAYS:
        return None
    if failed_fast:
        return Status.CANCELLED
    if job.condition is RunCondition.RUN_IF_ANY_FAILED:
        if any(s is Status.FAILURE for s in needs.values()):
            return None
        return Status.SKIPPED
    if all(s is Status.SUCCESS for s in needs.values()):
        return None
    return Status.SKIPPED


def run_dag(
    jobs: Iterable[Job],
    run_fn: RunFn,
    *,
    max_workers: int | None = None,
    fail_fast: bool = False,
    abort: threading.Event | None = None,
) -> Dict[str, Status]:
    """
    Scheduler:

    - Validates the DAG (cycles, unknown needs) before anything starts.
    - Starts a job as soon as every job it needs is terminal.
    - Runs ready jobs concurrently on `max_workers` runner slots.
    - Calls run_fn(job, needs_statuses) for actual execution; an exception
      from run_fn counts as Failure.
    """
    console = get_console()
    jobs = list(jobs)
    by_name = {job.name: job for job in jobs}

    adj, indeg = build_dag(jobs)
    topo_levels(adj, indeg)

    indeg = dict(indeg)
    states = {name: JobState(name) for name in by_name}
    ready = deque(sorted(n for n, d in indeg.items() if d == 0))
    in_flight: Dict = {}
    failed = False

    def needs_of(job: Job) -> Dict[str, Status]:
        return {n: states[n].status for n in job.needs}

    def settle(name: str, status: Status) -> None:
        states[name].transition(status)
        for nxt in sorted(adj[name]):
            indeg[nxt] -= 1
            if indeg[nxt] == 0:
                ready.append(nxt)

    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        while ready or in_flight:
            while ready:
                name = ready.popleft()
                job = by_name[name]
                needs = needs_of(job)
                decision = entry_status(
                    job,
                    needs,
                    aborted=abort is not None and abort.is_set(),
                    failed_fast=fail_fast and failed,
                )
                if decision is not None:
                    console.print_job_skipped(name, decision.value)
                    settle(name, decision)
                    continue

                states[name].transition(Status.RUNNING)
                fut = pool.submit(run_fn, job, needs)
                in_flight[fut] = name

            if not in_flight:
                break

            # wait for one completion, then loop to schedule newly-ready jobs
            fut = next(as_completed(list(in_flight.keys())))
            name = in_flight.pop(fut)

            try:
                status = fut.result()
            except Exception as e:
                console.print_failure(name, str(e), is_job=True)
                status = Status.FAILURE

            if status not in (Status.SUCCESS, Status.CANCELLED):
                status = Status.FAILURE
            if status is Status.FAILURE:
                failed = True
            settle(name, status)

    return {name: state.status for name, state in states.items()}
