# model.py
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from fnmatch import fnmatch
from typing import Any, Callable, Dict, List, Optional

from .errors import InvalidTransition


class Status(str, Enum):
    """Lifecycle state of a job inside one run."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = {Status.SUCCESS, Status.FAILURE, Status.SKIPPED, Status.CANCELLED}

_ALLOWED = {
    Status.PENDING: {Status.RUNNING, Status.SKIPPED, Status.CANCELLED},
    Status.RUNNING: {Status.SUCCESS, Status.FAILURE, Status.CANCELLED},
}


class RunCondition(str, Enum):
    """When a job starts, given the terminal statuses of its needs."""
    RUN_IF_ALL_SUCCEEDED = "success"
    RUN_ALWAYS = "always"
    RUN_IF_ANY_FAILED = "failure"


class StepCondition(str, Enum):
    """When a step runs, given whether an earlier step of the job failed."""
    ON_SUCCESS = "success"
    ALWAYS = "always"
    ON_FAILURE = "failure"


class Verdict(str, Enum):
    PASS = "pass"
    FAIL = "fail"


@dataclass(frozen=True)
class Step:
    """
    A single unit of work inside a CI job.

    `kind` selects the executor (see runner._step_kinds); `run` is the
    inline command for shell-like kinds and `data` carries the input
    parameters of every other kind.
    """
    name: str
    run: str = ""
    cwd: str | None = None
    id: str | None = None
    kind: str = "sh"
    data: Dict[str, Any] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    run_on: StepCondition = StepCondition.ON_SUCCESS
    # typed predicate over earlier step results, e.g. cache_hit("cache-docker")
    when: Optional[Callable[[Any], bool]] = None
    timeout: float | None = None


@dataclass
class Job:
    """
    A CI job: ordered steps + dependencies + the condition deciding whether it
    starts once every job in `needs` has reached a terminal status.
    """
    name: str
    steps: list[Step]
    needs: list[str] = field(default_factory=list)
    label: str | None = None
    condition: RunCondition = RunCondition.RUN_IF_ALL_SUCCEEDED
    env: Dict[str, str] = field(default_factory=dict)
    # names of secrets injected into this job's environment only
    secrets: list[str] = field(default_factory=list)

    @property
    def display_name(self) -> str:
        return self.label or self.name


@dataclass(frozen=True)
class Trigger:
    """Run the workflow for `event` ("push" / "pull_request") on matching branches."""
    event: str
    branches: tuple[str, ...] = ()

    def matches(self, event: str, branch: str | None) -> bool:
        if event != self.event:
            return False
        if not self.branches:
            return True
        if branch is None:
            return False
        return any(fnmatch(branch, pattern) for pattern in self.branches)


@dataclass
class Workflow:
    name: str
    jobs: List[Job]
    triggers: List[Trigger] = field(default_factory=list)

    def triggered_by(self, event: str, branch: str | None) -> bool:
        # no declared triggers: manual runs only, accept everything
        if not self.triggers:
            return True
        return any(t.matches(event, branch) for t in self.triggers)

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)


class JobState:
    """Thread-safe status holder; a terminal status is set exactly once."""

    def __init__(self, name: str):
        self.name = name
        self._status = Status.PENDING
        self._lock = threading.Lock()

    @property
    def status(self) -> Status:
        return self._status

    def transition(self, new: Status) -> None:
        with self._lock:
            if new not in _ALLOWED.get(self._status, set()):
                raise InvalidTransition(self.name, self._status.value, new.value)
            self._status = new
