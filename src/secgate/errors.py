# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - per-job log files
      - debugging without full tracebacks
    """
    kind: str
    job: str
    step: str | None
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"job={self.job}"]
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class StepFailure(Exception):
    """A step exited non-zero, or a report check found a forbidden pattern."""
    job: str
    step: str
    cmd: str
    exit_code: int
    output: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


class WorkflowError(ValueError):
    """The workflow definition is invalid (raised at load time)."""


class InvalidTransition(RuntimeError):
    def __init__(self, job: str, current: str, new: str):
        super().__init__(f"Job '{job}' cannot move from {current} to {new}")
        self.job = job
        self.current = current
        self.new = new


class ArtifactNotFound(KeyError):
    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"Artifact not found: {self.name}"
