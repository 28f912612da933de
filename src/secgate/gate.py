# gate.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, Iterable, List, Mapping

from .errors import CIError, StepFailure
from .model import Job, Status, Verdict
from .ui.console import get_console

if TYPE_CHECKING:
    from .runner import JobContext


@dataclass(frozen=True)
class GatePolicy:
    """
    Statuses that fail the gate. Only an explicit Failure counts by default:
    a Skipped or Cancelled scan passes the gate.
    """
    failing: FrozenSet[Status] = frozenset({Status.FAILURE})


DEFAULT_POLICY = GatePolicy()


@dataclass(frozen=True)
class GateVerdict:
    statuses: Dict[str, Status]
    failed: List[str] = field(default_factory=list)

    @property
    def verdict(self) -> Verdict:
        return Verdict.FAIL if self.failed else Verdict.PASS

    @property
    def passed(self) -> bool:
        return self.verdict is Verdict.PASS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verdict": self.verdict.value,
            "statuses": {k: v.value for k, v in self.statuses.items()},
            "failed": list(self.failed),
        }


def evaluate_gate(
    statuses: Mapping[str, Status],
    watched: Iterable[str],
    policy: GatePolicy = DEFAULT_POLICY,
) -> GateVerdict:
    """Reduce the watched jobs' terminal statuses to one verdict."""
    watched = list(watched)
    unknown = [name for name in watched if name not in statuses]
    if unknown:
        raise KeyError(f"No status for watched job(s): {unknown}")
    picked = {name: statuses[name] for name in watched}
    failed = [name for name, status in picked.items() if status in policy.failing]
    return GateVerdict(statuses=picked, failed=failed)


def run_step(job: Job, step, ctx: "JobContext") -> GateVerdict:
    """Evaluate the gate from the statuses the scheduler handed to this job."""
    watched = list(step.data.get("watch") or job.needs)
    policy = step.data.get("policy") or DEFAULT_POLICY

    try:
        result = evaluate_gate(ctx.needs, watched, policy)
    except KeyError as e:
        raise CIError(
            kind="gate_misconfigured",
            job=job.name,
            step=step.name,
            message="gate watches jobs that are not in needs",
            details={"error": str(e)},
        ) from e

    ctx.run.record_gate(job.name, result)
    get_console().print_gate(
        job.name,
        result.verdict.value,
        {k: v.value for k, v in result.statuses.items()},
        result.failed,
    )
    ctx.log(f"gate verdict: {result.verdict.value} failed={result.failed}")

    if not result.passed:
        raise StepFailure(
            job=job.name,
            step=step.name,
            cmd=f"gate({', '.join(watched)})",
            exit_code=1,
            output=f"Security checks failed in: {' '.join(result.failed)}",
        )
    return result
