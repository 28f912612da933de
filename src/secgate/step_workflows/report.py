# step_workflows/report.py
from __future__ import annotations

from typing import TYPE_CHECKING

from ..errors import StepFailure
from ..model import Job, Step, Verdict
from ..reports import DEPENDENCY_CHECK_CRITICAL, ReportPredicate, describe, evaluate_report

if TYPE_CHECKING:
    from ..runner import JobContext


def check_report(
    name: str,
    path: str,
    predicate: ReportPredicate = DEPENDENCY_CHECK_CRITICAL,
    *,
    message: str | None = None,
    missing: str = "fail",
) -> Step:
    """
    Fail the job when the report at `path` matches `predicate`.
    A missing report fails the step unless missing="pass".
    """
    if missing not in ("fail", "pass"):
        raise ValueError("missing must be 'fail' or 'pass'")
    return Step(
        name=name,
        kind="check-report",
        data={"path": path, "predicate": predicate, "message": message, "missing": missing},
    )


def run_step(job: Job, step: Step, ctx: "JobContext") -> Verdict:
    data = step.data
    report = ctx.workspace / data["path"]
    predicate: ReportPredicate = data["predicate"]

    if not report.is_file():
        if data.get("missing") == "pass":
            ctx.log(f"report {data['path']} not found, passing")
            return Verdict.PASS
        raise StepFailure(
            job=job.name,
            step=step.name,
            cmd=f"check {data['path']}",
            exit_code=2,
            output=f"report not found: {data['path']}",
        )

    text = report.read_text(encoding="utf-8", errors="replace")
    verdict = evaluate_report(text, predicate)
    ctx.log(f"report {data['path']} [{describe(predicate)}]: {verdict.value}")
    if verdict is Verdict.FAIL:
        raise StepFailure(
            job=job.name,
            step=step.name,
            cmd=f"check {data['path']} ({describe(predicate)})",
            exit_code=1,
            output=data.get("message") or f"{data['path']} matched {describe(predicate)}",
        )
    return verdict
