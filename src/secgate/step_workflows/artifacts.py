# step_workflows/artifacts.py
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from ..artifacts import Artifact, collect_files
from ..errors import ArtifactNotFound, CIError, StepFailure
from ..model import Job, Step, StepCondition
from ..ui.console import get_console

if TYPE_CHECKING:
    from ..runner import JobContext

NO_FILES_POLICIES = ("warn", "error", "ignore")


def upload_artifact(
    name: str,
    *paths: str,
    if_no_files_found: str = "warn",
    step_name: str | None = None,
    run_on: StepCondition = StepCondition.ON_SUCCESS,
) -> Step:
    if if_no_files_found not in NO_FILES_POLICIES:
        raise ValueError(f"if_no_files_found must be one of {NO_FILES_POLICIES}")
    if not paths:
        raise ValueError(f"upload_artifact({name!r}) needs at least one path")
    return Step(
        name=step_name or f"Upload {name}",
        kind="upload-artifact",
        run_on=run_on,
        data={"name": name, "paths": list(paths), "if_no_files_found": if_no_files_found},
    )


def download_artifact(name: str, path: str = ".", *, step_name: str | None = None) -> Step:
    return Step(
        name=step_name or f"Download {name}",
        kind="download-artifact",
        data={"name": name, "path": path},
    )


def run_upload(job: Job, step: Step, ctx: "JobContext") -> Optional[Artifact]:
    data = step.data
    files = collect_files(data["paths"], ctx.workspace)
    if not files:
        message = f"No files were found with the provided path: {', '.join(data['paths'])}. No artifacts will be uploaded."
        policy = data.get("if_no_files_found", "warn")
        if policy == "error":
            raise StepFailure(job=job.name, step=step.name, cmd=f"upload {data['name']}", exit_code=1, output=message)
        if policy == "warn":
            get_console().print_warning(f"[{job.name}] {message}")
        ctx.log(message)
        return None

    artifact = ctx.run.artifacts.upload(job.name, data["name"], data["paths"], root=ctx.workspace)
    get_console().print_artifact_uploaded(job.name, artifact.name, len(artifact.files))
    ctx.log(f"uploaded artifact {artifact.name}: {list(artifact.files)}")
    return artifact


def run_download(job: Job, step: Step, ctx: "JobContext") -> None:
    data = step.data
    try:
        files = ctx.run.artifacts.download(data["name"], ctx.workspace / data.get("path", "."))
    except ArtifactNotFound as e:
        raise CIError(
            kind="artifact_not_found",
            job=job.name,
            step=step.name,
            message=str(e),
            details={"available": [a.name for a in ctx.run.artifacts.list()]},
        ) from e
    ctx.log(f"downloaded artifact {data['name']}: {len(files)} file(s)")
