# step_workflows/docker.py
from __future__ import annotations

import subprocess
from string import Template
from typing import TYPE_CHECKING, Dict, List, Sequence

from ..errors import CIError
from ..model import Job, Step, StepCondition

if TYPE_CHECKING:
    from ..runner import JobContext


# ---------------------------------------------------------------------
# Docker step helper
# ---------------------------------------------------------------------

def docker_step(
    name: str,
    image: str,
    args: Sequence[str] | None = None,
    *,
    cmd: str | None = None,
    cwd: str | None = None,
    mount: str = "/src",
    workdir: str | None = None,
    volumes: List[str] | None = None,
    env: Dict[str, str] | None = None,
    pass_env: List[str] | None = None,
    user: str | None = None,
    network: str | None = None,
    stdout: str | None = None,
    pull: bool = False,
    id: str | None = None,
    run_on: StepCondition = StepCondition.ON_SUCCESS,
) -> Step:
    """
    Create a step that runs a container with the job workspace mounted.

    `args` go to the image's entrypoint (`${VAR}` is expanded from the job
    env); `cmd` instead runs through `sh -c`. Volumes starting with "./"
    are resolved against the workspace. `stdout` redirects the container's
    stdout into a workspace file.
    """
    if (args is None) == (cmd is None):
        raise ValueError(f"docker_step({name!r}) needs exactly one of args= or cmd=")
    return Step(
        name=name,
        run=cmd or "",
        cwd=cwd,
        id=id,
        kind="docker",
        run_on=run_on,
        data={
            "image": image,
            "args": list(args) if args is not None else None,
            "mount": mount,
            "workdir": workdir,
            "volumes": list(volumes or []),
            "env": dict(env or {}),
            "pass_env": list(pass_env or []),
            "user": user,
            "network": network,
            "stdout": stdout,
            "pull": pull,
        },
    )


# ---------------------------------------------------------------------
# Docker step execution
# ---------------------------------------------------------------------

def _check_docker_available(job: Job, step: Step) -> None:
    """Check if Docker is available, raise helpful error if not."""
    # Import here to avoid circular import
    from ..runner import TOOL_HINTS

    try:
        subprocess.run(
            ["docker", "--version"],
            capture_output=True,
            check=True,
        )
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        raise CIError(
            kind="docker_unavailable",
            job=job.name,
            step=step.name,
            message="Docker is not available",
            details={"hint": TOOL_HINTS["docker"]},
        ) from e


def build_command(step: Step, ctx: "JobContext") -> List[str]:
    data = step.data
    workspace = ctx.workspace.resolve()
    mount = data.get("mount") or "/src"
    env = ctx.process_env(step)

    cmd = ["docker", "run", "--rm"]
    cmd.extend(["-v", f"{workspace}:{mount}"])

    for vol in data.get("volumes") or []:
        if vol.startswith("./"):
            host, _, rest = vol.partition(":")
            host_path = (workspace / host).resolve()
            host_path.mkdir(parents=True, exist_ok=True)
            vol = f"{host_path}:{rest}"
        cmd.extend(["-v", vol])

    cmd.extend(["-w", data.get("workdir") or mount])

    for key, value in (data.get("env") or {}).items():
        cmd.extend(["-e", f"{key}={Template(value).safe_substitute(env)}"])
    # bare -e NAME: docker copies the value from its own env. A ${NAME}
    # reference in args is still expanded into argv.
    for key in data.get("pass_env") or []:
        cmd.extend(["-e", key])

    if data.get("user"):
        cmd.extend(["--user", data["user"]])
    if data.get("network"):
        cmd.extend(["--network", data["network"]])

    cmd.append(data["image"])
    if data.get("args") is not None:
        cmd.extend(Template(a).safe_substitute(env) for a in data["args"])
    else:
        cmd.extend(["sh", "-c", step.run])
    return cmd


def run_step(job: Job, step: Step, ctx: "JobContext") -> None:
    """Run a step inside a Docker container."""
    # Import here to avoid circular import
    from ..runner import run_process

    _check_docker_available(job, step)

    if step.data.get("pull"):
        run_process(job, step, ctx, ["docker", "pull", step.data["image"]])

    stdout = step.data.get("stdout")
    stdout_path = ctx.workspace / stdout if stdout else None
    run_process(job, step, ctx, build_command(step, ctx), stdout_path=stdout_path)
