# step_workflows/service.py
from __future__ import annotations

import socket
import subprocess
import urllib.error
import urllib.request
from typing import TYPE_CHECKING

from ..errors import StepFailure
from ..model import Job, Step

if TYPE_CHECKING:
    from ..runner import JobContext


# ---------------------------------------------------------------------
# Background service
# ---------------------------------------------------------------------

def background(name: str, cmd: str, *, settle: float = 60.0, cwd: str | None = None) -> Step:
    """Start `cmd` in the background for the rest of the job, then wait `settle` seconds."""
    return Step(name=name, run=cmd, cwd=cwd, kind="background", data={"settle": settle})


def run_background(job: Job, step: Step, ctx: "JobContext") -> None:
    # Import here to avoid circular import
    from ..runner import step_cwd

    log_path = ctx.log_path.with_name(f"{job.name}.{len(ctx.processes)}.service.log")
    with log_path.open("a", encoding="utf-8") as log:
        proc = subprocess.Popen(
            step.run,
            shell=True,
            cwd=str(step_cwd(job, step, ctx)),
            env=ctx.process_env(step),
            stdout=log,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
    ctx.processes.append(proc)
    ctx.log(f"started background pid={proc.pid}: {step.run} (output: {log_path.name})")

    # returns early on run abort
    ctx.run.abort.wait(float(step.data.get("settle", 0)))

    code = proc.poll()
    if code is not None and code != 0:
        raise StepFailure(
            job=job.name,
            step=step.name,
            cmd=step.run,
            exit_code=code,
            output=log_path.read_text(encoding="utf-8", errors="replace")[-4000:],
        )


# ---------------------------------------------------------------------
# HTTP readiness probe
# ---------------------------------------------------------------------

def http_probe(
    name: str,
    url: str,
    *,
    retries: int = 5,
    delay: float = 10.0,
    method: str = "HEAD",
    timeout: float = 10.0,
) -> Step:
    """Poll `url` until it answers: 1 + `retries` attempts, `delay` seconds apart."""
    return Step(
        name=name,
        kind="http-probe",
        data={"url": url, "retries": retries, "delay": delay, "method": method, "timeout": timeout},
    )


def probe_once(url: str, method: str = "HEAD", timeout: float = 10.0) -> int:
    """Return the HTTP status. Any HTTP answer (4xx/5xx included) means the service is up."""
    req = urllib.request.Request(url, method=method)
    try:
        with urllib.request.urlopen(req, timeout=timeout) as response:
            return response.status
    except urllib.error.HTTPError as e:
        return e.code


def run_probe(job: Job, step: Step, ctx: "JobContext") -> int:
    data = step.data
    attempts = int(data.get("retries", 5)) + 1
    last_error = ""
    for attempt in range(1, attempts + 1):
        try:
            status = probe_once(data["url"], data.get("method", "HEAD"), float(data.get("timeout", 10.0)))
            ctx.log(f"probe {data['url']}: HTTP {status} (attempt {attempt}/{attempts})")
            return status
        except (urllib.error.URLError, socket.timeout, ConnectionError) as e:
            last_error = str(getattr(e, "reason", e))
            ctx.log(f"probe {data['url']} failed (attempt {attempt}/{attempts}): {last_error}")
        if attempt < attempts and ctx.run.abort.wait(float(data.get("delay", 10.0))):
            break

    raise StepFailure(
        job=job.name,
        step=step.name,
        cmd=f"{data.get('method', 'HEAD')} {data['url']}",
        exit_code=7,
        output=f"service not reachable after {attempts} attempt(s): {last_error}",
    )
