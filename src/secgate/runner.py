# runner.py
from __future__ import annotations

import json
import os
import runpy
import shlex
import signal
import subprocess
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .artifacts import ArtifactStore
from .cache import CacheResult, CacheStore
from .config import SECRET_PREFIX, Secrets, Settings
from .dag import run_dag, validate_workflow
from .errors import CIError, StepFailure, WorkflowError
from .gate import GateVerdict
from .git_facts.git import try_head_sha
from .model import Job, Status, Step, StepCondition, Workflow
from .ui.console import get_console

TOOL_HINTS = {
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "docker": "Install Docker and ensure the daemon is running.",
    "curl": "Install curl or use an http_probe step instead.",
    "git": "Install Git or fix PATH.",
    "python3": "Install Python 3 or fix PATH (python3).",
}

OUTPUT_TAIL = 4000


# ----------------------------------------------------------------------
# Workflow loading (local file)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> Workflow:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> Workflow | List[Job]
      - WORKFLOW = Workflow(...)
      - JOBS = [Job, ...]

    The job graph is validated here, so cycles and unknown needs fail at
    load time.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise WorkflowError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"secgate_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    loaded: Any = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        loaded = globals_dict["workflow"]()
    elif "WORKFLOW" in globals_dict:
        loaded = globals_dict["WORKFLOW"]
    elif "JOBS" in globals_dict:
        loaded = globals_dict["JOBS"]

    if isinstance(loaded, list) and all(isinstance(j, Job) for j in loaded):
        loaded = Workflow(name=wf_path.stem, jobs=loaded)
    if not isinstance(loaded, Workflow):
        raise WorkflowError(
            "Workflow must return/define a Workflow or a List[Job]. "
            "Define workflow() -> Workflow, WORKFLOW = wf(...) or JOBS = [Job, ...]."
        )

    validate_workflow(loaded.jobs)
    return loaded


# ----------------------------------------------------------------------
# Run + job contexts
# ----------------------------------------------------------------------

def new_run_id() -> str:
    return f"{time.strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:6]}"


@dataclass
class RunContext:
    """State shared by every job of one run. Only the stores are written concurrently."""
    run_id: str
    run_dir: Path
    repo_root: Path
    cache: CacheStore
    artifacts: ArtifactStore
    secrets: Secrets = field(default_factory=Secrets)
    abort: threading.Event = field(default_factory=threading.Event)
    ignore_paths: tuple[Path, ...] = ()
    gates: Dict[str, GateVerdict] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record_gate(self, job: str, verdict: GateVerdict) -> None:
        with self._lock:
            self.gates[job] = verdict


class JobContext:
    """
    Everything one job sees while it runs: its own workspace, its env (which
    steps may extend through $SECGATE_ENV), results of earlier steps and the
    terminal statuses of the jobs it needs.
    """

    def __init__(self, job: Job, run: RunContext, needs: Mapping[str, Status] | None = None):
        self.job = job
        self.run = run
        self.needs: Dict[str, Status] = dict(needs or {})
        self.workspace = run.run_dir / "workspaces" / job.name
        self.workspace.mkdir(parents=True, exist_ok=True)
        self.log_path = run.run_dir / "logs" / f"{job.name}.log"
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self.env: Dict[str, str] = dict(job.env)
        self.results: Dict[str, Any] = {}
        self.outputs: Dict[str, Dict[str, str]] = {}
        self.processes: List[subprocess.Popen] = []
        self._files = run.run_dir / "workspaces" / f".{job.name}.files"
        self._files.mkdir(parents=True, exist_ok=True)

    def cache_result(self, step_id: str) -> Optional[CacheResult]:
        result = self.results.get(step_id)
        return result if isinstance(result, CacheResult) else None

    def log(self, text: str) -> None:
        with self.log_path.open("a", encoding="utf-8") as f:
            f.write(get_console().mask(text).rstrip() + "\n")

    def process_env(self, step: Step | None = None) -> Dict[str, str]:
        env = {k: v for k, v in os.environ.items() if not k.startswith(SECRET_PREFIX)}
        env.update(self.env)
        if step is not None:
            env.update(step.env)
        env["SECGATE_WORKSPACE"] = str(self.workspace)
        env["SECGATE_ENV"] = str(self._files / "env")
        env["SECGATE_OUTPUT"] = str(self._files / "output")
        return env

    def collect_step_files(self, step: Step) -> None:
        """Apply KEY=VALUE lines a step appended to $SECGATE_ENV / $SECGATE_OUTPUT."""
        env_file = self._files / "env"
        out_file = self._files / "output"
        self.env.update(_read_kv(env_file))
        outputs = _read_kv(out_file)
        if step.id and outputs:
            self.outputs.setdefault(step.id, {}).update(outputs)
        env_file.unlink(missing_ok=True)
        out_file.unlink(missing_ok=True)

    def stop_processes(self) -> None:
        for proc in self.processes:
            if proc.poll() is None:
                # background steps start their own session; stop the whole group
                try:
                    os.killpg(proc.pid, signal.SIGTERM)
                except (AttributeError, ProcessLookupError, PermissionError):
                    proc.terminate()
                try:
                    proc.wait(timeout=10)
                except subprocess.TimeoutExpired:
                    proc.kill()
        self.processes.clear()


def _read_kv(path: Path) -> Dict[str, str]:
    if not path.exists():
        return {}
    out: Dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        if "=" in line:
            k, v = line.split("=", 1)
            out[k.strip()] = v
    return out


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def step_cwd(job: Job, step: Step, ctx: JobContext) -> Path:
    cwd = (ctx.workspace / (step.cwd or ".")).resolve()
    if not cwd.exists():
        raise CIError(
            kind="missing_cwd",
            job=job.name,
            step=step.name,
            message=f"step cwd not found: {cwd}",
        )
    return cwd


def run_process(
    job: Job,
    step: Step,
    ctx: JobContext,
    cmd: str | Sequence[str],
    *,
    stdout_path: Path | None = None,
) -> str:
    """
    Run one command for a step, capture its output into the job log and
    raise StepFailure on a non-zero exit. Returns the captured output.
    """
    shell = isinstance(cmd, str)
    display = cmd if shell else " ".join(shlex.quote(c) for c in cmd)
    cwd = step_cwd(job, step, ctx)

    try:
        if stdout_path is not None:
            with stdout_path.open("w", encoding="utf-8") as out:
                proc = subprocess.run(
                    cmd,
                    shell=shell,
                    cwd=str(cwd),
                    env=ctx.process_env(step),
                    text=True,
                    stdout=out,
                    stderr=subprocess.PIPE,
                    timeout=step.timeout,
                )
            output = proc.stderr or ""
        else:
            proc = subprocess.run(
                cmd,
                shell=shell,
                cwd=str(cwd),
                env=ctx.process_env(step),
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=step.timeout,
            )
            output = proc.stdout or ""
    except subprocess.TimeoutExpired as e:
        raise StepFailure(job=job.name, step=step.name, cmd=display, exit_code=124,
                          output=f"timed out after {e.timeout}s") from e
    except FileNotFoundError as e:
        tool = cmd if shell else cmd[0]
        raise CIError(
            kind="tool_unavailable",
            job=job.name,
            step=step.name,
            message=f"{tool} is not available",
            details={"hint": TOOL_HINTS.get(str(tool), f"Install {tool} or fix PATH.")},
        ) from e

    ctx.log(output)
    ctx.collect_step_files(step)

    if proc.returncode != 0:
        raise StepFailure(
            job=job.name,
            step=step.name,
            cmd=display,
            exit_code=proc.returncode,
            output=output[-OUTPUT_TAIL:],
        )
    return output


def _run_shell(job: Job, step: Step, ctx: JobContext) -> None:
    run_process(job, step, ctx, step.run)


def _step_kinds() -> Dict[str, Callable[[Job, Step, JobContext], Any]]:
    # Import here to avoid circular import
    from .gate import run_step as run_gate
    from .step_workflows import artifacts, cache, checkout, docker, report, service

    return {
        "sh": _run_shell,
        "checkout": checkout.run_step,
        "docker": docker.run_step,
        "cache-restore": cache.run_restore,
        "cache-save": cache.run_save,
        "upload-artifact": artifacts.run_upload,
        "download-artifact": artifacts.run_download,
        "check-report": report.run_step,
        "background": service.run_background,
        "http-probe": service.run_probe,
        "gate": run_gate,
    }


def _should_run(step: Step, failed: bool, ctx: JobContext) -> bool:
    if step.run_on is StepCondition.ON_SUCCESS and failed:
        return False
    if step.run_on is StepCondition.ON_FAILURE and not failed:
        return False
    if step.when is not None:
        return bool(step.when(ctx))
    return True


def run_job(job: Job, ctx: JobContext) -> Status:
    """
    Run the job's steps in order. The first failing step turns the job into
    Failure and skips the remaining ON_SUCCESS steps; ALWAYS and ON_FAILURE
    steps still run during the unwind.
    """
    console = get_console()
    kinds = _step_kinds()
    console.print_job_start(job.display_name)

    found, missing = ctx.run.secrets.select(job.secrets)
    if missing:
        err = CIError(
            kind="missing_secret",
            job=job.name,
            step=None,
            message=f"secret(s) not configured: {', '.join(missing)}",
            details={"hint": f"export {SECRET_PREFIX}<NAME>=..."},
        )
        console.print_failure(job.name, str(err), is_job=True)
        ctx.log(str(err))
        return Status.FAILURE
    console.add_masks(found.values())
    ctx.env.update(found)

    failed = False
    cancelled = False
    try:
        for step in job.steps:
            if ctx.run.abort.is_set() and step.run_on is not StepCondition.ALWAYS:
                cancelled = True
                console.print_step_skipped(job.name, step.name)
                continue
            if not _should_run(step, failed, ctx):
                console.print_step_skipped(job.name, step.name)
                ctx.log(f"--- {step.name} (skipped)")
                continue

            console.print_step(job.name, step.name)
            ctx.log(f"--- {step.name}")
            try:
                runner = kinds.get(step.kind)
                if runner is None:
                    raise CIError(kind="unknown_step_kind", job=job.name, step=step.name,
                                  message=f"unknown step kind {step.kind!r}")
                result = runner(job, step, ctx)
                if step.id and result is not None:
                    ctx.results[step.id] = result
            except StepFailure as e:
                failed = True
                hint = None
                if e.exit_code == 127:
                    hint = TOOL_HINTS.get(e.cmd.split()[0] if e.cmd else "")
                console.print_failure(step.name, str(e), exit_code=e.exit_code, hint=hint, output=e.output)
                ctx.log(str(e))
            except CIError as e:
                failed = True
                console.print_failure(step.name, str(e), hint=e.details.get("hint"))
                ctx.log(str(e))
            except Exception as e:
                failed = True
                console.print_failure(step.name, f"{type(e).__name__}: {e}")
                ctx.log(f"{type(e).__name__}: {e}")
    finally:
        ctx.stop_processes()

    if failed:
        status = Status.FAILURE
    elif cancelled:
        status = Status.CANCELLED
    else:
        status = Status.SUCCESS
    console.print_job_finished(job.name, status.value)
    ctx.log(f"status: {status.value}")
    return status


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

@dataclass
class RunResult:
    run_id: str
    workflow: str
    run_dir: Path
    statuses: Dict[str, Status]
    gates: Dict[str, GateVerdict] = field(default_factory=dict)
    started_at: float = 0.0
    finished_at: float | None = None
    commit: str | None = None

    @property
    def failed(self) -> bool:
        return any(s is Status.FAILURE for s in self.statuses.values())

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0

    def to_dict(self) -> Dict[str, Any]:
        if self.finished_at is None:
            state = "running"
        else:
            state = "failure" if self.failed else "success"
        return {
            "run_id": self.run_id,
            "workflow": self.workflow,
            "state": state,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "commit": self.commit,
            "jobs": {k: v.value for k, v in self.statuses.items()},
            "gates": {k: v.to_dict() for k, v in self.gates.items()},
        }


def write_summary(result: RunResult) -> Path:
    path = result.run_dir / "summary.json"
    tmp = path.with_suffix(".json.tmp")
    tmp.write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")
    tmp.replace(path)
    return path


def read_summary(run_dir: str | Path) -> Dict[str, Any]:
    path = Path(run_dir) / "summary.json"
    return json.loads(path.read_text(encoding="utf-8"))


def run_workflow(
    workflow: Workflow,
    *,
    settings: Settings | None = None,
    secrets: Secrets | None = None,
    repo_root: str | Path | None = None,
    run_id: str | None = None,
    fail_fast: bool = False,
    abort: threading.Event | None = None,
) -> RunResult:
    """Run every job of the workflow and persist summary.json in the run directory."""
    settings = settings or Settings.from_env()
    run_id = run_id or new_run_id()
    run_dir = (settings.runs_dir / run_id).resolve()
    (run_dir / "logs").mkdir(parents=True, exist_ok=True)

    ctx = RunContext(
        run_id=run_id,
        run_dir=run_dir,
        repo_root=Path(repo_root or settings.repo_root).resolve(),
        cache=CacheStore(settings.cache_dir, settings.cache_capacity_bytes),
        artifacts=ArtifactStore(run_dir / "artifacts"),
        secrets=secrets if secrets is not None else Secrets.from_env(),
        abort=abort or threading.Event(),
        ignore_paths=(settings.home.resolve(), settings.runs_dir.resolve(), settings.cache_dir.resolve()),
    )

    result = RunResult(
        run_id=run_id,
        workflow=workflow.name,
        run_dir=run_dir,
        statuses={j.name: Status.PENDING for j in workflow.jobs},
        started_at=time.time(),
        commit=try_head_sha(ctx.repo_root),
    )
    write_summary(result)
    get_console().print_run_started(run_id, workflow.name, len(workflow.jobs))

    def run_fn(job: Job, needs: Dict[str, Status]) -> Status:
        return run_job(job, JobContext(job, ctx, needs))

    result.statuses = run_dag(
        workflow.jobs,
        run_fn,
        max_workers=settings.resolved_workers(),
        fail_fast=fail_fast,
        abort=ctx.abort,
    )
    result.gates = dict(ctx.gates)
    result.finished_at = time.time()
    write_summary(result)
    return result
