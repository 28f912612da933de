# cli.py
from __future__ import annotations

import signal
import subprocess
import sys
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path

import click

from secgate.artifacts import ArtifactStore
from secgate.cache import CacheStore
from secgate.config import Settings
from secgate.dag import validate_workflow
from secgate.errors import ArtifactNotFound, WorkflowError
from secgate.git_facts.git import current_branch
from secgate.runner import load_workflow, run_workflow
from secgate.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOW = "secgate_workflow.py"


def find_workflow_files(directory: Path = Path(".")) -> list[Path]:
    """secgate_workflow.py plus any *_workflow.py in `directory`, sorted."""
    return sorted(set(directory.glob("*_workflow.py")))


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Resolve the workflow to run: --workflow, then $SECGATE_WORKFLOW, then the
    single *_workflow.py in the current directory. Exits with status 1 when
    nothing (or more than one candidate) is found.
    """
    console = get_console()
    explicit = workflow_arg or Settings.from_env().workflow

    if explicit:
        path = Path(explicit)
        if not path.exists() and path.suffix != ".py":
            path = path.with_name(path.name + ".py")
        if path.exists():
            return path
        console.print_error(
            "Workflow file not found",
            f"{explicit} does not exist",
            suggestion="Pass an existing file:\n  secgate run --workflow path/to/secgate_workflow.py",
        )
        sys.exit(1)

    candidates = find_workflow_files()
    if len(candidates) == 1:
        return candidates[0]

    if not candidates:
        console.print_error(
            "No workflow file found",
            "Nothing matching *_workflow.py in the current directory.",
            suggestion=f"Create {DEFAULT_WORKFLOW} or pass --workflow.",
        )
    else:
        console.print_error(
            "Multiple workflow files found",
            "Choose one with --workflow:",
            details=[str(p) for p in candidates],
        )
    sys.exit(1)


def _settings(ctx: click.Context, **overrides) -> Settings:
    settings: Settings = ctx.obj["settings"]
    changes = {k: v for k, v in overrides.items() if v is not None}
    for key in ("cache_dir", "runs_dir", "repo_root"):
        if key in changes:
            changes[key] = Path(changes[key])
    return replace(settings, **changes)


def _load_or_exit(ctx: click.Context, workflow_path: Path):
    console = get_console()
    try:
        return load_workflow(workflow_path)
    except (WorkflowError, TypeError, FileNotFoundError) as e:
        console.print_error(
            "Failed to load workflow",
            f"Could not load workflow from {workflow_path}",
            details=[str(e)],
        )
        sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """secgate — DAG-scheduled CI runner with cached builds and a security gate."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj.setdefault("settings", Settings.from_env())


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@click.option("--workers", default=None, type=int, help="Number of runner slots")
@click.option("--cache-dir", default=None, help="Cache directory")
@click.option("--runs-dir", default=None, help="Directory for run outputs (logs, artifacts, summary)")
@click.option("--repo-root", default=None, help="Repository copied into job workspaces by checkout steps")
@click.option("--fail-fast/--no-fail-fast", default=False, help="Cancel jobs not yet started after the first failure")
@click.option(
    "--event",
    type=click.Choice(["manual", "push", "pull_request"]),
    default="manual",
    show_default=True,
    help="Event to check against the workflow triggers",
)
@click.option("--branch", default=None, help="Branch for trigger matching (defaults to the current git branch)")
@click.option("--print-plan/--no-print-plan", default=True, show_default=True, help="Print the stage plan")
@click.pass_context
def run(ctx, workflow, workers, cache_dir, runs_dir, repo_root, fail_fast, event, branch, print_plan):
    """Run a secgate workflow."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    settings = _settings(ctx, max_workers=workers, cache_dir=cache_dir, runs_dir=runs_dir, repo_root=repo_root)
    wf = _load_or_exit(ctx, workflow_path)

    if event != "manual":
        if branch is None:
            try:
                branch = current_branch(settings.repo_root)
            except (subprocess.CalledProcessError, FileNotFoundError):
                branch = None
        if not wf.triggered_by(event, branch):
            console.print_info(f"Workflow '{wf.name}' is not triggered by {event} on {branch or '<unknown branch>'}")
            return

    abort = threading.Event()
    previous = signal.signal(signal.SIGINT, lambda signum, frame: abort.set())
    try:
        if print_plan:
            console.print_plan(validate_workflow(wf.jobs))
        console.print_info(f"Running '{wf.name}' ({len(wf.jobs)} jobs) from {workflow_path}")
        result = run_workflow(wf, settings=settings, fail_fast=fail_fast, abort=abort)
        console.print_results({k: v.value for k, v in result.statuses.items()})
        console.print_info(f"Run directory: {result.run_dir}")
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)
    finally:
        signal.signal(signal.SIGINT, previous)

    if abort.is_set():
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    if result.failed:
        sys.exit(1)


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@click.pass_context
def plan(ctx, workflow):
    """Validate a workflow and print its stages and triggers."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    wf = _load_or_exit(ctx, workflow_path)

    console.print_header(f"Workflow: {wf.name}")
    for trigger in wf.triggers:
        branches = ", ".join(trigger.branches) or "*"
        console.print_info(f"on {trigger.event}: {branches}")
    console.print_plan(validate_workflow(wf.jobs))
    for j in wf.jobs:
        needs = f" needs={','.join(j.needs)}" if j.needs else ""
        console.print_info(f"  {j.name} [{j.condition.value}]{needs}: {len(j.steps)} step(s)")


@cli.group()
def artifacts():
    """Inspect artifacts of a finished run."""


@artifacts.command("list")
@click.argument("run_id")
@click.pass_context
def artifacts_list(ctx, run_id):
    settings = _settings(ctx)
    store_dir = settings.runs_dir / run_id / "artifacts"
    if not store_dir.exists():
        get_console().print_error("Run not found", f"No artifacts for run {run_id} in {settings.runs_dir}")
        sys.exit(1)
    for a in ArtifactStore(store_dir).list():
        get_console().print_info(f"{a.name}  job={a.job}  files={len(a.files)}")


@artifacts.command("get")
@click.argument("run_id")
@click.argument("name")
@click.option("--dest", default=".", show_default=True, help="Directory to copy the files into")
@click.pass_context
def artifacts_get(ctx, run_id, name, dest):
    settings = _settings(ctx)
    store = ArtifactStore(settings.runs_dir / run_id / "artifacts")
    try:
        files = store.download(name, dest)
    except ArtifactNotFound as e:
        get_console().print_error("Artifact not found", str(e))
        sys.exit(1)
    for f in files:
        get_console().print_info(str(f))


@cli.group()
def cache():
    """Inspect or clear the cache store."""


@cache.command("list")
@click.option("--cache-dir", default=None, help="Cache directory")
@click.pass_context
def cache_list(ctx, cache_dir):
    settings = _settings(ctx, cache_dir=cache_dir)
    for entry in CacheStore(settings.cache_dir, settings.cache_capacity_bytes).entries():
        created = datetime.fromtimestamp(entry.created).isoformat(timespec="seconds")
        get_console().print_info(f"{entry.key}  {entry.size} bytes  {created}")


@cache.command("clear")
@click.option("--cache-dir", default=None, help="Cache directory")
@click.pass_context
def cache_clear(ctx, cache_dir):
    settings = _settings(ctx, cache_dir=cache_dir)
    removed = CacheStore(settings.cache_dir, settings.cache_capacity_bytes).clear()
    get_console().print_info(f"Removed {removed} cache entr{'y' if removed == 1 else 'ies'}")


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, type=int, show_default=True)
@click.option("--workflow", default=None, help="Workflow run for matching webhook events")
@click.pass_context
def serve(ctx, host, port, workflow):
    """Serve the webhook + run/artifact API."""
    import uvicorn

    from secgate.server.app import create_app

    settings = _settings(ctx)
    workflow_path = discover_workflow(workflow)
    settings = replace(settings, workflow=workflow_path)
    uvicorn.run(create_app(settings), host=host, port=port)


if __name__ == "__main__":
    cli()
