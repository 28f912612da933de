from __future__ import annotations

import hashlib
import hmac
import json
import re
from pathlib import Path
from typing import Any, Optional

from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Request
from fastapi.responses import FileResponse, JSONResponse

from ..artifacts import ArtifactStore
from ..config import Settings
from ..errors import ArtifactNotFound, WorkflowError
from ..git_facts.git import branch_from_ref
from ..runner import load_workflow, new_run_id, read_summary, run_workflow
from ..ui.console import get_console
from .schemas import ArtifactSchema, RunSummary, WebhookResponse

RUN_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
PR_ACTIONS = {"opened", "synchronize", "reopened"}


def _verify_signature(secret: str, body: bytes, signature: Optional[str]) -> None:
    if not signature or not signature.startswith("sha256="):
        raise HTTPException(status_code=401, detail="Missing webhook signature")
    expected = "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")


def event_branch(event: str, payload: dict[str, Any]) -> tuple[Optional[str], Optional[str]]:
    """Return (branch, reason-ignored) for a GitHub webhook payload."""
    if event == "push":
        ref = payload.get("ref")
        if not ref:
            return None, "push without ref"
        return branch_from_ref(ref), None
    if event == "pull_request":
        action = payload.get("action")
        if action not in PR_ACTIONS:
            return None, f"pull_request action {action!r} does not start runs"
        base = (payload.get("pull_request") or {}).get("base") or {}
        return base.get("ref"), None
    return None, f"event {event!r} is not handled"


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    app = FastAPI(title="secgate")

    def run_dir(run_id: str) -> Path:
        if not RUN_ID_RE.match(run_id):
            raise HTTPException(status_code=404, detail="Run not found")
        d = settings.runs_dir / run_id
        if not (d / "summary.json").exists():
            raise HTTPException(status_code=404, detail="Run not found")
        return d

    def execute(workflow, run_id: str) -> None:
        try:
            run_workflow(workflow, settings=settings, run_id=run_id)
        except Exception as e:
            get_console().print_error("Run crashed", f"run {run_id}", details=[str(e)])
            raise

    # -------------------- Webhooks --------------------

    @app.post("/webhooks/github", response_model=WebhookResponse, status_code=202)
    async def github_webhook(
        request: Request,
        background: BackgroundTasks,
        x_github_event: str = Header(...),
        x_hub_signature_256: Optional[str] = Header(None),
    ):
        body = await request.body()
        if settings.webhook_secret:
            _verify_signature(settings.webhook_secret, body, x_hub_signature_256)

        if x_github_event == "ping":
            return WebhookResponse(status="pong")

        try:
            payload = json.loads(body or b"{}")
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Body must be JSON")

        branch, reason = event_branch(x_github_event, payload)
        if reason:
            return WebhookResponse(status="ignored", reason=reason)

        if settings.workflow is None:
            raise HTTPException(status_code=500, detail="No workflow configured (SECGATE_WORKFLOW)")
        try:
            workflow = load_workflow(settings.workflow)
        except (WorkflowError, FileNotFoundError) as e:
            get_console().print_error("Failed to load workflow", str(e))
            raise HTTPException(status_code=500, detail=f"Failed to load workflow: {e}")
        if not workflow.triggered_by(x_github_event, branch):
            return WebhookResponse(status="ignored", reason=f"{x_github_event} on {branch} does not match triggers")

        run_id = new_run_id()
        background.add_task(execute, workflow, run_id)
        return WebhookResponse(status="queued", run_id=run_id)

    # -------------------- Runs --------------------

    @app.get("/runs", response_model=list[RunSummary])
    async def list_runs():
        if not settings.runs_dir.exists():
            return []
        summaries = [
            read_summary(d)
            for d in settings.runs_dir.iterdir()
            if (d / "summary.json").exists()
        ]
        return sorted(summaries, key=lambda s: s["started_at"], reverse=True)

    @app.get("/runs/{run_id}", response_model=RunSummary)
    async def get_run(run_id: str):
        return read_summary(run_dir(run_id))

    @app.get("/runs/{run_id}/artifacts", response_model=list[ArtifactSchema])
    async def list_artifacts(run_id: str):
        store_dir = run_dir(run_id) / "artifacts"
        if not store_dir.exists():
            return []
        return [a.to_dict() for a in ArtifactStore(store_dir).list()]

    @app.get("/runs/{run_id}/artifacts/{name}/{path:path}")
    async def get_artifact_file(run_id: str, name: str, path: str):
        store = ArtifactStore(run_dir(run_id) / "artifacts")
        try:
            return FileResponse(store.open_file(name, path))
        except (ArtifactNotFound, ValueError):
            return JSONResponse(status_code=404, content={"detail": "Artifact not found"})

    return app
