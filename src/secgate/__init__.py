from .dsl import job, sh, always, on_failure, gate, wf, on_push, on_pull_request, cache_hit, cache_miss
from .model import Job, Step, Status, RunCondition, StepCondition, Verdict, Workflow
from .runner import run_workflow, load_workflow
from .step_workflows.artifacts import upload_artifact, download_artifact
from .step_workflows.cache import restore_cache, save_cache
from .step_workflows.checkout import checkout
from .step_workflows.docker import docker_step
from .step_workflows.report import check_report
from .step_workflows.service import background, http_probe

__version__ = "0.1.0"

__all__ = [
    "job", "sh", "always", "on_failure", "gate", "wf", "on_push", "on_pull_request",
    "cache_hit", "cache_miss", "Job", "Step", "Status", "RunCondition", "StepCondition",
    "Verdict", "Workflow", "run_workflow", "load_workflow", "upload_artifact",
    "download_artifact", "restore_cache", "save_cache", "checkout", "docker_step",
    "check_report", "background", "http_probe",
]
