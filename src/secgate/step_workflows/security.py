# step_workflows/security.py
# Scanner invocations used by the security jobs. Each helper only builds a
# docker step; evaluating the produced report is a separate check_report step.
from __future__ import annotations

from ..model import Step
from .docker import docker_step


def dependency_check(
    *,
    project: str,
    out: str = "dependency-check-report",
    data_dir: str = "dependency-check-cache",
    api_key_env: str = "NVD_API_KEY",
    image: str = "owasp/dependency-check:latest",
    name: str = "Run OWASP Dependency-Check (SCA)",
) -> Step:
    """
    SCA scan of the workspace; writes every report format into `out/`.

    The CLI only takes the NVD key as --nvdApiKey, so the key is expanded
    into the docker argv. Console output masks it like any other secret.
    """
    return docker_step(
        name,
        image,
        [
            "--project", project,
            "--scan", "/src",
            "--format", "ALL",
            "--out", f"/src/{out}",
            "--disableArchive",
            "--nvdApiKey", f"${{{api_key_env}}}",
        ],
        user="root",
        volumes=[f"./{data_dir}:/root/.m2/repository"],
        pass_env=[api_key_env],
    )


def semgrep(
    *,
    config: str = "p/ci",
    output: str = "semgrep-results.json",
    image: str = "returntocorp/semgrep",
    name: str = "Run Semgrep (SAST)",
) -> Step:
    return docker_step(name, image, ["semgrep", f"--config={config}", "--json", "-o", output])


def trufflehog(
    *,
    output: str = "trufflehog-results.json",
    image: str = "trufflesecurity/trufflehog:latest",
    name: str = "Run TruffleHog Scan",
) -> Step:
    """Secrets scan of the checked-out git history; JSON lines on stdout."""
    return docker_step(name, image, ["git", "file:///src", "--json"], stdout=output)


def zap_baseline(
    *,
    target: str = "http://localhost:3000",
    report: str = "zap-report.html",
    config: str = "gen.conf",
    image: str = "zaproxy/zap-weekly",
    name: str = "Run OWASP ZAP Scan (DAST)",
) -> Step:
    """
    Baseline DAST scan of a running instance. `-I` keeps warnings from
    failing the step; the HTML report is for human review only.
    """
    return docker_step(
        name,
        image,
        ["zap-baseline.py", "-t", target, "-g", f"/zap/wrk/{config}", "-r", report, "-I"],
        mount="/zap/wrk/",
        user="root",
        network="host",
        pull=True,
    )
