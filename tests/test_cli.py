import pytest
from click.testing import CliRunner

from secgate.cli import cli

OK_WORKFLOW = """
from secgate import wf, job, sh, upload_artifact, on_push

def workflow():
    return wf(
        job("build", sh("Build", "echo built > out.txt"), upload_artifact("out", "out.txt")),
        job("test", sh("Test", "true"), needs=["build"]),
        name="demo",
        on=[on_push("main")],
    )
"""

FAILING_WORKFLOW = """
from secgate import job, sh
JOBS = [job("bad", sh("Fail", "exit 4"))]
"""


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def project(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("SECGATE_WORKFLOW", raising=False)
    monkeypatch.setenv("SECGATE_HOME", str(tmp_path / ".secgate"))
    monkeypatch.setenv("SECGATE_REPO_ROOT", str(tmp_path))
    monkeypatch.delenv("SECGATE_CACHE_DIR", raising=False)
    monkeypatch.delenv("SECGATE_RUNS_DIR", raising=False)
    return tmp_path


def _runs(project):
    return sorted(p.name for p in (project / ".secgate" / "runs").iterdir())


def test_help(runner):
    result = runner.invoke(cli, ["--help"])
    assert result.exit_code == 0
    for command in ("run", "plan", "artifacts", "cache", "serve"):
        assert command in result.output


def test_plan_prints_stages(runner, project):
    (project / "ok_workflow.py").write_text(OK_WORKFLOW)
    result = runner.invoke(cli, ["plan"])
    assert result.exit_code == 0, result.output
    assert "=== Stage 1: build ===" in result.output
    assert "=== Stage 2: test ===" in result.output
    assert "on push: main" in result.output


def test_run_success(runner, project):
    (project / "ok_workflow.py").write_text(OK_WORKFLOW)
    result = runner.invoke(cli, ["run", "--workflow", "ok_workflow.py", "--workers", "2"])
    assert result.exit_code == 0, result.output
    assert "RESULTS" in result.output
    assert "build: SUCCESS" in result.output
    assert len(_runs(project)) == 1


def test_run_failure_exits_nonzero(runner, project):
    (project / "bad_workflow.py").write_text(FAILING_WORKFLOW)
    result = runner.invoke(cli, ["run", "--workflow", "bad_workflow"])
    assert result.exit_code == 1
    assert "bad: FAILURE" in result.output


def test_run_not_triggered(runner, project):
    (project / "ok_workflow.py").write_text(OK_WORKFLOW)
    result = runner.invoke(cli, ["run", "--event", "push", "--branch", "feature"])
    assert result.exit_code == 0
    assert "not triggered" in result.output
    assert not (project / ".secgate" / "runs").exists()


def test_run_triggered_branch(runner, project):
    (project / "ok_workflow.py").write_text(OK_WORKFLOW)
    result = runner.invoke(cli, ["run", "--event", "push", "--branch", "main"])
    assert result.exit_code == 0, result.output
    assert len(_runs(project)) == 1


def test_no_workflow_found(runner, project):
    result = runner.invoke(cli, ["run"])
    assert result.exit_code == 1
    assert "No workflow file found" in result.output


def test_multiple_workflows_need_explicit_choice(runner, project):
    (project / "ok_workflow.py").write_text(OK_WORKFLOW)
    (project / "bad_workflow.py").write_text(FAILING_WORKFLOW)
    result = runner.invoke(cli, ["run"])
    assert result.exit_code == 1
    assert "Multiple workflow files found" in result.output


def test_invalid_workflow(runner, project):
    (project / "broken_workflow.py").write_text("X = 1\n")
    result = runner.invoke(cli, ["plan"])
    assert result.exit_code == 1
    assert "Failed to load workflow" in result.output


def test_artifacts_commands(runner, project):
    (project / "ok_workflow.py").write_text(OK_WORKFLOW)
    assert runner.invoke(cli, ["run"]).exit_code == 0
    run_id = _runs(project)[0]

    listed = runner.invoke(cli, ["artifacts", "list", run_id])
    assert listed.exit_code == 0
    assert "out  job=build  files=1" in listed.output

    got = runner.invoke(cli, ["artifacts", "get", run_id, "out", "--dest", str(project / "dl")])
    assert got.exit_code == 0
    assert (project / "dl" / "out.txt").read_text().strip() == "built"

    missing = runner.invoke(cli, ["artifacts", "get", run_id, "nope"])
    assert missing.exit_code == 1


def test_artifacts_unknown_run(runner, project):
    result = runner.invoke(cli, ["artifacts", "list", "no-such-run"])
    assert result.exit_code == 1


def test_cache_commands(runner, project):
    src = project / "src"
    src.mkdir()
    (src / "f.txt").write_text("x")
    from secgate.cache import CacheStore

    CacheStore(project / ".secgate" / "cache").save("node-modules-abc", ["f.txt"], root=src)

    listed = runner.invoke(cli, ["cache", "list"])
    assert listed.exit_code == 0
    assert "node-modules-abc" in listed.output

    cleared = runner.invoke(cli, ["cache", "clear"])
    assert cleared.exit_code == 0
    assert "Removed 1 cache entry" in cleared.output
    assert "node-modules-abc" not in runner.invoke(cli, ["cache", "list"]).output
