import json

import pytest

from secgate.artifacts import ArtifactStore, collect_files
from secgate.errors import ArtifactNotFound


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "ws"
    (ws / "dependency-check-report").mkdir(parents=True)
    (ws / "dependency-check-report" / "dependency-check-report.json").write_text('{"dependencies": []}')
    (ws / "dependency-check-report" / "dependency-check-report.html").write_text("<html></html>")
    (ws / "semgrep-results.json").write_text('{"results": []}')
    return ws


def test_collect_files_directory_and_file(workspace):
    staged = collect_files(["dependency-check-report/", "semgrep-results.json"], workspace)
    assert sorted(staged) == [
        "dependency-check-report.html",
        "dependency-check-report.json",
        "semgrep-results.json",
    ]


def test_collect_files_glob(workspace):
    assert sorted(collect_files(["*.json"], workspace)) == ["semgrep-results.json"]


def test_upload_and_download(tmp_path, workspace):
    store = ArtifactStore(tmp_path / "artifacts")
    artifact = store.upload("security_sca", "dependency-check-report", ["dependency-check-report/"], root=workspace)

    assert artifact.job == "security_sca"
    assert len(artifact.files) == 2
    manifest = json.loads((tmp_path / "artifacts" / "dependency-check-report" / "manifest.json").read_text())
    assert manifest["name"] == "dependency-check-report"

    files = store.download("dependency-check-report", tmp_path / "out")
    assert sorted(f.name for f in files) == ["dependency-check-report.html", "dependency-check-report.json"]
    assert (tmp_path / "out" / "dependency-check-report.json").read_text() == '{"dependencies": []}'


def test_upload_overwrites_same_name(tmp_path, workspace):
    store = ArtifactStore(tmp_path / "artifacts")
    store.upload("a", "report", ["dependency-check-report/"], root=workspace)
    store.upload("b", "report", ["semgrep-results.json"], root=workspace)

    artifact = store.get("report")
    assert artifact.job == "b"
    assert artifact.files == ("semgrep-results.json",)
    assert not (tmp_path / "artifacts" / "report" / "files" / "dependency-check-report.json").exists()


def test_list_returns_every_artifact(tmp_path, workspace):
    store = ArtifactStore(tmp_path / "artifacts")
    store.upload("security_sast", "semgrep-results", ["semgrep-results.json"], root=workspace)
    store.upload("security_sca", "dependency-check-report", ["dependency-check-report/"], root=workspace)
    assert [a.name for a in store.list()] == ["dependency-check-report", "semgrep-results"]


def test_missing_artifact_raises(tmp_path):
    store = ArtifactStore(tmp_path / "artifacts")
    with pytest.raises(ArtifactNotFound):
        store.get("zap-report")
    with pytest.raises(ArtifactNotFound):
        store.download("zap-report", tmp_path / "out")


def test_open_file_only_serves_manifest_entries(tmp_path, workspace):
    store = ArtifactStore(tmp_path / "artifacts")
    store.upload("security_sast", "semgrep-results", ["semgrep-results.json"], root=workspace)

    path = store.open_file("semgrep-results", "semgrep-results.json")
    assert path.read_text() == '{"results": []}'
    with pytest.raises(ArtifactNotFound):
        store.open_file("semgrep-results", "../semgrep-results/manifest.json")


@pytest.mark.parametrize("name", ["", ".", "..", "a/b"])
def test_invalid_names_rejected(tmp_path, workspace, name):
    store = ArtifactStore(tmp_path / "artifacts")
    with pytest.raises(ValueError):
        store.upload("job", name, ["semgrep-results.json"], root=workspace)
