import pytest

from secgate.config import Settings
from secgate.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def console():
    """Fresh console per test so secret masks never leak between tests."""
    c = Console()
    set_console(c)
    return c


@pytest.fixture
def repo(tmp_path):
    root = tmp_path / "repo"
    root.mkdir()
    return root


@pytest.fixture
def settings(tmp_path, repo):
    home = tmp_path / ".secgate"
    return Settings(
        home=home,
        cache_dir=home / "cache",
        runs_dir=home / "runs",
        max_workers=4,
        repo_root=repo,
    )
