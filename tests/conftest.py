"""Shared fixtures for app-runner tests."""

import json
import sys
from pathlib import Path

import pytest

from apprunner.events import ChangeNotifier
from apprunner.web.database import Database


def _make_project(
    root: Path,
    project_id: str,
    *,
    metadata: dict | None = None,
    package: dict | None = None,
    built: bool = False,
) -> Path:
    """Create a project directory under *root*."""
    project_dir = root / project_id
    project_dir.mkdir(parents=True)
    if metadata is not None:
        (project_dir / "metadata.json").write_text(json.dumps(metadata), encoding="utf-8")
    if package is not None:
        (project_dir / "package.json").write_text(json.dumps(package), encoding="utf-8")
    if built:
        (project_dir / "dist").mkdir()
        (project_dir / "dist" / "index.html").write_text("<html></html>", encoding="utf-8")
    return project_dir


def _python_step(code: str) -> list[str]:
    """A build step that runs *code* with the current interpreter."""
    return [sys.executable, "-c", code]


@pytest.fixture
def data_dir(tmp_path):
    """Empty projects directory."""
    root = tmp_path / "data"
    root.mkdir()
    return root


@pytest.fixture
def notifier():
    return ChangeNotifier()


@pytest.fixture
def events(notifier):
    """List collecting every published ChangeEvent."""
    seen = []
    notifier.subscribe(seen.append)
    return seen


@pytest.fixture
def db(tmp_path, notifier):
    """File-backed Database shared safely across threads."""
    database = Database(str(tmp_path / "stats.db"), notifier=notifier)
    yield database
    database.close()


@pytest.fixture
def runner_env(data_dir, monkeypatch):
    """Point the app's environment at a temporary data dir."""
    monkeypatch.setenv("RUNNER_DATA_DIR", str(data_dir))
    for name in (
        "RUNNER_HOST",
        "RUNNER_PORT",
        "RUNNER_STATS_DB",
        "RUNNER_LEGACY_STATS",
        "RUNNER_BUILD_MAX_OUTPUT",
        "RUNNER_ALLOWED_ORIGINS",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("RUNNER_NPM", "apprunner-missing-npm")
    return data_dir


@pytest.fixture
def client(runner_env):
    """TestClient with the lifespan running against a temp data dir."""
    from fastapi.testclient import TestClient

    from apprunner.api.main import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def make_project():
    """Factory creating project directories: make_project(root, id, ...)."""
    return _make_project


@pytest.fixture
def python_step():
    """Factory for build steps running inline Python."""
    return _python_step
