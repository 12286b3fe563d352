"""Unit tests for project discovery."""

import pytest

from apprunner.errors import InvalidInput
from apprunner.registry import ProjectRegistry, validate_project_id


def _by_id(projects):
    return {p.id: p for p in projects}


def test_missing_root_lists_nothing(tmp_path):
    assert ProjectRegistry(tmp_path / "nope").list() == []


def test_has_dist_tracks_build_output(data_dir, make_project):
    make_project(data_dir, "built", package={}, built=True)
    make_project(data_dir, "fresh", package={})
    # A file named dist is not build output
    plain = make_project(data_dir, "fake-dist")
    (plain / "dist").write_text("not a directory", encoding="utf-8")

    projects = _by_id(ProjectRegistry(data_dir).list())

    assert projects["built"].has_dist is True
    assert projects["fresh"].has_dist is False
    assert projects["fake-dist"].has_dist is False
    assert projects["fresh"].has_package_json is True
    assert projects["fake-dist"].has_package_json is False


def test_metadata_json_preferred(data_dir, make_project):
    make_project(
        data_dir,
        "space",
        metadata={"name": "Space Game", "description": "Shoot rocks"},
        package={"description": "from package.json"},
    )
    project = ProjectRegistry(data_dir).list()[0]
    assert project.name == "Space Game"
    assert project.description == "Shoot rocks"
    assert project.path == "/apps/space/"


def test_package_json_description_fallback(data_dir, make_project):
    make_project(data_dir, "pkg", package={"name": "ignored", "description": "Pkg desc"})
    project = ProjectRegistry(data_dir).list()[0]
    assert project.name == "pkg"
    assert project.description == "Pkg desc"


def test_directory_name_fallback(data_dir, make_project):
    make_project(data_dir, "bare")
    project = ProjectRegistry(data_dir).list()[0]
    assert project.name == "bare"
    assert project.description == "No description"


def test_broken_metadata_does_not_abort_scan(data_dir, make_project):
    broken = make_project(data_dir, "broken")
    (broken / "metadata.json").write_text("{oops", encoding="utf-8")
    make_project(data_dir, "good", metadata={"name": "Good"})

    projects = _by_id(ProjectRegistry(data_dir).list())

    assert set(projects) == {"broken", "good"}
    assert projects["broken"].name == "broken"
    assert projects["broken"].description == "No description"
    assert projects["good"].name == "Good"


def test_files_and_hidden_dirs_skipped(data_dir, make_project):
    make_project(data_dir, "app")
    (data_dir / ".cache").mkdir()
    (data_dir / "stats.json").write_text("{}", encoding="utf-8")
    (data_dir / "runner-stats.db").write_bytes(b"")

    assert [p.id for p in ProjectRegistry(data_dir).list()] == ["app"]


def test_rescans_every_call(data_dir, make_project):
    registry = ProjectRegistry(data_dir)
    make_project(data_dir, "app", package={})
    assert registry.list()[0].has_dist is False

    (data_dir / "app" / "dist").mkdir()
    assert registry.list()[0].has_dist is True


def test_camel_case_serialization(data_dir, make_project):
    make_project(data_dir, "app", built=True)
    dumped = ProjectRegistry(data_dir).list()[0].model_dump(by_alias=True)
    assert set(dumped) == {"id", "name", "description", "hasDist", "hasPackageJson", "path"}


def test_get(data_dir, make_project):
    make_project(data_dir, "app")
    registry = ProjectRegistry(data_dir)
    assert registry.get("app").id == "app"
    assert registry.get("other") is None


@pytest.mark.parametrize("bad", ["", "..", "../etc", "a/b", "a\\b", "a\x00b", ".git"])
def test_validate_project_id_rejects(bad):
    with pytest.raises(InvalidInput):
        validate_project_id(bad)


def test_validate_project_id_accepts():
    assert validate_project_id("my_app-2.0") == "my_app-2.0"
