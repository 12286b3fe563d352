"""Project discovery under the data directory.

Every immediate subdirectory of the root is a project.  Nothing is cached:
each ``list()`` call rescans the filesystem so build output that appeared
since the last request is picked up immediately.

Directory structure:
    <root>/<project_id>/package.json
    <root>/<project_id>/metadata.json   (optional: name, description)
    <root>/<project_id>/dist/           (build output)
"""

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from apprunner.errors import InvalidInput

logger = logging.getLogger(__name__)

DIST_DIR_NAME = "dist"
METADATA_FILE = "metadata.json"
PACKAGE_JSON = "package.json"
NO_DESCRIPTION = "No description"


class Project(BaseModel):
    """A discoverable sub-application; serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    name: str
    description: str
    has_dist: bool = False
    has_package_json: bool = False
    path: str


def validate_project_id(project_id: str) -> str:
    """Reject ids that could escape the project root.

    >>> validate_project_id("space-game")
    'space-game'
    >>> validate_project_id("../etc")
    Traceback (most recent call last):
    ...
    apprunner.errors.InvalidInput: Invalid project ID
    """
    if (
        not project_id
        or "/" in project_id
        or "\\" in project_id
        or "\x00" in project_id
        or ".." in project_id
        or project_id.startswith(".")
    ):
        raise InvalidInput("Invalid project ID", details=f"Rejected id: {project_id!r}")
    return project_id


def _read_json(path: Path) -> Optional[dict]:
    data = json.loads(path.read_text(encoding="utf-8"))
    return data if isinstance(data, dict) else None


def _read_metadata(project_dir: Path) -> tuple[str, str]:
    """Return (name, description), falling back to the directory name.

    metadata.json wins over package.json; package.json only contributes
    a description.
    """
    name, description = project_dir.name, NO_DESCRIPTION
    meta_path = project_dir / METADATA_FILE
    pkg_path = project_dir / PACKAGE_JSON
    try:
        if meta_path.is_file():
            meta = _read_json(meta_path) or {}
            if isinstance(meta.get("name"), str) and meta["name"]:
                name = meta["name"]
            if isinstance(meta.get("description"), str) and meta["description"]:
                description = meta["description"]
        elif pkg_path.is_file():
            pkg = _read_json(pkg_path) or {}
            if isinstance(pkg.get("description"), str) and pkg["description"]:
                description = pkg["description"]
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.debug("Unreadable metadata for %s, using fallback: %s", project_dir.name, exc)
        return project_dir.name, NO_DESCRIPTION
    return name, description


class ProjectRegistry:
    """Scans a root directory for projects."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def project_dir(self, project_id: str) -> Path:
        return self.root / validate_project_id(project_id)

    def list(self) -> list[Project]:
        """Enumerate projects in filesystem order."""
        if not self.root.is_dir():
            logger.debug("Project root %s does not exist", self.root)
            return []

        projects = []
        for entry in self.root.iterdir():
            if entry.name.startswith("."):
                continue
            try:
                if not entry.is_dir():
                    continue
                has_dist = (entry / DIST_DIR_NAME).is_dir()
                has_package_json = (entry / PACKAGE_JSON).is_file()
            except OSError as exc:
                logger.debug("Skipping unreadable entry %s: %s", entry, exc)
                continue
            name, description = _read_metadata(entry)
            projects.append(
                Project(
                    id=entry.name,
                    name=name,
                    description=description,
                    has_dist=has_dist,
                    has_package_json=has_package_json,
                    path=f"/apps/{entry.name}/",
                )
            )
        return projects

    def get(self, project_id: str) -> Optional[Project]:
        """Look up one project by id, or None when it is not on disk."""
        validate_project_id(project_id)
        for project in self.list():
            if project.id == project_id:
                return project
        return None
