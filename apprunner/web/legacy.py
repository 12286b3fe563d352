"""One-time import of the legacy flat stats file.

Older releases kept all stats in ``<data_dir>/stats.json``::

    {
      "version": 1,
      "launches": {"app1": 3},
      "ratings": {"app1": [4, 2]}
    }

A rating entry may also be ``{"values": [...]}``.  At startup the file is
imported into the database and then deleted.  Launch counts are imported
with replace semantics, so re-running after a crash between import and
delete is harmless for them; rating samples are appended and WOULD be
duplicated by such a re-run.
"""

import json
import logging
from pathlib import Path

from apprunner.errors import InvalidInput
from apprunner.registry import validate_project_id
from apprunner.web.database import Database, validate_rating

logger = logging.getLogger(__name__)


def _parse_launches(raw) -> dict[str, int]:
    launches: dict[str, int] = {}
    if not isinstance(raw, dict):
        return launches
    for project_id, count in raw.items():
        try:
            validate_project_id(project_id)
        except InvalidInput:
            logger.warning("Skipping legacy launches for invalid id %r", project_id)
            continue
        if isinstance(count, bool) or not isinstance(count, int) or count < 0:
            logger.warning("Skipping legacy launch count %r for %s", count, project_id)
            continue
        launches[project_id] = count
    return launches


def _parse_ratings(raw) -> dict[str, list[float]]:
    ratings: dict[str, list[float]] = {}
    if not isinstance(raw, dict):
        return ratings
    for project_id, entry in raw.items():
        try:
            validate_project_id(project_id)
        except InvalidInput:
            logger.warning("Skipping legacy ratings for invalid id %r", project_id)
            continue
        if isinstance(entry, dict):
            entry = entry.get("values")
        if not isinstance(entry, list):
            logger.warning("Skipping legacy ratings for %s: not a list of samples", project_id)
            continue
        values = []
        for value in entry:
            try:
                values.append(validate_rating(value))
            except InvalidInput:
                logger.warning("Skipping legacy rating %r for %s", value, project_id)
        if values:
            ratings[project_id] = values
    return ratings


def import_legacy_snapshot(db: Database, path: Path) -> bool:
    """Import and delete the legacy stats file if present.

    Returns True when a file was imported.  A malformed file is logged and
    left in place so it can be inspected; startup continues.
    """
    path = Path(path)
    if not path.is_file():
        return False

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.error("Legacy stats file %s is unreadable, leaving it in place: %s", path, exc)
        return False
    if not isinstance(data, dict):
        logger.error("Legacy stats file %s is not a JSON object, leaving it in place", path)
        return False

    launches = _parse_launches(data.get("launches"))
    ratings = _parse_ratings(data.get("ratings"))
    n_launches, n_ratings = db.import_legacy_counters(launches, ratings)
    logger.info(
        "Imported legacy stats from %s: %d launch counters, %d rating samples",
        path,
        n_launches,
        n_ratings,
    )

    try:
        path.unlink()
    except OSError as exc:
        # Next startup re-imports; ratings would be duplicated
        logger.warning("Could not remove legacy stats file %s: %s", path, exc)
    return True
