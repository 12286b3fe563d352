"""SQLite database layer for the runner dashboard.

4 tables across two concerns:
- Stats: launches (counters), ratings (append-only samples)
- Sessions: sessions (realtime connection lifecycles), schema_kv

Every aggregate the dashboard shows is recomputed from these tables on
read; nothing is cached in memory.  WAL mode for concurrent reads, single
writer lock for atomic writes.  Committed writes are announced on the
optional ChangeNotifier.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from apprunner.errors import InvalidInput, PersistenceError
from apprunner.events import ChangeEvent, ChangeNotifier
from apprunner.registry import validate_project_id

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2
RATING_MIN = 0
RATING_MAX = 5
SESSION_LIST_MAX = 500


# ---------------------------------------------------------------------------
# Pydantic v2 Models
# ---------------------------------------------------------------------------


class RatingSummary(BaseModel):
    average: float
    count: int


class StatsSnapshot(BaseModel):
    """Point-in-time view of all counters and the online count."""

    version: int
    online: int
    launches: dict[str, int] = {}
    ratings: dict[str, RatingSummary] = {}


class Session(BaseModel):
    """Pydantic v2 model for a sessions row (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    connected_at: str
    disconnected_at: Optional[str] = None
    meta: Optional[dict[str, Any]] = None


# ---------------------------------------------------------------------------
# Schema SQL
# ---------------------------------------------------------------------------

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS launches (
    project_id TEXT PRIMARY KEY,
    count INTEGER NOT NULL DEFAULT 0 CHECK (count >= 0),
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS ratings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL,
    value REAL NOT NULL CHECK (value >= 0 AND value <= 5),
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    connected_at TEXT NOT NULL,
    disconnected_at TEXT,
    meta TEXT
);

CREATE TABLE IF NOT EXISTS schema_kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_ratings_project ON ratings(project_id);
CREATE INDEX IF NOT EXISTS idx_sessions_open ON sessions(disconnected_at);
CREATE INDEX IF NOT EXISTS idx_sessions_connected ON sessions(connected_at);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def validate_rating(value: Any) -> float:
    """Coerce a rating to float, rejecting anything outside [0, 5].

    >>> validate_rating(4)
    4.0
    >>> validate_rating(5.5)
    Traceback (most recent call last):
    ...
    apprunner.errors.InvalidInput: Rating must be a number between 0 and 5
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidInput(f"Rating must be a number between {RATING_MIN} and {RATING_MAX}")
    value = float(value)
    # NaN fails both comparisons
    if not RATING_MIN <= value <= RATING_MAX:
        raise InvalidInput(
            f"Rating must be a number between {RATING_MIN} and {RATING_MAX}",
            details=f"Got {value}",
        )
    return value


class Database:
    """SQLite stats store and session tracker.

    Connections are per thread, so ``":memory:"`` gives each thread its own
    empty database; use a file path when the store is shared across threads.

    >>> db = Database(":memory:")
    >>> db.record_launch("app1")
    1
    >>> db.snapshot().launches
    {'app1': 1}
    """

    def __init__(self, db_path: str, notifier: Optional[ChangeNotifier] = None):
        self.db_path = str(db_path)
        self.notifier = notifier
        self._write_lock = threading.Lock()
        self._local = threading.local()

        try:
            if self.db_path != ":memory:" and not Path(self.db_path).exists():
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
                Path(self.db_path).touch()
            self._init_schema()
        except (OSError, sqlite3.Error) as exc:
            raise PersistenceError(
                "Could not open stats store", details=f"{self.db_path}: {exc}"
            ) from exc
        except PersistenceError as exc:
            raise PersistenceError(
                "Could not open stats store", details=f"{self.db_path}: {exc.details}"
            ) from exc

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        if getattr(self._local, "connection", None) is None:
            conn = sqlite3.connect(self.db_path, timeout=30.0, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.row_factory = sqlite3.Row
            self._local.connection = conn
        return self._local.connection

    @contextmanager
    def _writer(self) -> Iterator[sqlite3.Connection]:
        with self._write_lock:
            try:
                conn = self._get_connection()
            except sqlite3.Error as exc:
                raise PersistenceError("Stats store unavailable", details=str(exc)) from exc
            try:
                yield conn
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                raise PersistenceError("Stats store write failed", details=str(exc)) from exc
            except Exception:
                conn.rollback()
                raise

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        try:
            yield self._get_connection()
        except sqlite3.Error as exc:
            raise PersistenceError("Stats store read failed", details=str(exc)) from exc

    def _init_schema(self) -> None:
        with self._writer() as conn:
            conn.executescript(SCHEMA_SQL)
            conn.executescript(INDEXES_SQL)
            conn.execute(
                """INSERT INTO schema_kv (key, value) VALUES ('schema_version', ?)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value""",
                (str(SCHEMA_VERSION),),
            )

    def _notify(self, **kwargs: Any) -> None:
        if self.notifier is not None:
            self.notifier.publish(ChangeEvent(**kwargs))

    def close(self) -> None:
        if getattr(self._local, "connection", None) is not None:
            self._local.connection.close()
            self._local.connection = None

    # ==================================================================
    # Schema key/value
    # ==================================================================

    def get_kv(self, key: str) -> Optional[str]:
        """Read a schema_kv value.

        >>> Database(":memory:").get_kv("schema_version")
        '2'
        """
        with self._reader() as conn:
            row = conn.execute("SELECT value FROM schema_kv WHERE key = ?", (key,)).fetchone()
            return row["value"] if row else None

    def set_kv(self, key: str, value: str) -> None:
        with self._writer() as conn:
            conn.execute(
                """INSERT INTO schema_kv (key, value) VALUES (?, ?)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value""",
                (key, value),
            )

    # ==================================================================
    # Launch counters
    # ==================================================================

    def record_launch(self, project_id: str) -> int:
        """Atomically increment the launch counter; returns the new count.

        >>> db = Database(":memory:")
        >>> db.record_launch("app1"), db.record_launch("app1")
        (1, 2)
        """
        validate_project_id(project_id)
        with self._writer() as conn:
            conn.execute(
                """INSERT INTO launches (project_id, count, updated_at) VALUES (?, 1, ?)
                   ON CONFLICT(project_id) DO UPDATE
                   SET count = count + 1, updated_at = excluded.updated_at""",
                (project_id, _now()),
            )
            count = conn.execute(
                "SELECT count FROM launches WHERE project_id = ?", (project_id,)
            ).fetchone()["count"]
        self._notify(kind="launch", project_id=project_id)
        return count

    def get_launch_count(self, project_id: str) -> int:
        with self._reader() as conn:
            row = conn.execute(
                "SELECT count FROM launches WHERE project_id = ?", (project_id,)
            ).fetchone()
            return row["count"] if row else 0

    # ==================================================================
    # Ratings
    # ==================================================================

    def record_rating(self, project_id: str, value: Any) -> int:
        """Append a rating sample; returns the project's new rating count.

        >>> db = Database(":memory:")
        >>> db.record_rating("app1", 4), db.record_rating("app1", 2)
        (1, 2)
        >>> db.get_rating_summary("app1")
        RatingSummary(average=3.0, count=2)
        """
        validate_project_id(project_id)
        rating = validate_rating(value)
        with self._writer() as conn:
            conn.execute(
                "INSERT INTO ratings (project_id, value, created_at) VALUES (?, ?, ?)",
                (project_id, rating, _now()),
            )
            count = conn.execute(
                "SELECT COUNT(*) AS n FROM ratings WHERE project_id = ?", (project_id,)
            ).fetchone()["n"]
        self._notify(kind="rating", project_id=project_id)
        return count

    def get_rating_summary(self, project_id: str) -> Optional[RatingSummary]:
        with self._reader() as conn:
            row = conn.execute(
                """SELECT AVG(value) AS average, COUNT(*) AS count
                   FROM ratings WHERE project_id = ?""",
                (project_id,),
            ).fetchone()
        if not row or not row["count"]:
            return None
        return RatingSummary(average=row["average"], count=row["count"])

    # ==================================================================
    # Legacy import
    # ==================================================================

    def import_legacy_counters(
        self, launches: dict[str, int], ratings: dict[str, list[float]]
    ) -> tuple[int, int]:
        """Import legacy counters in one transaction.

        Launch counts replace existing rows (idempotent); rating samples
        are appended (not idempotent).  Returns (launch rows, rating rows).
        No change notification is published.
        """
        ts = _now()
        imported_ratings = 0
        with self._writer() as conn:
            for project_id, count in launches.items():
                conn.execute(
                    """INSERT INTO launches (project_id, count, updated_at) VALUES (?, ?, ?)
                       ON CONFLICT(project_id) DO UPDATE
                       SET count = excluded.count, updated_at = excluded.updated_at""",
                    (project_id, count, ts),
                )
            for project_id, values in ratings.items():
                conn.executemany(
                    "INSERT INTO ratings (project_id, value, created_at) VALUES (?, ?, ?)",
                    [(project_id, v, ts) for v in values],
                )
                imported_ratings += len(values)
            conn.execute(
                """INSERT INTO schema_kv (key, value) VALUES ('legacy_imported_at', ?)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value""",
                (ts,),
            )
        return len(launches), imported_ratings

    # ==================================================================
    # Session tracking
    # ==================================================================

    def open_session(self, session_id: str, meta: Optional[dict] = None) -> None:
        """Create or replace the row for a realtime connection."""
        with self._writer() as conn:
            conn.execute(
                """INSERT INTO sessions (id, connected_at, disconnected_at, meta)
                   VALUES (?, ?, NULL, ?)
                   ON CONFLICT(id) DO UPDATE
                   SET connected_at = excluded.connected_at,
                       disconnected_at = NULL,
                       meta = excluded.meta""",
                (session_id, _now(), json.dumps(meta) if meta is not None else None),
            )
        self._notify(kind="session", session_id=session_id, action="connect")

    def close_session(self, session_id: str) -> bool:
        """Soft-close an open session; False if it was unknown or closed.

        >>> db = Database(":memory:")
        >>> db.open_session("c1")
        >>> db.close_session("c1"), db.close_session("c1")
        (True, False)
        """
        with self._writer() as conn:
            cursor = conn.execute(
                """UPDATE sessions SET disconnected_at = ?
                   WHERE id = ? AND disconnected_at IS NULL""",
                (_now(), session_id),
            )
            closed = cursor.rowcount > 0
        if closed:
            self._notify(kind="session", session_id=session_id, action="disconnect")
        return closed

    def update_session_meta(self, session_id: str, meta: Optional[dict]) -> bool:
        with self._writer() as conn:
            cursor = conn.execute(
                "UPDATE sessions SET meta = ? WHERE id = ?",
                (json.dumps(meta) if meta is not None else None, session_id),
            )
            return cursor.rowcount > 0

    def online_count(self) -> int:
        """Number of sessions without a disconnect time.

        >>> db = Database(":memory:")
        >>> db.online_count()
        0
        """
        with self._reader() as conn:
            return self._online(conn)

    @staticmethod
    def _online(conn: sqlite3.Connection) -> int:
        return conn.execute(
            "SELECT COUNT(*) AS n FROM sessions WHERE disconnected_at IS NULL"
        ).fetchone()["n"]

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._reader() as conn:
            row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return self._session_from_row(row) if row else None

    def list_sessions(self, limit: int = 100) -> list[Session]:
        """Most recent sessions first; limit clamped to 1-500.

        >>> Database(":memory:").list_sessions()
        []
        """
        clamped = max(1, min(SESSION_LIST_MAX, limit))
        with self._reader() as conn:
            cursor = conn.execute(
                """SELECT * FROM sessions
                   ORDER BY connected_at DESC, rowid DESC
                   LIMIT ?""",
                (clamped,),
            )
            return [self._session_from_row(row) for row in cursor.fetchall()]

    def close_open_sessions(self) -> int:
        """Close every open session left behind by a previous process.

        Called once at startup, before any client connects.  Returns the
        number of rows closed.
        """
        with self._writer() as conn:
            cursor = conn.execute(
                "UPDATE sessions SET disconnected_at = ? WHERE disconnected_at IS NULL",
                (_now(),),
            )
            return cursor.rowcount

    @staticmethod
    def _session_from_row(row: sqlite3.Row) -> Session:
        meta = None
        if row["meta"]:
            try:
                meta = json.loads(row["meta"])
            except json.JSONDecodeError:
                meta = None
        if meta is not None and not isinstance(meta, dict):
            meta = {"value": meta}
        return Session(
            id=row["id"],
            connected_at=row["connected_at"],
            disconnected_at=row["disconnected_at"],
            meta=meta,
        )

    # ==================================================================
    # Snapshot
    # ==================================================================

    def snapshot(self) -> StatsSnapshot:
        """Recompute the full snapshot from the durable tables.

        The reads are not one transaction; counters only grow, so a
        composite read is at worst slightly behind.
        """
        with self._reader() as conn:
            launches = {
                row["project_id"]: row["count"]
                for row in conn.execute("SELECT project_id, count FROM launches ORDER BY project_id")
            }
            ratings = {
                row["project_id"]: RatingSummary(average=row["average"], count=row["count"])
                for row in conn.execute(
                    """SELECT project_id, AVG(value) AS average, COUNT(*) AS count
                       FROM ratings GROUP BY project_id ORDER BY project_id"""
                )
            }
            online = self._online(conn)
            version_row = conn.execute(
                "SELECT value FROM schema_kv WHERE key = 'schema_version'"
            ).fetchone()
        version = int(version_row["value"]) if version_row else SCHEMA_VERSION
        return StatsSnapshot(version=version, online=online, launches=launches, ratings=ratings)
