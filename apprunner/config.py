"""Runtime configuration loaded from ``RUNNER_*`` environment variables."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 2001
DEFAULT_MAX_OUTPUT = 50 * 1024 * 1024  # 50 MiB of build output

STATS_DB_NAME = "runner-stats.db"
LEGACY_STATS_NAME = "stats.json"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


@dataclass
class RunnerConfig:
    """Resolved settings for one server process.

    >>> cfg = RunnerConfig(data_dir=Path("/data"))
    >>> cfg.stats_db_path.as_posix()
    '/data/runner-stats.db'
    >>> cfg.legacy_stats_path.as_posix()
    '/data/stats.json'
    """

    data_dir: Path
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    stats_db: Optional[Path] = None
    legacy_stats: Optional[Path] = None
    build_max_output: int = DEFAULT_MAX_OUTPUT
    npm_command: str = "npm"
    # None derives the origins from host/port
    allowed_origins: Optional[list[str]] = None

    @property
    def stats_db_path(self) -> Path:
        return self.stats_db or self.data_dir / STATS_DB_NAME

    @property
    def legacy_stats_path(self) -> Path:
        return self.legacy_stats or self.data_dir / LEGACY_STATS_NAME

    @classmethod
    def from_env(cls) -> "RunnerConfig":
        """Build a config from the environment.

        Raises ValueError when a numeric variable is malformed.
        """
        data_dir = Path(os.environ.get("RUNNER_DATA_DIR") or "data").expanduser()
        stats_db = os.environ.get("RUNNER_STATS_DB")
        legacy = os.environ.get("RUNNER_LEGACY_STATS")
        origins = [
            o.strip() for o in os.environ.get("RUNNER_ALLOWED_ORIGINS", "").split(",") if o.strip()
        ]
        return cls(
            data_dir=data_dir,
            host=os.environ.get("RUNNER_HOST", DEFAULT_HOST),
            port=_env_int("RUNNER_PORT", DEFAULT_PORT),
            stats_db=Path(stats_db).expanduser() if stats_db else None,
            legacy_stats=Path(legacy).expanduser() if legacy else None,
            build_max_output=_env_int("RUNNER_BUILD_MAX_OUTPUT", DEFAULT_MAX_OUTPUT),
            npm_command=os.environ.get("RUNNER_NPM") or "npm",
            allowed_origins=origins or None,
        )


def build_allowed_origins(host: str, port: int) -> list[str]:
    """Build the CORS allowed origins list.

    >>> build_allowed_origins("127.0.0.1", 2001)
    ['http://127.0.0.1:2001', 'http://localhost:2001']
    >>> build_allowed_origins("0.0.0.0", 2001)
    ['*']
    """
    if host == "0.0.0.0":
        return ["*"]
    return [f"http://127.0.0.1:{port}", f"http://localhost:{port}"]
