"""Build orchestration: install-then-compile for one project at a time per id.

A build is a blocking pipeline of external processes run inside the
project directory.  Distinct project ids may build concurrently; a second
request for an id that is already building is rejected with Conflict
instead of racing the first one on the same ``dist/`` tree.

There is no cancellation path.  A client that gives up waiting does not
stop the server-side process, which runs to completion.
"""

import asyncio
import logging
import os
import signal
import subprocess
import threading
from pathlib import Path
from typing import Optional, Sequence

from pydantic import BaseModel

from apprunner.config import DEFAULT_MAX_OUTPUT
from apprunner.errors import Conflict, NotFound
from apprunner.events import ChangeEvent, ChangeNotifier
from apprunner.registry import validate_project_id

logger = logging.getLogger(__name__)

LOCKFILES = ("package-lock.json", "npm-shrinkwrap.json")
READ_CHUNK = 64 * 1024
# Steps get their own process group so children of npm die with it
NEW_SESSION = os.name == "posix"


class BuildResult(BaseModel):
    """Outcome of one executed pipeline."""

    ok: bool
    logs: str = ""
    error: Optional[str] = None


def default_steps(project_dir: Path, npm: str = "npm") -> list[list[str]]:
    """Install (dev tooling included) then ``npm run build``.

    ``--include=dev`` keeps devDependencies such as vite even when the
    host sets NODE_ENV=production.  A lockfile selects the reproducible
    ``npm ci``.

    >>> default_steps(Path("/nonexistent/app"))
    [['npm', 'install', '--include=dev'], ['npm', 'run', 'build']]
    """
    if any((project_dir / name).exists() for name in LOCKFILES):
        install = [npm, "ci", "--include=dev"]
    else:
        install = [npm, "install", "--include=dev"]
    return [install, [npm, "run", "build"]]


class BuildOrchestrator:
    """Runs project builds, serialized per project id."""

    def __init__(
        self,
        root: Path,
        notifier: Optional[ChangeNotifier] = None,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT,
        npm_command: str = "npm",
        steps: Optional[Sequence[Sequence[str]]] = None,
    ):
        self.root = Path(root)
        self.notifier = notifier
        self.max_output_bytes = max_output_bytes
        self.npm_command = npm_command
        self._steps = [list(s) for s in steps] if steps is not None else None
        self._in_flight: set[str] = set()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Single-flight bookkeeping
    # ------------------------------------------------------------------

    def is_building(self, project_id: str) -> bool:
        with self._lock:
            return project_id in self._in_flight

    @property
    def in_flight(self) -> list[str]:
        with self._lock:
            return sorted(self._in_flight)

    def _claim(self, project_id: str) -> None:
        with self._lock:
            if project_id in self._in_flight:
                raise Conflict(
                    "Build already in progress",
                    details=f"A build for {project_id} is running; retry when it finishes.",
                )
            self._in_flight.add(project_id)

    def _release(self, project_id: str) -> None:
        with self._lock:
            self._in_flight.discard(project_id)

    def _publish(self, project_id: str, action: str) -> None:
        if self.notifier is not None:
            self.notifier.publish(ChangeEvent(kind="build", project_id=project_id, action=action))

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def build(self, project_id: str) -> BuildResult:
        """Run the pipeline for *project_id* and wait for it to exit.

        Raises InvalidInput for unsafe ids, NotFound for a missing project
        directory and Conflict when the id is already building.  Pipeline
        failures are returned as ``BuildResult(ok=False)``.
        """
        validate_project_id(project_id)
        project_dir = self.root / project_id
        if not project_dir.is_dir():
            raise NotFound("Project not found", details=project_id)

        self._claim(project_id)
        try:
            logger.info("Starting build for %s", project_id)
            self._publish(project_id, "started")
            result = self._run_pipeline(project_dir)
            # The final state goes out while the id is still claimed
            if result.ok:
                logger.info("Build success for %s", project_id)
                self._publish(project_id, "succeeded")
            else:
                logger.warning("Build failed for %s: %s", project_id, result.error)
                self._publish(project_id, "failed")
        finally:
            self._release(project_id)
        return result

    async def build_async(self, project_id: str) -> BuildResult:
        """Run :meth:`build` on a worker thread."""
        return await asyncio.to_thread(self.build, project_id)

    def _run_pipeline(self, project_dir: Path) -> BuildResult:
        steps = self._steps or default_steps(project_dir, self.npm_command)
        captured = bytearray()
        env = os.environ.copy()

        for argv in steps:
            captured.extend(f"$ {' '.join(argv)}\n".encode())
            error = self._run_step(argv, project_dir, env, captured)
            if error is not None:
                logs = captured.decode("utf-8", errors="replace")
                return BuildResult(ok=False, logs=logs, error=error)

        return BuildResult(ok=True, logs=captured.decode("utf-8", errors="replace"))

    def _run_step(
        self, argv: list[str], cwd: Path, env: dict, captured: bytearray
    ) -> Optional[str]:
        """Run one command, appending merged output; returns an error or None."""
        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(cwd),
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=NEW_SESSION,
            )
        except OSError as exc:
            message = f"{argv[0]}: could not start ({exc.strerror or exc})"
            captured.extend(f"{message}\n".encode())
            return message

        with proc:
            while True:
                chunk = proc.stdout.read1(READ_CHUNK)
                if not chunk:
                    break
                captured.extend(chunk)
                if len(captured) > self.max_output_bytes:
                    self._kill(proc)
                    proc.wait()
                    del captured[self.max_output_bytes:]
                    message = f"Build output exceeded {self.max_output_bytes} bytes"
                    captured.extend(f"\n{message}\n".encode())
                    return message
            returncode = proc.wait()

        if returncode != 0:
            message = f"`{' '.join(argv)}` exited with status {returncode}"
            captured.extend(f"{message}\n".encode())
            return message
        return None

    @staticmethod
    def _kill(proc: subprocess.Popen) -> None:
        """Kill a step together with every process it started."""
        if NEW_SESSION:
            try:
                os.killpg(proc.pid, signal.SIGKILL)
                return
            except ProcessLookupError:
                return
            except OSError as exc:
                logger.debug("Could not kill process group %s: %s", proc.pid, exc)
        proc.kill()
