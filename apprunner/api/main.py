"""FastAPI application for the runner dashboard."""

import asyncio
import json
import logging
import os
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from apprunner import __version__
from apprunner.api.websocket import StatsBroadcaster
from apprunner.builder import BuildOrchestrator
from apprunner.config import RunnerConfig, build_allowed_origins
from apprunner.errors import PersistenceError, RunnerError
from apprunner.events import ChangeNotifier
from apprunner.registry import ProjectRegistry
from apprunner.web.database import Database
from apprunner.web.legacy import import_legacy_snapshot

logger = logging.getLogger(__name__)

WS_KEEPALIVE_INTERVAL = 30  # seconds between WebSocket pings


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown lifecycle.

    A stats store that cannot be opened aborts startup.
    """
    config = RunnerConfig.from_env()
    config.data_dir.mkdir(parents=True, exist_ok=True)
    app.state.config = config

    notifier = ChangeNotifier()
    db = Database(str(config.stats_db_path), notifier=notifier)
    logger.info("Stats store opened at %s", config.stats_db_path)

    # Sessions still open were left by a previous process
    closed = db.close_open_sessions()
    if closed:
        logger.info("Closed %d session(s) left open by a previous run", closed)

    import_legacy_snapshot(db, config.legacy_stats_path)

    app.state.db = db
    app.state.notifier = notifier
    app.state.registry = ProjectRegistry(config.data_dir)
    app.state.builder = BuildOrchestrator(
        config.data_dir,
        notifier=notifier,
        max_output_bytes=config.build_max_output,
        npm_command=config.npm_command,
    )
    app.state.broadcaster = StatsBroadcaster(db)
    app.state.broadcaster.attach(notifier, asyncio.get_running_loop())
    app.state.allowed_origins = config.allowed_origins or build_allowed_origins(
        config.host, config.port
    )

    if config.host == "0.0.0.0":
        logger.warning("Dashboard exposed to network; put it behind a proxy or VPN")
    logger.info("Scanning for projects in: %s", config.data_dir)

    yield

    app.state.broadcaster.detach()
    try:
        db.close()
    except Exception as exc:
        logger.debug("Database close failed: %s", exc)


app = FastAPI(
    title="app-runner dashboard",
    description="Discovers, builds and tracks usage of locally staged web apps.",
    version=__version__,
    lifespan=lifespan,
)

# At middleware init time we read env vars directly (lifespan hasn't run yet).
_cors_origins = [
    o.strip() for o in os.environ.get("RUNNER_ALLOWED_ORIGINS", "").split(",") if o.strip()
] or build_allowed_origins(
    os.environ.get("RUNNER_HOST", "127.0.0.1"),
    int(os.environ.get("RUNNER_PORT") or "2001"),
)
# allow_credentials must be False when origins is ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials="*" not in _cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Exception handlers ---


@app.exception_handler(RunnerError)
async def runner_error_handler(request: Request, exc: RunnerError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    code = "NOT_FOUND" if exc.status_code == status.HTTP_404_NOT_FOUND else "HTTP_ERROR"
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail), "code": code},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}"
        for err in exc.errors()
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "Invalid input", "details": details, "code": "INVALID_INPUT"},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "An internal error occurred", "code": "INTERNAL_ERROR"},
    )


# --- Realtime channel ---


def _handle_client_message(db: Database, connection_id: str, raw: str) -> None:
    """Apply an optional client -> server event.

    Only ``session:join {meta}`` is understood; anything else is ignored.
    """
    try:
        message = json.loads(raw)
    except json.JSONDecodeError:
        return
    if not isinstance(message, dict) or message.get("type") != "session:join":
        return
    payload = message.get("payload") or {}
    meta = payload.get("meta") if isinstance(payload, dict) else None
    if meta is not None and not isinstance(meta, dict):
        meta = {"value": meta}
    try:
        db.update_session_meta(connection_id, meta)
    except PersistenceError as exc:
        # The socket stays open; only the metadata is lost
        logger.warning("Could not store meta for session %s: %s", connection_id, exc.details)


@app.websocket("/api/ws")
async def websocket_endpoint(ws: WebSocket):
    """Realtime stats channel.

    Each connection is a session row; its id is generated here.  On
    connect the client receives ``session:update`` and ``stats:update``;
    other clients receive the new online count.
    """
    # Browsers always send Origin; non-browser clients may omit it
    allowed = getattr(app.state, "allowed_origins", ["*"])
    origin = ws.headers.get("origin")
    if "*" not in allowed and origin is not None and origin not in allowed:
        await ws.close(code=4003, reason="Origin not allowed")
        return

    await ws.accept()

    db: Database = app.state.db
    broadcaster: StatsBroadcaster = app.state.broadcaster
    connection_id = uuid.uuid4().hex
    meta = {"userAgent": ws.headers.get("user-agent")} if ws.headers.get("user-agent") else None

    try:
        db.open_session(connection_id, meta)
    except PersistenceError as exc:
        logger.warning("Could not record session %s: %s", connection_id, exc.details)
        await ws.close(code=1011, reason="Stats store unavailable")
        return

    await broadcaster.connect(connection_id, ws)
    logger.debug("WebSocket client connected (%s, total=%d)", connection_id, broadcaster.client_count)

    try:
        await broadcaster.greet(connection_id)

        # Server-side keepalive so reverse proxies keep the socket open
        async def _keepalive():
            while True:
                await asyncio.sleep(WS_KEEPALIVE_INTERVAL)
                try:
                    await ws.send_text(json.dumps({"type": "ping"}))
                except Exception:
                    break

        keepalive_task = asyncio.create_task(_keepalive())
        try:
            while True:
                raw = await ws.receive_text()
                _handle_client_message(db, connection_id, raw)
        except WebSocketDisconnect:
            pass
        finally:
            keepalive_task.cancel()
            try:
                await keepalive_task
            except asyncio.CancelledError:
                pass
    finally:
        broadcaster.disconnect(connection_id)
        try:
            db.close_session(connection_id)
        except PersistenceError as exc:
            logger.warning("Could not close session %s: %s", connection_id, exc.details)
        logger.debug("WebSocket client disconnected (total=%d)", broadcaster.client_count)


# --- Include route modules ---

from apprunner.api.routes import projects, stats, system  # noqa: E402

app.include_router(system.router, prefix="/api", tags=["system"])
app.include_router(projects.router, prefix="/api", tags=["projects"])
app.include_router(stats.router, prefix="/api", tags=["stats"])
