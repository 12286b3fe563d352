"""Realtime broadcaster for the dashboard's WebSocket channel.

Tracks connected clients by connection id and pushes a freshly computed
stats snapshot whenever the store announces a committed change.  The
registry only looks clients up; the endpoint in ``main.py`` owns each
socket's lifetime.

Server -> client events:
    session:update  {"online": int}
    stats:update    {"stats": StatsSnapshot}
    build:update    {"projectId": str, "state": str}

>>> broadcaster = StatsBroadcaster(db=None)
>>> broadcaster.client_count
0
"""

import asyncio
import json
import logging
import time
from concurrent.futures import Future
from typing import Callable, Iterable, Optional

from fastapi import WebSocket

from apprunner.events import ChangeEvent, ChangeNotifier

logger = logging.getLogger(__name__)


class StatsBroadcaster:
    """Connection-id keyed client registry with snapshot fan-out."""

    def __init__(self, db):
        self.db = db
        self._clients: dict[str, WebSocket] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        # Serializes snapshot pushes so no client sees an older snapshot
        # after a newer one
        self._push_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def attach(self, notifier: ChangeNotifier, loop: asyncio.AbstractEventLoop) -> None:
        """Subscribe to *notifier*; pushes are scheduled on *loop*."""
        self._loop = loop
        self._unsubscribe = notifier.subscribe(self.handle_change)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._loop = None

    def handle_change(self, event: ChangeEvent) -> None:
        """Notifier listener; may run on any thread.

        Schedules the push and returns at once, so the writer that
        triggered the change never waits for fan-out.
        """
        loop = self._loop
        if loop is None or loop.is_closed():
            return

        if event.kind in ("launch", "rating"):
            coro = self.push_snapshot(include_session=False)
        elif event.kind == "session":
            exclude = [event.session_id] if event.action == "connect" and event.session_id else []
            coro = self.push_snapshot(exclude=exclude)
        elif event.kind == "build":
            coro = self.broadcast(
                "build:update", {"projectId": event.project_id, "state": event.action}
            )
        else:
            return

        try:
            future = asyncio.run_coroutine_threadsafe(coro, loop)
        except RuntimeError:
            coro.close()
            logger.debug("Event loop gone, dropped %s push", event.kind)
            return
        future.add_done_callback(self._log_push_failure)

    @staticmethod
    def _log_push_failure(future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.warning("Realtime push failed: %s", exc)

    # ------------------------------------------------------------------
    # Client registry
    # ------------------------------------------------------------------

    async def connect(self, connection_id: str, ws: WebSocket) -> None:
        self._clients[connection_id] = ws

    def disconnect(self, connection_id: str) -> None:
        """Forget a client; unknown ids are a no-op.

        >>> StatsBroadcaster(db=None).disconnect("missing")
        """
        self._clients.pop(connection_id, None)

    @property
    def client_count(self) -> int:
        return len(self._clients)

    @property
    def connection_ids(self) -> list[str]:
        return list(self._clients)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    @staticmethod
    def _message(topic: str, payload: Optional[dict], source: Optional[str]) -> str:
        return json.dumps(
            {
                "type": topic,
                "payload": payload or {},
                "source": source or "server",
                "timestamp": int(time.time()),
            }
        )

    async def _send_many(self, targets: Iterable[str], messages: list[str]) -> None:
        dead: list[str] = []
        for connection_id in targets:
            ws = self._clients.get(connection_id)
            if ws is None:
                continue
            try:
                for message in messages:
                    await ws.send_text(message)
            except Exception:
                dead.append(connection_id)
        for connection_id in dead:
            self._clients.pop(connection_id, None)
            logger.debug("Pruned dead WebSocket client %s", connection_id)

    async def send(
        self, connection_id: str, topic: str, payload: Optional[dict] = None
    ) -> None:
        """Send one event to a single client."""
        await self._send_many([connection_id], [self._message(topic, payload, None)])

    async def broadcast(
        self,
        topic: str,
        payload: Optional[dict] = None,
        source: Optional[str] = None,
        exclude: Iterable[str] = (),
    ) -> None:
        """Send an event to every connected client except *exclude*.

        Dead clients (failed sends) are pruned.
        """
        skip = set(exclude)
        targets = [cid for cid in list(self._clients) if cid not in skip]
        await self._send_many(targets, [self._message(topic, payload, source)])

    def _snapshot_messages(self, include_session: bool) -> list[str]:
        snapshot = self.db.snapshot()
        messages = []
        if include_session:
            messages.append(self._message("session:update", {"online": snapshot.online}, None))
        messages.append(
            self._message("stats:update", {"stats": snapshot.model_dump(mode="json")}, None)
        )
        return messages

    async def push_snapshot(
        self, exclude: Iterable[str] = (), include_session: bool = True
    ) -> None:
        """Recompute the snapshot and push it to all clients.

        The snapshot is read inside the push lock, after the triggering
        write committed.
        """
        skip = set(exclude)
        async with self._push_lock:
            if not self._clients:
                return
            messages = self._snapshot_messages(include_session)
            targets = [cid for cid in list(self._clients) if cid not in skip]
            await self._send_many(targets, messages)

    async def greet(self, connection_id: str) -> None:
        """Send the current online count and snapshot to a new client."""
        async with self._push_lock:
            messages = self._snapshot_messages(include_session=True)
            await self._send_many([connection_id], messages)
