"""In-process change notifications.

Writers (the stats store, the session tracker, the build orchestrator)
publish a :class:`ChangeEvent` after their write is durable; subscribers
such as the realtime broadcaster react to it.  Listeners are called
synchronously on the publishing thread and must hand off any slow work.

>>> notifier = ChangeNotifier()
>>> seen = []
>>> unsubscribe = notifier.subscribe(seen.append)
>>> notifier.publish(ChangeEvent(kind="launch", project_id="app1"))
>>> seen[0].project_id
'app1'
>>> unsubscribe()
>>> notifier.listener_count
0
"""

import logging
import threading
from typing import Callable, Literal, Optional

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

ChangeKind = Literal["launch", "rating", "session", "build"]


class ChangeEvent(BaseModel):
    """A committed mutation of launches, ratings, sessions or builds."""

    model_config = ConfigDict(frozen=True)

    kind: ChangeKind
    project_id: Optional[str] = None
    session_id: Optional[str] = None
    # session: connect/disconnect; build: started/succeeded/failed
    action: Optional[str] = None


Listener = Callable[[ChangeEvent], None]


class ChangeNotifier:
    """Typed subscription point for committed changes."""

    def __init__(self):
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; returns a callable that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def publish(self, event: ChangeEvent) -> None:
        """Deliver *event* to every listener.

        A failing listener is logged and skipped; the write that produced
        the event has already committed.
        """
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Change listener failed for %s event", event.kind)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)
