"""Event system — append-only log with streaming and listener support."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Callable

from planrunner.models import Event

logger = logging.getLogger(__name__)

Listener = Callable[[Event], None]


class EventBus:
    """Append-only event log with subscription support.

    Queue subscribers feed the WebSocket stream; listeners are plain callbacks
    whose failures are logged and never reach the emitter.
    """

    def __init__(self, log_file: Path | None = None, max_history: int = 5000):
        self._log_file = log_file
        self._max_history = max_history
        self._subscribers: list[asyncio.Queue] = []
        self._listeners: list[tuple[str | None, Listener]] = []
        self._history: list[Event] = []

        if log_file:
            log_file.parent.mkdir(parents=True, exist_ok=True)

    def emit(self, event: Event):
        """Emit an event — log and notify subscribers."""
        self._history.append(event)
        if len(self._history) > self._max_history:
            del self._history[: len(self._history) - self._max_history]
        self._persist(event)
        self._notify(event)
        logger.debug(f"Event: {event.type} [{event.plan_id}] {event.data}")

    def emit_simple(self, type: str, plan_id: str, **data):
        """Convenience: emit with keyword args."""
        self.emit(Event(type=type, plan_id=plan_id, data=data))

    def recent(self, limit: int = 50, offset: int = 0, plan_id: str | None = None) -> list[Event]:
        """Get recent events (paginated), optionally for one plan."""
        history = self._history if plan_id is None else [e for e in self._history if e.plan_id == plan_id]
        start = max(0, len(history) - offset - limit)
        end = max(0, len(history) - offset)
        return history[start:end]

    def subscribe(self) -> asyncio.Queue:
        """Subscribe to live events."""
        q: asyncio.Queue = asyncio.Queue(maxsize=1000)
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue):
        if q in self._subscribers:
            self._subscribers.remove(q)

    def on(self, listener: Listener, event_type: str | None = None) -> Callable[[], None]:
        """Register a callback for every event (or one type). Returns an unsubscribe function."""
        entry = (event_type, listener)
        self._listeners.append(entry)

        def off():
            if entry in self._listeners:
                self._listeners.remove(entry)

        return off

    def _persist(self, event: Event):
        if self._log_file:
            with open(self._log_file, "a") as f:
                f.write(json.dumps(event.to_dict(), default=str) + "\n")

    def _notify(self, event: Event):
        for q in self._subscribers:
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Dropping event {event.type} for a slow subscriber")
        for event_type, listener in list(self._listeners):
            if event_type is not None and event_type != event.type:
                continue
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener failed on {event.type}: {e}", exc_info=True)
