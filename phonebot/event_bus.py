"""
Event Bus -- log and status fan-out for the bot orchestrator.

The controller publishes two kinds of events:

    LogEntry   -- immutable progress record (run-level or device-scoped)
    RunStatus  -- every aggregate status transition

Observers attach either a plain callback (``subscribe_logs`` /
``subscribe_status``) or an ``EventStream`` (``open_stream``), an async
iterator backed by an ``asyncio.Queue`` that the WebSocket endpoint and
the CLI consume.  Publishing is safe from any thread; callbacks run in the
publisher's thread, stream items are handed to the stream's own loop.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

logger = logging.getLogger("phonebot.events")


# ===================================================================
# EVENT TYPES
# ===================================================================

class RunStatus(str, Enum):
    """Aggregate status of the current (or most recent) run."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class LogLevel(str, Enum):
    INFO = "info"
    ERROR = "error"


@dataclass(frozen=True)
class LogEntry:
    """One progress message; ``device`` is None for run-level messages."""
    message: str
    level: LogLevel = LogLevel.INFO
    device: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "message": self.message,
            "device": self.device,
        }


LogCallback = Callable[[LogEntry], None]
StatusCallback = Callable[[RunStatus], None]
StreamItem = Tuple[str, Union[LogEntry, RunStatus]]


# ===================================================================
# STREAMS
# ===================================================================

class EventStream:
    """
    Async iterator over ``("log", LogEntry)`` / ``("status", RunStatus)`` items.

    Must be opened from inside a running event loop; items published from
    other threads are marshalled onto that loop.
    """

    def __init__(self, bus: EventBus, maxsize: int = 0) -> None:
        self._bus = bus
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    def _put(self, item: StreamItem) -> None:
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            logger.warning("Event stream full, dropping %s event", item[0])

    def push(self, item: StreamItem) -> None:
        if self._closed:
            return
        try:
            self._loop.call_soon_threadsafe(self._put, item)
        except RuntimeError:
            # loop already closed
            self._closed = True

    async def get(self) -> StreamItem:
        return await self._queue.get()

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._bus._remove_stream(self)

    def __aiter__(self) -> EventStream:
        return self

    async def __anext__(self) -> StreamItem:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        return await self._queue.get()

    def __enter__(self) -> EventStream:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


# ===================================================================
# BUS
# ===================================================================

class EventBus:
    """Multi-subscriber publish/subscribe channel for logs and status."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._log_callbacks: List[LogCallback] = []
        self._status_callbacks: List[StatusCallback] = []
        self._streams: List[EventStream] = []

    # ----- Subscription -----

    def subscribe_logs(self, callback: LogCallback) -> Callable[[], None]:
        """Register *callback* for every LogEntry. Returns an unsubscribe function."""
        with self._lock:
            self._log_callbacks.append(callback)
        return lambda: self._discard(self._log_callbacks, callback)

    def subscribe_status(self, callback: StatusCallback) -> Callable[[], None]:
        """Register *callback* for every status transition. Returns an unsubscribe function."""
        with self._lock:
            self._status_callbacks.append(callback)
        return lambda: self._discard(self._status_callbacks, callback)

    def open_stream(self, maxsize: int = 0) -> EventStream:
        """Open a queue-backed stream bound to the current event loop."""
        stream = EventStream(self, maxsize=maxsize)
        with self._lock:
            self._streams.append(stream)
        return stream

    def _discard(self, callbacks: List[Any], callback: Any) -> None:
        with self._lock:
            if callback in callbacks:
                callbacks.remove(callback)

    def _remove_stream(self, stream: EventStream) -> None:
        with self._lock:
            if stream in self._streams:
                self._streams.remove(stream)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._log_callbacks) + len(self._status_callbacks) + len(self._streams)

    # ----- Publication -----

    def publish_log(self, entry: LogEntry) -> None:
        with self._lock:
            callbacks = list(self._log_callbacks)
            streams = list(self._streams)
        for callback in callbacks:
            try:
                callback(entry)
            except Exception:
                logger.exception("Log subscriber %r failed", callback)
        for stream in streams:
            stream.push(("log", entry))

    def publish_status(self, status: RunStatus) -> None:
        with self._lock:
            callbacks = list(self._status_callbacks)
            streams = list(self._streams)
        for callback in callbacks:
            try:
                callback(status)
            except Exception:
                logger.exception("Status subscriber %r failed", callback)
        for stream in streams:
            stream.push(("status", status))
