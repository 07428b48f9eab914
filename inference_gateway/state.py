"""
Connection state machine shared by all backends.
"""

import asyncio
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Set

from loguru import logger


class ConnectionStatus(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"

    @property
    def display_name(self) -> str:
        return {
            ConnectionStatus.DISCONNECTED: "Disconnected",
            ConnectionStatus.CONNECTING: "Connecting...",
            ConnectionStatus.CONNECTED: "Connected",
            ConnectionStatus.ERROR: "Error",
        }[self]


@dataclass(frozen=True)
class ConnectionSnapshot:
    """One consistent view of a backend's connection state."""
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    error: Optional[BaseException] = None

    @property
    def is_connected(self) -> bool:
        return self.status is ConnectionStatus.CONNECTED

    @property
    def display_text(self) -> str:
        if self.status is ConnectionStatus.ERROR and self.error is not None:
            return f"Error: {self.error}"
        return self.status.display_name


Listener = Callable[[ConnectionSnapshot], None]


class ConnectionState:
    """
    Single-writer, multi-reader connection state.

    Each transition publishes a new immutable snapshot by swapping a single
    reference, so readers never see a half-applied transition. ``error`` on
    the snapshot is non-None only while the status is ERROR.

    ``last_error`` is set by every transition into ERROR and cleared by any
    other transition. ``record_failure`` is the one exception: per-request
    failures set it without changing connectivity.
    """

    def __init__(self):
        self._snapshot = ConnectionSnapshot()
        self._last_error: Optional[BaseException] = None
        self._listeners: List[Listener] = []
        self._listener_tasks: Set[asyncio.Future] = set()
        self._write_lock = threading.Lock()

    @property
    def snapshot(self) -> ConnectionSnapshot:
        return self._snapshot

    @property
    def status(self) -> ConnectionStatus:
        return self._snapshot.status

    @property
    def is_connected(self) -> bool:
        return self._snapshot.is_connected

    @property
    def last_error(self) -> Optional[BaseException]:
        return self._last_error

    def add_listener(self, listener: Listener):
        """Register a callback that receives every new snapshot."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def to_connecting(self):
        self._publish(ConnectionSnapshot(ConnectionStatus.CONNECTING))

    def to_connected(self):
        self._publish(ConnectionSnapshot(ConnectionStatus.CONNECTED))

    def to_disconnected(self):
        self._publish(ConnectionSnapshot(ConnectionStatus.DISCONNECTED))

    def to_error(self, cause: BaseException):
        self._publish(ConnectionSnapshot(ConnectionStatus.ERROR, cause))

    def record_failure(self, cause: BaseException):
        """Remember a failure without changing connectivity."""
        with self._write_lock:
            self._last_error = cause

    def _publish(self, snapshot: ConnectionSnapshot):
        with self._write_lock:
            previous = self._snapshot
            self._last_error = snapshot.error
            self._snapshot = snapshot

        if previous.status is not snapshot.status:
            logger.debug(f"Connection state: {previous.status.value} -> {snapshot.status.value}")
        self._notify(snapshot)

    def _notify(self, snapshot: ConnectionSnapshot):
        for listener in list(self._listeners):
            try:
                result = listener(snapshot)
                if asyncio.iscoroutine(result):
                    task = asyncio.ensure_future(result)
                    self._listener_tasks.add(task)
                    task.add_done_callback(self._listener_done)
            except Exception as e:
                logger.error(f"Connection listener error: {e}")

    def _listener_done(self, task: asyncio.Future):
        self._listener_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Connection listener error: {task.exception()}")

    def __repr__(self) -> str:
        return f"ConnectionState(status={self.status.value}, last_error={self._last_error!r})"
