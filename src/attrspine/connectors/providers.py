"""
Scoped connection acquisition and a bounded connection pool.

``leased(provider)`` is the only way the orchestrator touches connections:
one ``release`` per successful ``acquire``, on every exit path, and a failed
acquisition never releases.

``BoundedPool`` is the thread-safe pool the directory binding is built on:
a ``threading.BoundedSemaphore`` caps live connections, idle ones are kept
on a LIFO stack so the most recently used (and most likely still open)
connection is reused first.

Architecture:
    ::

        acquire() ──► semaphore.acquire(timeout) ──► idle.pop() or factory()
                                                            │
        release() ◄── alive? push to idle : dispose() ◄─────┘
                      semaphore.release()
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any, Generic, TypeVar

from attrspine.core.errors import ConnectionError, ConnectorError
from attrspine.core.logging import get_logger
from attrspine.core.protocols import ConnectionProvider

logger = get_logger(__name__)

C = TypeVar("C")


def release_quietly(provider: ConnectionProvider, connection: Any, log: Any = None) -> None:
    """Release *connection*, logging instead of raising on failure."""
    try:
        provider.release(connection)
    except Exception as exc:  # noqa: BLE001
        (log or logger).warning(
            "connection.release_failed",
            backend=getattr(provider, "backend", None),
            error_type=type(exc).__name__,
            error=str(exc),
        )


@contextmanager
def leased(provider: ConnectionProvider, *, log: Any = None) -> Iterator[Any]:
    """
    Lease a connection for the duration of a ``with`` block.

    Acquisition failures surface as ``ConnectionError``; exceptions raised
    inside the block propagate after the connection is released.

    Example:
        with leased(provider) as conn:
            raw = query.execute(conn, timeout=2.0)
    """
    try:
        connection = provider.acquire()
    except ConnectionError:
        raise
    except ConnectorError as exc:
        raise ConnectionError(f"Connection acquisition failed: {exc.message}", cause=exc) from exc
    except Exception as exc:
        raise ConnectionError(f"Connection acquisition failed: {exc}", cause=exc) from exc
    try:
        yield connection
    finally:
        release_quietly(provider, connection, log)


class BoundedPool(Generic[C]):
    """
    Thread-safe pool of at most ``size`` live connections.

    Args:
        factory: Creates and opens a new connection; may raise
        dispose: Closes a connection; failures are logged
        is_alive: Health predicate consulted on release and on reuse
        size: Maximum number of live connections
        acquire_timeout: Seconds to wait for a free slot
        name: Used in log events
    """

    def __init__(
        self,
        factory: Callable[[], C],
        dispose: Callable[[C], None],
        *,
        is_alive: Callable[[C], bool] | None = None,
        size: int = 4,
        acquire_timeout: float = 5.0,
        name: str = "pool",
    ):
        if size < 1:
            raise ValueError("pool size must be at least 1")
        self._factory = factory
        self._dispose = dispose
        self._is_alive = is_alive or (lambda _conn: True)
        self._size = size
        self._acquire_timeout = acquire_timeout
        self._name = name

        self._slots = threading.BoundedSemaphore(size)
        self._lock = threading.Lock()
        self._idle: list[C] = []
        self._leased: dict[int, C] = {}
        self._closed = False

    @property
    def size(self) -> int:
        return self._size

    @property
    def idle_count(self) -> int:
        with self._lock:
            return len(self._idle)

    @property
    def leased_count(self) -> int:
        with self._lock:
            return len(self._leased)

    @property
    def closed(self) -> bool:
        return self._closed

    def acquire(self) -> C:
        """Lease a connection. Raises ConnectionError on timeout or factory failure."""
        if self._closed:
            raise ConnectionError(f"{self._name} is closed")
        if not self._slots.acquire(timeout=self._acquire_timeout):
            raise ConnectionError(
                f"{self._name} exhausted: no connection free within {self._acquire_timeout}s"
            ).with_context(pool_size=self._size)

        try:
            connection = self._take_idle()
            if connection is None:
                connection = self._factory()
        except ConnectionError:
            self._slots.release()
            raise
        except Exception as exc:
            self._slots.release()
            raise ConnectionError(f"{self._name} could not open a connection: {exc}", cause=exc) from exc

        with self._lock:
            self._leased[id(connection)] = connection
        return connection

    def _take_idle(self) -> C | None:
        while True:
            with self._lock:
                if not self._idle:
                    return None
                connection = self._idle.pop()
            if self._check_alive(connection):
                return connection
            self._discard(connection)

    def release(self, connection: C) -> None:
        """Return a leased connection. Idempotent; unknown connections are ignored."""
        with self._lock:
            owned = self._leased.pop(id(connection), None)
            if owned is None:
                return
            keep = not self._closed
        try:
            if keep and self._check_alive(connection):
                with self._lock:
                    self._idle.append(connection)
            else:
                self._discard(connection)
        finally:
            self._slots.release()

    def _check_alive(self, connection: C) -> bool:
        """Health predicate; a predicate that raises marks the connection dead."""
        try:
            return bool(self._is_alive(connection))
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"{self._name}.health_check_failed", error_type=type(exc).__name__, error=str(exc))
            return False

    def _discard(self, connection: C) -> None:
        try:
            self._dispose(connection)
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"{self._name}.dispose_failed", error_type=type(exc).__name__, error=str(exc))

    def close(self) -> None:
        """Dispose idle connections; leased ones are disposed when released. Idempotent."""
        with self._lock:
            self._closed = True
            idle, self._idle = self._idle, []
        for connection in idle:
            self._discard(connection)
        logger.debug(f"{self._name}.closed", disposed=len(idle))

    def reopen(self) -> None:
        """Allow acquisition again after ``close()``."""
        self._closed = False


__all__ = ["leased", "release_quietly", "BoundedPool"]
