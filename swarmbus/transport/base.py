"""Transport contracts shared by the socket and in-memory backends.

A transport is a bidirectional text stream. Writes are fire-and-forget and are
silently dropped once the stream is no longer connected; incoming data, close
and error events are delivered to registered handlers on the event loop.
"""

import logging
from abc import ABC, abstractmethod
from typing import Callable, List

from swarmbus.exceptions import TransportError

logger = logging.getLogger(__name__)

DataHandler = Callable[[str], None]
CloseHandler = Callable[[], None]
ErrorHandler = Callable[[Exception], None]

__all__ = [
    "CloseHandler",
    "DataHandler",
    "ErrorHandler",
    "Transport",
    "TransportError",
    "TransportServer",
]


class Transport(ABC):
    """One end of a bidirectional text stream."""

    def __init__(self) -> None:
        self._data_handlers: List[DataHandler] = []
        self._close_handlers: List[CloseHandler] = []
        self._error_handlers: List[ErrorHandler] = []
        self._close_emitted = False

    @property
    @abstractmethod
    def connected(self) -> bool:
        """Whether writes can currently reach the peer."""

    @abstractmethod
    def write(self, data: str) -> None:
        """Send *data* to the peer; dropped when not connected."""

    @abstractmethod
    def close(self) -> None:
        """Tear the stream down. Closing twice is a no-op."""

    async def wait_closed(self) -> None:
        """Wait for teardown started by close() to finish."""
        return None

    def on_data(self, handler: DataHandler) -> None:
        self._data_handlers.append(handler)

    def on_close(self, handler: CloseHandler) -> None:
        self._close_handlers.append(handler)

    def on_error(self, handler: ErrorHandler) -> None:
        self._error_handlers.append(handler)

    def _emit_data(self, data: str) -> None:
        for handler in list(self._data_handlers):
            try:
                handler(data)
            except Exception:
                logger.exception("Data handler raised")

    def _emit_close(self) -> None:
        if self._close_emitted:
            return
        self._close_emitted = True
        for handler in list(self._close_handlers):
            try:
                handler()
            except Exception:
                logger.exception("Close handler raised")

    def _emit_error(self, error: Exception) -> None:
        if not self._error_handlers:
            logger.warning(f"Unhandled transport error: {error}")
            return
        for handler in list(self._error_handlers):
            try:
                handler(error)
            except Exception:
                logger.exception("Error handler raised")


ConnectionHandler = Callable[[Transport], None]


class TransportServer(ABC):
    """Accepts peers and hands each one over as a Transport."""

    def __init__(self) -> None:
        self._connection_handlers: List[ConnectionHandler] = []

    @property
    @abstractmethod
    def running(self) -> bool:
        """Whether the server is accepting connections."""

    @abstractmethod
    async def start(self) -> None:
        """Begin accepting connections."""

    @abstractmethod
    async def stop(self) -> None:
        """Close every accepted transport and stop listening. Idempotent."""

    def on_connection(self, handler: ConnectionHandler) -> None:
        self._connection_handlers.append(handler)

    def _emit_connection(self, transport: Transport) -> None:
        for handler in list(self._connection_handlers):
            try:
                handler(transport)
            except Exception:
                logger.exception("Connection handler raised")
