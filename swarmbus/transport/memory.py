"""In-process transport pair for deterministic tests.

Both ends are wired straight to each other: a write on one side runs the
peer's data handlers before ``write`` returns, and closing either end closes
the other, the way a real socket teardown would.
"""

import logging
from typing import List, Optional, Tuple

from swarmbus.exceptions import TransportError
from swarmbus.transport.base import Transport, TransportServer

logger = logging.getLogger(__name__)


class InMemoryTransport(Transport):
    """One end of an in-memory pair."""

    def __init__(self) -> None:
        super().__init__()
        self._peer: Optional["InMemoryTransport"] = None
        self._connected = True

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def peer(self) -> Optional["InMemoryTransport"]:
        return self._peer

    def write(self, data: str) -> None:
        peer = self._peer
        if not self._connected or peer is None or not peer.connected:
            return
        peer._emit_data(data)

    def close(self) -> None:
        if not self._connected:
            return
        self._connected = False
        self._emit_close()
        if self._peer is not None:
            self._peer.close()

    def inject_error(self, error: Exception) -> None:
        """Simulate an I/O failure on this end."""
        self._emit_error(error)


def create_memory_transport_pair() -> Tuple[InMemoryTransport, InMemoryTransport]:
    """Create two transports wired to each other."""
    left = InMemoryTransport()
    right = InMemoryTransport()
    left._peer = right
    right._peer = left
    return left, right


class InMemoryTransportServer(TransportServer):
    """Server double whose ``connect`` synthesizes a wired pair."""

    def __init__(self) -> None:
        super().__init__()
        self._running = False
        self._accepted: List[InMemoryTransport] = []

    @property
    def running(self) -> bool:
        return self._running

    @property
    def accepted(self) -> List[InMemoryTransport]:
        """Server-side ends that are still open."""
        return list(self._accepted)

    async def start(self) -> None:
        self._running = True

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        for transport in list(self._accepted):
            transport.close()
        self._accepted.clear()

    def connect(self) -> InMemoryTransport:
        """Open a connection and return the client end.

        Raises:
            TransportError: If the server is not running
        """
        if not self._running:
            raise TransportError("In-memory server is not running")

        client_end, server_end = create_memory_transport_pair()
        self._accepted.append(server_end)
        server_end.on_close(lambda: self._forget(server_end))
        self._emit_connection(server_end)
        return client_end

    def _forget(self, transport: InMemoryTransport) -> None:
        if transport in self._accepted:
            self._accepted.remove(transport)
