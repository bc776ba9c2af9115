"""Transports for the relay: unix domain sockets and an in-memory double."""

from swarmbus.transport.base import Transport, TransportError, TransportServer
from swarmbus.transport.memory import (
    InMemoryTransport,
    InMemoryTransportServer,
    create_memory_transport_pair,
)
from swarmbus.transport.unix_socket import (
    UnixTransport,
    UnixTransportServer,
    clean_stale_sockets,
    connect_unix,
)

__all__ = [
    "InMemoryTransport",
    "InMemoryTransportServer",
    "Transport",
    "TransportError",
    "TransportServer",
    "UnixTransport",
    "UnixTransportServer",
    "clean_stale_sockets",
    "connect_unix",
    "create_memory_transport_pair",
]
