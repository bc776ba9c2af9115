"""
Relay server for a local swarm group.

The server accepts transports, registers each one under a unique name, and
relays messages between registered connections:

- nudge, blocker, done and progress go to every other reachable connection
- instruct goes to one named connection, to every member of a swarm, or to
  everyone when untargeted
- an instruct naming a worker that is not registered here climbs to the
  parent group's server over the parent link, unchanged; an error the parent
  reports for that target is passed back to the worker that sent it

All callbacks run on the event loop, so the registry needs no locking.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, Set, Tuple

from rich.tree import Tree

from swarmbus.hierarchy import render_tree
from swarmbus.protocol import (
    ErrorMessage,
    FrameDecoder,
    InstructMessage,
    ProtocolError,
    RegisteredMessage,
    RegisterMessage,
    RelayableMessage,
    Role,
    is_register_frame,
    parse_client_message,
    parse_register,
    relay,
    serialize,
)
from swarmbus.router import Router
from swarmbus.transport.base import Transport, TransportServer

logger = logging.getLogger(__name__)

# Forwarded instructs remembered while waiting for a possible parent error
FORWARD_BACKLOG = 256


class ConnectionState(str, Enum):
    UNREGISTERED = "unregistered"
    REGISTERED = "registered"
    CLOSED = "closed"


@dataclass(eq=False)
class Connection:
    """A transport accepted by the server, plus the identity it registered."""

    transport: Transport
    name: Optional[str] = None
    role: Optional[Role] = None
    swarm: Optional[str] = None
    code: Optional[str] = None
    state: ConnectionState = ConnectionState.UNREGISTERED
    decoder: FrameDecoder = field(default_factory=FrameDecoder, repr=False)

    @property
    def registered(self) -> bool:
        return self.state is ConnectionState.REGISTERED

    def send(self, message: Any) -> None:
        self.transport.write(serialize(message))

    def send_error(self, text: str) -> None:
        self.send(ErrorMessage(message=text))


class Registry:
    """Registered connections by name. Owned by exactly one RelayServer."""

    def __init__(self) -> None:
        self._connections: Dict[str, Connection] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, name: object) -> bool:
        return name in self._connections

    def __iter__(self) -> Iterator[Connection]:
        return iter(list(self._connections.values()))

    def get(self, name: str) -> Optional[Connection]:
        return self._connections.get(name)

    def names(self) -> List[str]:
        return list(self._connections)

    def add(self, connection: Connection) -> None:
        if connection.name is None:
            raise ValueError("Cannot register a connection without a name")
        if connection.name in self._connections:
            raise KeyError(f"Duplicate name: {connection.name!r}")
        self._connections[connection.name] = connection

    def remove(self, connection: Connection) -> bool:
        """Drop *connection* if it is the one registered under its name."""
        if connection.name is None:
            return False
        if self._connections.get(connection.name) is not connection:
            return False
        del self._connections[connection.name]
        return True

    def in_swarm(self, swarm: str) -> List[Connection]:
        return [c for c in self._connections.values() if c.swarm == swarm]

    def clear(self) -> None:
        self._connections.clear()


RegisterHandler = Callable[[Connection], None]
MessageHandler = Callable[[Connection, RelayableMessage], None]
DisconnectHandler = Callable[[Connection], None]
ErrorHandler = Callable[[Connection, Exception], None]


class RelayServer:
    """Registers workers and relays their messages.

    Args:
        transport_server: Source of accepted transports
        router: Reachability rules; everyone reaches everyone by default
        parent_link: Transport to the parent group's server, used for
            instructs whose target is not registered locally. The server
            owns it and closes it on stop().
    """

    def __init__(
        self,
        transport_server: TransportServer,
        router: Optional[Router] = None,
        parent_link: Optional[Transport] = None,
    ):
        self.transport_server = transport_server
        self.router = router or Router()
        self.parent_link = parent_link

        self._registry: Optional[Registry] = None
        self._pending: Set[Connection] = set()
        self._forwards: Deque[Tuple[Connection, str]] = deque(maxlen=FORWARD_BACKLOG)
        self._parent_decoder = FrameDecoder()

        self._register_handlers: List[RegisterHandler] = []
        self._message_handlers: List[MessageHandler] = []
        self._disconnect_handlers: List[DisconnectHandler] = []
        self._error_handlers: List[ErrorHandler] = []

        transport_server.on_connection(self._handle_connection)
        if parent_link is not None:
            parent_link.on_data(self._handle_parent_data)

    @property
    def running(self) -> bool:
        return self._registry is not None

    @property
    def registry(self) -> Optional[Registry]:
        """The live registry, or None while the server is stopped."""
        return self._registry

    def on_register(self, handler: RegisterHandler) -> None:
        self._register_handlers.append(handler)

    def on_message(self, handler: MessageHandler) -> None:
        self._message_handlers.append(handler)

    def on_disconnect(self, handler: DisconnectHandler) -> None:
        self._disconnect_handlers.append(handler)

    def on_error(self, handler: ErrorHandler) -> None:
        self._error_handlers.append(handler)

    async def start(self) -> None:
        """Create the registry and start accepting connections.

        Raises:
            TransportError: If the transport server cannot start
        """
        if self._registry is not None:
            return

        self._registry = Registry()
        try:
            await self.transport_server.start()
        except Exception:
            self._registry = None
            raise
        logger.info("Relay server started")

    async def stop(self) -> None:
        """Close every connection, the listener and the parent link.

        Safe to call twice.
        """
        registry = self._registry
        if registry is None:
            return

        # Detach first so that closing connections fires no disconnect events
        self._registry = None
        connections = list(registry) + list(self._pending)
        registry.clear()
        self._pending.clear()
        self._forwards.clear()

        for connection in connections:
            connection.state = ConnectionState.CLOSED
            connection.transport.close()

        await self.transport_server.stop()

        link = self.parent_link
        if link is not None:
            link.close()
            await link.wait_closed()

        logger.info(f"Relay server stopped ({len(connections)} connections closed)")

    def tree(self, title: str = "swarm") -> Tree:
        """Render registered connections that carry a hierarchy code."""
        coded = [c for c in (self._registry or []) if c.code]
        return render_tree(
            coded,
            label=lambda c: f"{c.name} ({c.role.value}) [dim]{c.code}[/dim]",
            title=title,
        )

    # -------------------------------------------------------------------------
    # Transport callbacks
    # -------------------------------------------------------------------------

    def _handle_connection(self, transport: Transport) -> None:
        if self._registry is None:
            transport.close()
            return

        connection = Connection(transport=transport)
        self._pending.add(connection)
        transport.on_data(lambda data: self._handle_data(connection, data))
        transport.on_close(lambda: self._handle_close(connection))
        transport.on_error(lambda error: self._handle_error(connection, error))

    def _handle_data(self, connection: Connection, data: str) -> None:
        for raw in connection.decoder.feed(data):
            if connection.state is ConnectionState.CLOSED:
                return
            if connection.state is ConnectionState.UNREGISTERED:
                self._handle_unregistered(connection, raw)
            else:
                self._handle_frame(connection, raw)

    def _handle_close(self, connection: Connection) -> None:
        previous = connection.state
        connection.state = ConnectionState.CLOSED
        self._pending.discard(connection)

        registry = self._registry
        if previous is not ConnectionState.REGISTERED or registry is None:
            return
        if registry.remove(connection):
            logger.info(f"{connection.name} disconnected")
            self._notify(self._disconnect_handlers, connection)

    def _handle_error(self, connection: Connection, error: Exception) -> None:
        logger.warning(f"Transport error on {connection.name or 'unregistered connection'}: {error}")
        self._notify(self._error_handlers, connection, error)
        connection.transport.close()

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def _handle_unregistered(self, connection: Connection, raw: Any) -> None:
        registry = self._registry
        if registry is None:
            return

        if not is_register_frame(raw):
            logger.warning("Rejected frame from unregistered connection")
            connection.send_error("First message must be a valid register message")
            return

        try:
            message = parse_register(raw)
        except ProtocolError as e:
            logger.warning(f"Rejected register frame: {e.message}")
            connection.send_error(e.message)
            self._drop(connection)
            return

        if message.name in registry:
            logger.warning(f"Rejected duplicate name {message.name!r}")
            connection.send_error(f'Duplicate name: "{message.name}"')
            self._drop(connection)
            return

        self._register(registry, connection, message)

    def _register(
        self, registry: Registry, connection: Connection, message: RegisterMessage
    ) -> None:
        connection.name = message.name
        connection.role = message.role
        connection.swarm = message.swarm
        connection.code = message.code
        connection.state = ConnectionState.REGISTERED

        registry.add(connection)
        self._pending.discard(connection)
        connection.send(RegisteredMessage())

        logger.info(
            f"Registered {message.name} as {message.role.value}"
            + (f" in swarm {message.swarm}" if message.swarm else "")
        )
        self._notify(self._register_handlers, connection)

    def _drop(self, connection: Connection) -> None:
        connection.state = ConnectionState.CLOSED
        self._pending.discard(connection)
        connection.transport.close()

    # -------------------------------------------------------------------------
    # Routing
    # -------------------------------------------------------------------------

    def _handle_frame(self, sender: Connection, raw: Any) -> None:
        try:
            message = parse_client_message(raw)
        except ProtocolError as e:
            logger.warning(f"Invalid frame from {sender.name}: {e.message}")
            sender.send_error(e.message)
            return

        if isinstance(message, RegisterMessage):
            sender.send_error("Already registered")
            return

        logger.debug(f"{message.type} from {sender.name}")
        self._notify(self._message_handlers, sender, message)

        if isinstance(message, InstructMessage):
            self._route_instruct(sender, message, raw)
        else:
            self._broadcast(sender, message)

    def _broadcast(self, sender: Connection, message: RelayableMessage) -> int:
        registry = self._registry
        if registry is None:
            return 0
        return self._deliver(sender, message, self.router.recipients(sender, registry))

    def _route_instruct(
        self, sender: Connection, message: InstructMessage, raw: Dict[str, Any]
    ) -> None:
        registry = self._registry
        if registry is None:
            return

        if message.to:
            if message.to == sender.name:
                sender.send_error(f'Cannot instruct yourself ("{message.to}")')
                return

            target = registry.get(message.to)
            if target is None:
                if not self._forward(sender, message.to, raw):
                    sender.send_error(f'No connection named "{message.to}"')
                return

            if not self.router.can_reach(sender, target):
                sender.send_error(f'Not allowed to instruct "{message.to}"')
                return

            self._deliver(sender, message, [target])
            return

        if message.swarm:
            recipients = [
                peer
                for peer in self.router.recipients(sender, registry)
                if peer.swarm == message.swarm
            ]
            if not recipients:
                sender.send_error(f'No connections in swarm "{message.swarm}"')
                return
            self._deliver(sender, message, recipients)
            return

        self._broadcast(sender, message)

    def _forward(self, sender: Connection, target: str, raw: Dict[str, Any]) -> bool:
        """Write *raw* unchanged to the parent link, if one is connected."""
        link = self.parent_link
        if link is None or not link.connected:
            return False
        self._forwards.append((sender, target))
        link.write(serialize(raw))
        logger.info(f"Forwarded instruct for {target!r} to parent")
        return True

    def _handle_parent_data(self, data: str) -> None:
        for raw in self._parent_decoder.feed(data):
            if not isinstance(raw, dict) or raw.get("type") != "error":
                continue
            text = raw.get("message")
            if isinstance(text, str):
                self._return_forward_error(text)

    def _return_forward_error(self, text: str) -> None:
        """Pass a parent error about a forwarded target back to its sender.

        The parent answers a forwarded instruct only when it fails, and every
        such error names the target in quotes. Successful forwards are never
        acknowledged, so the newest forward naming that target is taken as
        the one the error answers.
        """
        match = next(
            (entry for entry in reversed(self._forwards) if f'"{entry[1]}"' in text),
            None,
        )
        if match is None:
            logger.debug(f"Parent error matches no forwarded instruct: {text}")
            return

        self._forwards.remove(match)
        sender, target = match
        if sender.registered:
            logger.info(f"Parent rejected instruct for {target!r} from {sender.name}")
            sender.send_error(text)

    def _deliver(
        self,
        sender: Connection,
        message: RelayableMessage,
        recipients: List[Connection],
    ) -> int:
        envelope = serialize(relay(sender.name, sender.role, sender.swarm, message))
        for recipient in recipients:
            recipient.transport.write(envelope)
        return len(recipients)

    def _notify(self, handlers: List[Callable[..., None]], *args: Any) -> None:
        for handler in list(handlers):
            try:
                handler(*args)
            except Exception:
                logger.exception("Server event handler raised")
