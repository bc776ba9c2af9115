"""Worker-side relay client.

Connects to the local relay server, registers the worker's identity and
exposes helpers for each message kind.

Usage:
    client = RelayClient("a1", Role.AGENT, swarm="alpha", code="0.1.1")
    await client.connect(socket_path)
    client.on_message(handle_relayed)
    client.blocker("cannot reach the database")
    ...
    await client.disconnect()
"""

import asyncio
import logging
from pathlib import Path
from typing import Callable, List, Optional, Union

from swarmbus.exceptions import (
    RegistrationError,
    RegistrationTimeout,
    RelayConnectionError,
    RelayError,
)
from swarmbus.protocol import (
    BlockerMessage,
    DoneMessage,
    ErrorMessage,
    FrameDecoder,
    InstructMessage,
    NudgeMessage,
    ProgressMessage,
    ProtocolError,
    RegisteredMessage,
    RegisterMessage,
    RelayableMessage,
    RelayedMessage,
    Role,
    StatusEvent,
    StatusRelayMessage,
    parse_server_message,
    serialize,
)
from swarmbus.transport.base import Transport
from swarmbus.transport.unix_socket import connect_unix

logger = logging.getLogger(__name__)

DEFAULT_REGISTER_TIMEOUT = 5.0

RelayedHandler = Callable[[RelayedMessage], None]
ErrorHandler = Callable[[Exception], None]
DisconnectHandler = Callable[[], None]


class RelayClient:
    """Client for one worker's connection to its relay server.

    The register frame is validated when the client is constructed, so an
    agent without a swarm fails here rather than at the server.
    """

    def __init__(
        self,
        name: str,
        role: Union[Role, str],
        swarm: Optional[str] = None,
        code: Optional[str] = None,
    ):
        self._register_message = RegisterMessage(
            name=name, role=Role(role), swarm=swarm, code=code
        )

        self._transport: Optional[Transport] = None
        self._decoder = FrameDecoder()
        self._registered = False
        self._pending: Optional[asyncio.Future] = None

        self._message_handlers: List[RelayedHandler] = []
        self._error_handlers: List[ErrorHandler] = []
        self._disconnect_handlers: List[DisconnectHandler] = []

    @property
    def name(self) -> str:
        return self._register_message.name

    @property
    def role(self) -> Role:
        return self._register_message.role

    @property
    def swarm(self) -> Optional[str]:
        return self._register_message.swarm

    @property
    def code(self) -> Optional[str]:
        return self._register_message.code

    @property
    def transport(self) -> Optional[Transport]:
        return self._transport

    @property
    def connected(self) -> bool:
        return self._transport is not None and self._transport.connected

    @property
    def registered(self) -> bool:
        return self._registered and self.connected

    def on_message(self, handler: RelayedHandler) -> None:
        self._message_handlers.append(handler)

    def on_error(self, handler: ErrorHandler) -> None:
        self._error_handlers.append(handler)

    def on_disconnect(self, handler: DisconnectHandler) -> None:
        self._disconnect_handlers.append(handler)

    async def connect(
        self,
        socket_path: Union[str, Path],
        timeout: float = DEFAULT_REGISTER_TIMEOUT,
    ) -> None:
        """Connect to the relay at *socket_path* and register.

        Raises:
            TransportError: If nothing is listening at *socket_path*
            RegistrationError: If the server rejects the registration
        """
        transport = await connect_unix(socket_path)
        await self.connect_with_transport(transport, timeout=timeout)

    async def connect_with_transport(
        self,
        transport: Transport,
        timeout: float = DEFAULT_REGISTER_TIMEOUT,
    ) -> None:
        """Register over an already-open transport.

        Raises:
            RelayConnectionError: If this client is already connected
            RegistrationError: If the server answers with an error or closes
            RegistrationTimeout: If the server does not answer in time
        """
        if self.connected:
            raise RelayConnectionError(f"{self.name} is already connected")

        self._transport = transport
        self._decoder = FrameDecoder()
        self._registered = False
        pending = asyncio.get_running_loop().create_future()
        self._pending = pending

        # Handlers go on before the write; in-memory transports answer synchronously
        transport.on_data(lambda data: self._handle_data(transport, data))
        transport.on_close(lambda: self._handle_close(transport))
        transport.on_error(lambda error: self._handle_error(transport, error))

        transport.write(serialize(self._register_message))

        try:
            await asyncio.wait_for(pending, timeout=timeout)
        except asyncio.TimeoutError:
            transport.close()
            raise RegistrationTimeout(
                f"No answer to registration of {self.name} within {timeout}s"
            )
        except RegistrationError:
            transport.close()
            raise
        finally:
            self._pending = None

        logger.info(f"{self.name} registered with relay")

    def send(self, message: RelayableMessage) -> None:
        """Write *message* to the relay.

        Raises:
            RelayConnectionError: If the client is not registered
        """
        if not self.registered:
            raise RelayConnectionError(f"{self.name} is not connected to a relay")
        self._transport.write(serialize(message))

    def nudge(self, reason: str) -> None:
        self.send(NudgeMessage(reason=reason))

    def blocker(self, description: str) -> None:
        self.send(BlockerMessage(description=description))

    def done(self, summary: str) -> None:
        self.send(DoneMessage(summary=summary))

    def instruct(
        self,
        instruction: str,
        to: Optional[str] = None,
        swarm: Optional[str] = None,
    ) -> None:
        self.send(InstructMessage(instruction=instruction, to=to, swarm=swarm))

    def progress(
        self,
        phase: Optional[str] = None,
        percent: Optional[float] = None,
        detail: Optional[str] = None,
    ) -> None:
        self.send(ProgressMessage(phase=phase, percent=percent, detail=detail))

    def relay_status(self, event: StatusEvent) -> None:
        """Report a sub-group worker's status event to this relay."""
        self.send(StatusRelayMessage(relay=event))

    async def disconnect(self) -> None:
        """Close the connection to the relay."""
        transport = self._transport
        if transport is None:
            return
        transport.close()
        await transport.wait_closed()

    # -------------------------------------------------------------------------
    # Transport callbacks
    # -------------------------------------------------------------------------

    def _handle_data(self, transport: Transport, data: str) -> None:
        if transport is not self._transport:
            return

        for raw in self._decoder.feed(data):
            try:
                message = parse_server_message(raw)
            except ProtocolError as e:
                logger.warning(f"Ignoring frame from relay: {e.message}")
                continue

            if isinstance(message, RegisteredMessage):
                self._registered = True
                self._resolve_pending(None)
            elif isinstance(message, ErrorMessage):
                if self._pending is not None and not self._pending.done():
                    self._resolve_pending(RegistrationError(message.message))
                else:
                    logger.warning(f"Relay reported: {message.message}")
                    self._emit(self._error_handlers, RelayError(message.message))
            else:
                self._emit(self._message_handlers, message)

    def _handle_close(self, transport: Transport) -> None:
        if transport is not self._transport:
            return

        was_registered = self._registered
        self._registered = False
        self._resolve_pending(
            RegistrationError("Connection closed before registration completed")
        )
        if was_registered:
            logger.info(f"{self.name} disconnected from relay")
            self._emit(self._disconnect_handlers)

    def _handle_error(self, transport: Transport, error: Exception) -> None:
        if transport is not self._transport:
            return
        logger.warning(f"Relay transport error: {error}")
        self._emit(self._error_handlers, error)

    def _resolve_pending(self, error: Optional[Exception]) -> None:
        pending = self._pending
        if pending is None or pending.done():
            return
        if error is None:
            pending.set_result(None)
        else:
            pending.set_exception(error)

    def _emit(self, handlers: List[Callable[..., None]], *args) -> None:
        for handler in list(handlers):
            try:
                handler(*args)
            except Exception:
                logger.exception("Client handler raised")
