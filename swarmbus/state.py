"""
Swarm completion tracking.

The supervising side of a swarm follows each worker's status from the
messages it sees: ``done`` and ``blocker`` change the status, ``progress``
records the latest phase, and server lifecycle events mark workers as
running or disconnected. Once every tracked worker is done or gone, the
``on_all_done`` handlers fire, exactly once.

Coordinators of nested groups report their own workers upward as ``relay``
frames carrying a StatusEvent. A tracker ingests those events like local
ones, so the queen's tracker covers the whole hierarchy, and hands every
event it sees to its ``on_event`` handlers. ``relay_to(client)`` uses that
to report this group's workers, and pass sub-group events through, to the
parent relay.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from rich.tree import Tree

from swarmbus.hierarchy import render_tree
from swarmbus.protocol import (
    RelayableMessage,
    RelayedMessage,
    Role,
    StatusEvent,
    StatusRelayMessage,
)

if TYPE_CHECKING:
    from swarmbus.client import RelayClient
    from swarmbus.server import Connection, RelayServer

logger = logging.getLogger(__name__)


class AgentStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    DONE = "done"
    BLOCKED = "blocked"
    DISCONNECTED = "disconnected"


FINISHED = (AgentStatus.DONE, AgentStatus.DISCONNECTED)

STATUS_STYLES = {
    AgentStatus.STARTING: "dim",
    AgentStatus.RUNNING: "cyan",
    AgentStatus.DONE: "green",
    AgentStatus.BLOCKED: "bold red",
    AgentStatus.DISCONNECTED: "yellow",
}

EventHandler = Callable[[StatusEvent], None]


@dataclass
class AgentInfo:
    name: str
    role: Role
    swarm: Optional[str] = None
    code: Optional[str] = None
    status: AgentStatus = AgentStatus.STARTING
    done_summary: Optional[str] = None
    blocker_description: Optional[str] = None
    progress_phase: Optional[str] = None
    progress_percent: Optional[float] = None
    progress_detail: Optional[str] = None


class SwarmTracker:
    """Tracks the status of every worker below the supervisor.

    The queen is never tracked; she is the one waiting for everyone else.
    """

    def __init__(self) -> None:
        self.agents: Dict[str, AgentInfo] = {}
        self._all_done_handlers: List[Callable[[], None]] = []
        self._event_handlers: List[EventHandler] = []
        self._all_done_fired = False

    def on_all_done(self, handler: Callable[[], None]) -> None:
        self._all_done_handlers.append(handler)

    def on_event(self, handler: EventHandler) -> None:
        """Call *handler* with every status event, local or ingested."""
        self._event_handlers.append(handler)

    @property
    def all_done(self) -> bool:
        return bool(self.agents) and all(
            info.status in FINISHED for info in self.agents.values()
        )

    def track(
        self,
        name: str,
        role: Role,
        swarm: Optional[str] = None,
        code: Optional[str] = None,
    ) -> AgentInfo:
        """Expect a worker that has been spawned but may not have registered."""
        info = self.agents.get(name)
        if info is None:
            info = AgentInfo(name=name, role=Role(role), swarm=swarm, code=code)
            self.agents[name] = info
        return info

    def observe(self, relayed: RelayedMessage) -> None:
        """Update from a relayed envelope received by a client."""
        self.update(
            relayed.sender, relayed.sender_role, relayed.sender_swarm, relayed.message
        )

    def update(
        self,
        name: str,
        role: Role,
        swarm: Optional[str],
        message: RelayableMessage,
    ) -> None:
        """Update the sender's status from one of its messages."""
        if isinstance(message, StatusRelayMessage):
            self.ingest(message.relay)
            return
        if role == Role.QUEEN:
            return

        info = self.track(name, role, swarm)
        if message.type == "done":
            info.status = AgentStatus.DONE
            info.done_summary = message.summary
            self._emit(self._event("done", info, summary=message.summary))
        elif message.type == "blocker":
            info.status = AgentStatus.BLOCKED
            info.blocker_description = message.description
            self._emit(self._event("blocked", info, description=message.description))
        elif message.type == "progress":
            info.progress_phase = message.phase
            info.progress_percent = message.percent
            info.progress_detail = message.detail
            if info.status in (AgentStatus.STARTING, AgentStatus.BLOCKED):
                info.status = AgentStatus.RUNNING
        elif info.status is AgentStatus.STARTING:
            info.status = AgentStatus.RUNNING

        self._check_all_done()

    def ingest(self, event: StatusEvent) -> None:
        """Apply a status event reported by a sub-group coordinator."""
        if event.role == Role.QUEEN:
            return

        info = self.agents.get(event.name)
        if event.event == "register":
            info = self.track(event.name, event.role, event.swarm, event.code)
            info.swarm = event.swarm or info.swarm
            info.code = event.code or info.code
            if info.status in (AgentStatus.STARTING, AgentStatus.DISCONNECTED):
                info.status = AgentStatus.RUNNING
        elif event.event == "done":
            info = self.track(event.name, event.role, event.swarm, event.code)
            info.status = AgentStatus.DONE
            info.done_summary = event.summary
        elif event.event == "blocked":
            info = self.track(event.name, event.role, event.swarm, event.code)
            info.status = AgentStatus.BLOCKED
            info.blocker_description = event.description
        elif event.event == "disconnected":
            if info is not None and info.status is not AgentStatus.DONE:
                info.status = AgentStatus.DISCONNECTED
        # nudge events are informational and change no status

        logger.debug(f"Status of {event.name} from sub-group: {event.event}")
        self._emit(event)
        self._check_all_done()

    def attach(self, server: "RelayServer") -> None:
        """Follow registrations, messages and disconnects on *server*."""
        server.on_register(self._handle_register)
        server.on_message(self._handle_message)
        server.on_disconnect(self._handle_disconnect)

    def relay_to(self, client: "RelayClient") -> None:
        """Report every status event to the parent relay through *client*."""

        def send(event: StatusEvent) -> None:
            if client.registered:
                client.relay_status(event)

        self.on_event(send)

    def _handle_register(self, connection: "Connection") -> None:
        if connection.role == Role.QUEEN:
            return
        info = self.track(connection.name, connection.role, connection.swarm)
        info.swarm = connection.swarm
        info.code = connection.code or info.code
        if info.status in (AgentStatus.STARTING, AgentStatus.DISCONNECTED):
            info.status = AgentStatus.RUNNING
        self._emit(self._event("register", info))

    def _handle_message(
        self, connection: "Connection", message: RelayableMessage
    ) -> None:
        self.update(connection.name, connection.role, connection.swarm, message)

    def _handle_disconnect(self, connection: "Connection") -> None:
        info = self.agents.get(connection.name)
        if info is None:
            return
        if info.status is not AgentStatus.DONE:
            logger.warning(f"{info.name} disconnected before finishing")
            info.status = AgentStatus.DISCONNECTED
        self._emit(self._event("disconnected", info))
        self._check_all_done()

    def _event(self, kind: str, info: AgentInfo, **fields: Any) -> StatusEvent:
        return StatusEvent(
            event=kind,
            name=info.name,
            role=info.role,
            swarm=info.swarm,
            code=info.code,
            **fields,
        )

    def _emit(self, event: StatusEvent) -> None:
        for handler in list(self._event_handlers):
            try:
                handler(event)
            except Exception:
                logger.exception("status event handler raised")

    def _check_all_done(self) -> None:
        if self._all_done_fired or not self.all_done:
            return
        self._all_done_fired = True
        logger.info(f"All {len(self.agents)} workers finished")
        for handler in list(self._all_done_handlers):
            try:
                handler()
            except Exception:
                logger.exception("all-done handler raised")

    def render(self, title: str = "swarm") -> Tree:
        """Draw tracked workers as a tree, coloured by status."""

        def label(info: AgentInfo) -> str:
            style = STATUS_STYLES[info.status]
            text = f"{info.name} ({info.role.value}) [{style}]{info.status.value}[/{style}]"
            if info.progress_percent is not None:
                text += f" {info.progress_percent:g}%"
            return text

        coded = [info for info in self.agents.values() if info.code]
        tree = render_tree(coded, label=label, title=title)
        for info in self.agents.values():
            if not info.code:
                tree.add(label(info))
        return tree
