"""
Command line interface for swarmbus.
"""

import asyncio
import logging
import signal
from pathlib import Path
from typing import Annotated, Optional

import cyclopts
from dotenv import load_dotenv
from rich.console import Console

from swarmbus.client import RelayClient
from swarmbus.config import Identity, socket_directory, socket_path
from swarmbus.exceptions import ConfigurationError, SwarmBusError
from swarmbus.protocol import Role, StatusEvent
from swarmbus.router import RoleRouter
from swarmbus.server import RelayServer
from swarmbus.state import SwarmTracker
from swarmbus.transport.unix_socket import (
    SOCKET_PREFIX,
    UnixTransportServer,
    clean_stale_sockets,
)

logger = logging.getLogger(__name__)

console = Console()

app = cyclopts.App(name="swarmbus", help="Local socket relay for agent swarms")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _resolve_socket(socket: Optional[Path], group: str) -> Path:
    if socket is not None:
        return socket
    identity = Identity.from_env()
    return identity.socket or socket_path(group)


async def _serve(
    path: Path,
    parent: Optional[Path],
    name: Optional[str],
    swarm: Optional[str],
    code: Optional[str],
    roles: bool,
    show_tree: bool,
) -> None:
    parent_client: Optional[RelayClient] = None
    if parent is not None:
        if not name or not swarm:
            raise ConfigurationError("--parent requires --name and --swarm")
        parent_client = RelayClient(name, Role.COORDINATOR, swarm=swarm, code=code)
        await parent_client.connect(parent)
        parent_client.on_message(
            lambda relayed: logger.info(
                f"From parent: {relayed.message.type} from {relayed.sender}"
            )
        )
        console.print(f"[dim]Registered upward as {name} at {parent}[/dim]")

    server = RelayServer(
        UnixTransportServer(path),
        router=RoleRouter() if roles else None,
        parent_link=parent_client.transport if parent_client else None,
    )
    tracker = SwarmTracker()
    tracker.attach(server)
    tracker.on_all_done(lambda: console.print("[green]All workers finished[/green]"))
    if parent_client is not None:
        tracker.relay_to(parent_client)

    if show_tree:

        def print_tree(_event: StatusEvent) -> None:
            console.print(tracker.render(title=str(path.name)))

        tracker.on_event(print_tree)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await server.start()
    console.print(f"[green]Relay listening on {path}[/green]")
    try:
        await stop.wait()
    finally:
        await server.stop()
        if parent_client is not None:
            await parent_client.disconnect()
        console.print("[dim]Relay stopped[/dim]")


@app.command
def serve(
    socket: Annotated[
        Optional[Path], cyclopts.Parameter(help="Socket path to listen on")
    ] = None,
    group: Annotated[
        str, cyclopts.Parameter(help="Group id used to derive the socket path")
    ] = "default",
    parent: Annotated[
        Optional[Path],
        cyclopts.Parameter(help="Parent relay socket; enables upward forwarding"),
    ] = None,
    name: Annotated[
        Optional[str], cyclopts.Parameter(help="Name to register with the parent")
    ] = None,
    swarm: Annotated[
        Optional[str], cyclopts.Parameter(help="Swarm to register with the parent")
    ] = None,
    code: Annotated[
        Optional[str], cyclopts.Parameter(help="Hierarchy code for the parent")
    ] = None,
    roles: Annotated[
        bool, cyclopts.Parameter(help="Restrict reachability by role and swarm")
    ] = False,
    show_tree: Annotated[
        bool, cyclopts.Parameter(help="Print the swarm tree on every change")
    ] = False,
    verbose: Annotated[bool, cyclopts.Parameter(help="Enable verbose logging")] = False,
):
    """
    Run a relay server until interrupted.

    Example:
        swarmbus serve --group build-42
        swarmbus serve --socket /tmp/sub.sock --parent /tmp/swarmbus-build-42.sock \\
            --name coord-a --swarm alpha --code 0.1
    """
    _configure_logging(verbose)

    try:
        path = _resolve_socket(socket, group)
        asyncio.run(_serve(path, parent, name, swarm, code, roles, show_tree))
    except SwarmBusError as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1
    return 0


@app.command
def clean(
    directory: Annotated[
        Optional[Path], cyclopts.Parameter(help="Directory to sweep for sockets")
    ] = None,
    prefix: Annotated[str, cyclopts.Parameter(help="Socket file prefix")] = SOCKET_PREFIX,
    verbose: Annotated[bool, cyclopts.Parameter(help="Enable verbose logging")] = False,
):
    """Remove socket files left behind by relays that are no longer running."""
    _configure_logging(verbose)

    removed = asyncio.run(clean_stale_sockets(directory or socket_directory(), prefix))
    if not removed:
        console.print("[dim]No stale sockets found.[/dim]")
        return 0

    for path in removed:
        console.print(f"Removed [cyan]{path}[/cyan]")
    return 0


def main():
    load_dotenv()
    app()
