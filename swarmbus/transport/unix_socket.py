"""Unix domain socket transport.

Provides the socket-backed Transport used between worker processes and their
local relay server, plus helpers for connecting and for sweeping socket files
left behind by crashed servers.
"""

import asyncio
import codecs
import logging
from pathlib import Path
from typing import List, Optional, Set, Union

from swarmbus.exceptions import TransportError
from swarmbus.transport.base import Transport, TransportServer

logger = logging.getLogger(__name__)

READ_SIZE = 64 * 1024
# Peers that stop reading are cut off once this much output is queued
WRITE_HIGH_WATER = 8 * 1024 * 1024
PROBE_TIMEOUT = 1.0
SOCKET_PREFIX = "swarmbus-"


class UnixTransport(Transport):
    """Transport over an asyncio stream pair.

    A background task reads the stream and forwards decoded text to the data
    handlers. Multi-byte UTF-8 sequences split across reads are reassembled by
    an incremental decoder. Must be created inside a running event loop.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ):
        super().__init__()
        self._reader = reader
        self._writer = writer
        self._connected = True
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._read_task: asyncio.Task = asyncio.get_running_loop().create_task(
            self._reader_loop()
        )

    @property
    def connected(self) -> bool:
        return self._connected and not self._writer.is_closing()

    def write(self, data: str) -> None:
        if not self.connected:
            return

        buffered = self._writer.transport.get_write_buffer_size()
        if buffered > WRITE_HIGH_WATER:
            logger.warning(f"Closing socket whose peer stopped reading ({buffered} bytes queued)")
            self._emit_error(TransportError(f"Write buffer over {WRITE_HIGH_WATER} bytes"))
            self.close()
            return

        try:
            self._writer.write(data.encode("utf-8"))
        except OSError as e:
            logger.debug(f"Dropping write on failed socket: {e}")

    def close(self) -> None:
        if not self._connected:
            return
        self._connected = False
        self._writer.close()

        # close() may run from inside a data handler on the read task itself
        if self._read_task is not asyncio.current_task() and not self._read_task.done():
            self._read_task.cancel()

        self._emit_close()

    async def wait_closed(self) -> None:
        """Wait until the read task and the underlying socket have finished."""
        if not self._read_task.done():
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass
        try:
            await self._writer.wait_closed()
        except OSError:
            pass

    async def _reader_loop(self) -> None:
        """Background task that reads from the socket until EOF."""
        try:
            while self._connected:
                chunk = await self._reader.read(READ_SIZE)
                if not chunk:
                    break
                text = self._decoder.decode(chunk)
                if text:
                    self._emit_data(text)
        except asyncio.CancelledError:
            return
        except OSError as e:
            logger.warning(f"Socket read failed: {e}")
            self._emit_error(TransportError(f"Socket read failed: {e}"))

        # EOF from the peer or a read failure
        self.close()


class UnixTransportServer(TransportServer):
    """Listens on a filesystem socket path and accepts UnixTransports."""

    def __init__(self, path: Union[str, Path]):
        super().__init__()
        self.path = Path(path)
        self._server: Optional[asyncio.AbstractServer] = None
        self._transports: Set[UnixTransport] = set()

    @property
    def running(self) -> bool:
        return self._server is not None

    async def start(self) -> None:
        """Remove a stale socket file, then bind and listen.

        Raises:
            TransportError: If the path cannot be bound
        """
        if self._server is not None:
            return

        try:
            # A previous instance may have crashed without cleaning up
            self.path.unlink(missing_ok=True)
            self._server = await asyncio.start_unix_server(
                self._handle_client, path=str(self.path)
            )
        except OSError as e:
            self._server = None
            raise TransportError(f"Failed to listen on {self.path}: {e}") from e

        logger.info(f"Listening on {self.path}")

    async def stop(self) -> None:
        if self._server is None:
            return

        server = self._server
        self._server = None

        transports = list(self._transports)
        for transport in transports:
            transport.close()
        self._transports.clear()

        server.close()
        await asyncio.gather(
            *(transport.wait_closed() for transport in transports),
            return_exceptions=True,
        )
        await server.wait_closed()

        self.path.unlink(missing_ok=True)
        logger.info(f"Stopped listening on {self.path}")

    def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        if self._server is None:
            writer.close()
            return

        transport = UnixTransport(reader, writer)
        self._transports.add(transport)
        transport.on_close(lambda: self._transports.discard(transport))
        logger.debug(f"Accepted connection on {self.path}")
        self._emit_connection(transport)


async def connect_unix(path: Union[str, Path]) -> UnixTransport:
    """Open a client transport to the server listening at *path*.

    Raises:
        TransportError: If nothing is listening at *path*
    """
    try:
        reader, writer = await asyncio.open_unix_connection(str(path))
    except OSError as e:
        raise TransportError(f"Cannot connect to {path}: {e}") from e
    return UnixTransport(reader, writer)


async def _is_live(path: Path) -> bool:
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_unix_connection(str(path)), timeout=PROBE_TIMEOUT
        )
    except asyncio.TimeoutError:
        # Something holds the path but is slow to accept; leave it alone
        return True
    except OSError:
        return False

    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


async def clean_stale_sockets(
    directory: Union[str, Path], prefix: str = SOCKET_PREFIX
) -> List[Path]:
    """Remove ``<prefix>*.sock`` files in *directory* that nobody listens on.

    Returns:
        The paths that were removed
    """
    removed: List[Path] = []
    directory = Path(directory)
    if not directory.is_dir():
        return removed

    for path in sorted(directory.glob(f"{prefix}*.sock")):
        if await _is_live(path):
            logger.debug(f"Keeping live socket {path}")
            continue
        try:
            path.unlink()
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.warning(f"Could not remove stale socket {path}: {e}")
            continue
        logger.info(f"Removed stale socket {path}")
        removed.append(path)

    return removed
