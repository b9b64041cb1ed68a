"""TCP endpoint that stations dial into.

Each accepted socket gets its own reader task and :class:`FrameReassembler`.
Frames are handed to a :class:`FrameHandler` synchronously, on the event
loop, in arrival order.  Reads never time out; a closed or failed socket is
reported once through ``on_disconnect``.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from typing import Optional, Protocol

from aoi.station.protocol import Frame, FrameReassembler

logger = logging.getLogger(__name__)

READ_CHUNK = 64 * 1024

_connection_ids = itertools.count(1)


class StationConnection:
    """One live station socket on the controller side."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer
        self.id = next(_connection_ids)
        peer = writer.get_extra_info("peername")
        self.peer = f"{peer[0]}:{peer[1]}" if peer else "?"
        self.connected_at = time.time()
        self.reassembler = FrameReassembler()
        self._closed = False

    @property
    def is_connected(self) -> bool:
        return not self._closed and not self.writer.is_closing()

    def write(self, data: bytes) -> None:
        if not self.is_connected:
            raise ConnectionError(f"connection {self.id} is closed")
        self.writer.write(data)

    def close(self) -> None:
        self._closed = True
        self.writer.close()

    def __repr__(self) -> str:
        return f"<StationConnection #{self.id} {self.peer}>"


class FrameHandler(Protocol):
    def on_connect(self, connection: StationConnection) -> None: ...

    def on_frame(self, connection: StationConnection, frame: Frame) -> None: ...

    def on_disconnect(self, connection: StationConnection) -> None: ...


class StationServer:
    """Accepts station connections and pumps their bytes into frames."""

    def __init__(self, handler: FrameHandler, host: str = "0.0.0.0", port: int = 8080) -> None:
        self.handler = handler
        self.host = host
        self.port = port
        self._server: Optional[asyncio.AbstractServer] = None
        self._connections: set[StationConnection] = set()

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle, self.host, self.port)
        sockets = self._server.sockets or []
        if sockets:
            self.port = sockets[0].getsockname()[1]
        logger.info("Station server listening on %s:%d", self.host, self.port)

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        for connection in list(self._connections):
            connection.close()
        await self._server.wait_closed()
        self._server = None
        logger.info("Station server stopped")

    @property
    def connections(self) -> list[StationConnection]:
        return list(self._connections)

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        connection = StationConnection(reader, writer)
        self._connections.add(connection)
        logger.info("Station connected: %r", connection)
        self.handler.on_connect(connection)

        try:
            while True:
                data = await reader.read(READ_CHUNK)
                if not data:
                    break
                for frame in connection.reassembler.feed(data):
                    try:
                        self.handler.on_frame(connection, frame)
                    except Exception:
                        logger.exception("Frame handler failed on %r", connection)
        except (ConnectionError, OSError) as e:
            logger.info("Station connection %r lost: %s", connection, e)
        finally:
            logger.info("Station disconnected: %r", connection)
            connection.close()
            connection.reassembler.reset()
            self._connections.discard(connection)
            self.handler.on_disconnect(connection)
