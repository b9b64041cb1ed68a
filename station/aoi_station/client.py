"""TCP client connecting a camera station to the AOI controller.

Handles the station side of the protocol:
  Station → Controller: HELLO, CAM_ID, IMAGE header + body
  Controller → Station: shutter
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from aoi.station.protocol import (
    Command,
    FrameReassembler,
    encode_camera_id,
    encode_hello,
    encode_image_header,
)

logger = logging.getLogger(__name__)

CommandHandler = Callable[[str], Awaitable[None]]

READ_CHUNK = 4096


class StationConnectionError(Exception):
    """Raised when the controller cannot be reached or the link drops."""


class StationClient:
    """One connection from this station to the controller."""

    def __init__(
        self,
        host: str,
        port: int,
        camera_id: int,
        connect_timeout: float = 10.0,
    ):
        self.host = host
        self.port = port
        self.camera_id = camera_id
        self.connect_timeout = connect_timeout

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._connected = False

    async def connect(self) -> None:
        """Dial the controller and send the HELLO handshake."""
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self.connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as exc:
            raise StationConnectionError(
                f"Cannot connect to {self.host}:{self.port}: {exc}"
            ) from exc

        self._connected = True
        await self._send(encode_hello(self.camera_id))
        logger.info("Connected to controller %s:%d as camera %d", self.host, self.port, self.camera_id)

    async def send_camera_id(self, camera_id: int) -> None:
        self.camera_id = camera_id
        await self._send(encode_camera_id(camera_id))
        logger.info("Sent CAM_ID %d", camera_id)

    async def send_image(self, data: bytes) -> None:
        """Send an IMAGE header immediately followed by the raw bytes."""
        if not self._connected or self._writer is None:
            raise StationConnectionError("not connected")
        try:
            self._writer.write(encode_image_header(self.camera_id, len(data)))
            self._writer.write(data)
            await self._writer.drain()
        except (ConnectionError, OSError) as exc:
            self._connected = False
            raise StationConnectionError(f"Image send failed: {exc}") from exc
        logger.info("Sent image from camera %d (%d bytes)", self.camera_id, len(data))

    async def listen(self, on_command: CommandHandler) -> None:
        """Read commands until the controller closes the connection."""
        if self._reader is None:
            return
        reassembler = FrameReassembler()
        try:
            while True:
                data = await self._reader.read(READ_CHUNK)
                if not data:
                    logger.info("Controller closed the connection")
                    break
                for frame in reassembler.feed(data):
                    if not isinstance(frame, Command):
                        logger.debug("Ignoring unexpected frame: %r", frame)
                        continue
                    logger.info("Command from controller: %s", frame.name)
                    try:
                        await on_command(frame.name)
                    except Exception:
                        logger.exception("Command handler failed for %s", frame.name)
        except (ConnectionError, OSError) as exc:
            logger.info("Controller connection lost: %s", exc)
        finally:
            self._connected = False

    async def disconnect(self) -> None:
        self._connected = False
        if self._writer is not None:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            self._writer = None
            self._reader = None

    async def _send(self, payload: bytes) -> None:
        if not self._connected or self._writer is None:
            raise StationConnectionError("not connected")
        try:
            self._writer.write(payload)
            await self._writer.drain()
        except (ConnectionError, OSError) as exc:
            self._connected = False
            raise StationConnectionError(f"Send failed: {exc}") from exc

    @property
    def connected(self) -> bool:
        return self._connected
