"""Camera station agent — state machine around one controller connection.

States: DISCONNECTED → RESOLVING → IDLE ⇄ CAPTURING
                                   ↓ (link lost / reconnect)
                               DISCONNECTED

  Controller found (mDNS or static address) → dial, send HELLO → IDLE
  ``shutter`` command → CAPTURING → IMAGE header + body → IDLE
  A shutter while CAPTURING is ignored, never queued
"""

from __future__ import annotations

import asyncio
import enum
import logging
from pathlib import Path
from typing import Optional

from aoi.station.protocol import SHUTTER

from .camera import Camera, CaptureError, create_camera
from .client import StationClient, StationConnectionError
from .config import CAMERA_ID_RANGE, StationConfig
from .mdns import ControllerDiscovery

logger = logging.getLogger(__name__)


class State(enum.Enum):
    DISCONNECTED = "disconnected"
    RESOLVING = "resolving"
    IDLE = "idle"
    CAPTURING = "capturing"


class StationAgent:
    """Connects to the controller and answers shutter commands with images."""

    def __init__(
        self,
        config: StationConfig,
        camera: Optional[Camera] = None,
        config_path: str | Path | None = None,
        discovery: Optional[ControllerDiscovery] = None,
    ):
        self.config = config
        self.config_path = Path(config_path) if config_path else None
        self.camera = camera or create_camera(
            config.camera_type,
            command=config.capture_command,
            path=config.capture_file,
            timeout=config.capture_timeout,
        )
        self.discovery = discovery or ControllerDiscovery(config.service_type)
        self.state = State.DISCONNECTED
        self.client: Optional[StationClient] = None

        self._running = False
        self._listen_task: Optional[asyncio.Task] = None
        self._capture_task: Optional[asyncio.Task] = None
        self._reconnect_now = asyncio.Event()

    # ── Lifecycle ──────────────────────────────────────────────────

    async def start(self) -> None:
        """Keep a controller connection alive until :meth:`stop`."""
        logger.info("=== AOI Station (camera %d) ===", self.config.camera_id)
        self._running = True
        try:
            while self._running:
                await self._run_connection()
                if not self._running:
                    break
                if self._reconnect_now.is_set():
                    self._reconnect_now.clear()
                    continue
                try:
                    await asyncio.wait_for(
                        self._reconnect_now.wait(), timeout=self.config.reconnect_delay,
                    )
                except asyncio.TimeoutError:
                    pass
                self._reconnect_now.clear()
        finally:
            await self.stop()

    async def stop(self) -> None:
        self._running = False
        await self._teardown()
        if self._capture_task and not self._capture_task.done():
            self._capture_task.cancel()
            await asyncio.gather(self._capture_task, return_exceptions=True)
        self.camera.close()

    def reconnect(self) -> None:
        """Drop the current connection and resolve the controller again."""
        logger.info("Manual reconnect requested")
        self._reconnect_now.set()
        if self._listen_task and not self._listen_task.done():
            self._listen_task.cancel()

    # ── Connection ─────────────────────────────────────────────────

    async def resolve(self) -> Optional[tuple[str, int]]:
        if not self.config.uses_discovery:
            return self.config.controller_host, self.config.controller_port
        return await self.discovery.resolve(timeout=self.config.discovery_timeout)

    async def _run_connection(self) -> None:
        self.state = State.RESOLVING
        address = await self.resolve()
        if address is None:
            self.state = State.DISCONNECTED
            return

        host, port = address
        client = StationClient(
            host, port, self.config.camera_id, connect_timeout=self.config.connect_timeout,
        )
        try:
            await client.connect()
        except StationConnectionError as e:
            logger.error("%s", e)
            self.state = State.DISCONNECTED
            return

        self.client = client
        self.state = State.IDLE
        self._listen_task = asyncio.create_task(client.listen(self._on_command))
        try:
            await self._listen_task
        except asyncio.CancelledError:
            if not self._reconnect_now.is_set() and self._running:
                raise
        finally:
            await self._teardown()

    async def _teardown(self) -> None:
        if self._listen_task and not self._listen_task.done():
            self._listen_task.cancel()
            await asyncio.gather(self._listen_task, return_exceptions=True)
        self._listen_task = None
        client, self.client = self.client, None
        if client is not None:
            await client.disconnect()
        self.state = State.DISCONNECTED

    # ── Commands ───────────────────────────────────────────────────

    async def _on_command(self, name: str) -> None:
        if name == SHUTTER:
            self.request_capture()
        else:
            logger.warning("Unknown command: %s", name)

    def request_capture(self) -> bool:
        """Start a capture. Returns False if one is already running."""
        if self._capture_task is not None and not self._capture_task.done():
            logger.warning("Capture already in progress, ignoring shutter")
            return False
        if self.client is None:
            logger.warning("Not connected, ignoring shutter")
            return False
        self._capture_task = asyncio.create_task(self._capture(self.client))
        return True

    async def _capture(self, client: StationClient) -> None:
        self.state = State.CAPTURING
        try:
            try:
                data = await self.camera.capture()
            except CaptureError as e:
                logger.error("Capture failed: %s", e)
                return

            if not client.connected:
                logger.warning("Connection gone, dropping image (%d bytes)", len(data))
                return
            try:
                await client.send_image(data)
            except StationConnectionError as e:
                logger.warning("Image abandoned: %s", e)
        finally:
            if self.client is client:
                self.state = State.IDLE

    # ── Identity ───────────────────────────────────────────────────

    async def set_camera_id(self, camera_id: int) -> None:
        """Change this station's camera ID, persist it and tell the controller."""
        if camera_id not in CAMERA_ID_RANGE:
            raise ValueError(f"camera ID must be 1-4, got {camera_id}")
        self.config.camera_id = camera_id
        if self.config_path:
            self.config.save(self.config_path)
        logger.info("Camera ID set to %d", camera_id)

        if self.client is not None and self.client.connected:
            try:
                await self.client.send_camera_id(camera_id)
            except StationConnectionError as e:
                logger.warning("Could not send CAM_ID: %s", e)
        elif self.client is not None:
            self.client.camera_id = camera_id
