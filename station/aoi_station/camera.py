"""Still-image capture backends.

The agent only needs ``await camera.capture() -> bytes`` (JPEG).  Lens
selection, exposure and encoding are left to the capture tool itself.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Sequence

logger = logging.getLogger(__name__)


class CaptureError(Exception):
    """Raised when a still could not be taken."""


class Camera(ABC):
    """Base class for capture backends."""

    @abstractmethod
    async def capture(self) -> bytes:
        ...

    def close(self) -> None:
        pass


class CommandCamera(Camera):
    """Runs an external still-capture command and returns its stdout.

    The default targets ``libcamera-still`` on Raspberry Pi, which writes the
    JPEG to stdout with ``-o -``.
    """

    def __init__(self, command: Sequence[str], timeout: float = 15.0):
        if not command:
            raise ValueError("capture command is empty")
        self.command = list(command)
        self.timeout = timeout

    async def capture(self) -> bytes:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise CaptureError(f"cannot run {self.command[0]}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise CaptureError(f"{self.command[0]} timed out after {self.timeout:.0f}s")

        if proc.returncode != 0:
            detail = stderr.decode(errors="replace").strip()[-200:]
            raise CaptureError(f"{self.command[0]} exited with {proc.returncode}: {detail}")
        if not stdout:
            raise CaptureError(f"{self.command[0]} produced no image")
        return stdout


class FileCamera(Camera):
    """Serves the same image file on every capture (bench testing)."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    async def capture(self) -> bytes:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self.path.read_bytes)
        except OSError as e:
            raise CaptureError(f"cannot read {self.path}: {e}") from e


def create_camera(
    camera_type: str,
    command: Sequence[str] = (),
    path: str = "",
    timeout: float = 15.0,
) -> Camera:
    """Factory: create the configured capture backend."""
    if camera_type == "file":
        return FileCamera(path)
    if camera_type != "command":
        logger.warning("Unknown camera type %r, using command camera", camera_type)
    return CommandCamera(command, timeout=timeout)
