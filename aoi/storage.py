"""Image persistence on the controller.

Layout::

    <base>/<YYYYMMDD>/<serial>/<step>_<camera_id>_<operator_id>.jpg

The date is the local calendar day.  A file for the same step/camera/operator
triple is overwritten.  Writes go to a hidden temp file first and are then
renamed into place, so a reader (including the completion count) never sees a
partial image.

All blocking file work runs on one dedicated worker thread so slow storage
cannot stall socket reads.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import tempfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

IMAGE_SUFFIX = ".jpg"

_UNSAFE_NAME = re.compile(r"[/\\\x00]")


@dataclass
class SaveResult:
    ok: bool
    path: Optional[Path] = None
    error: str = ""


class ImageStore:
    """Writes received images and counts them per capture session."""

    def __init__(self, base_dir: str | Path):
        self.base_dir = Path(base_dir).expanduser()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="aoi-disk")

    # ── Paths ──────────────────────────────────────────────────────

    def session_dir(self, serial_number: str, day: Optional[date] = None) -> Path:
        day = day or date.today()
        return self.base_dir / day.strftime("%Y%m%d") / serial_number.strip()

    def image_path(
        self,
        serial_number: str,
        step: str,
        camera_id: int,
        operator_id: str,
        day: Optional[date] = None,
    ) -> Path:
        name = f"{step}_{camera_id}_{operator_id}{IMAGE_SUFFIX}"
        return self.session_dir(serial_number, day) / name

    # ── Blocking operations ────────────────────────────────────────

    def save(
        self,
        data: bytes,
        camera_id: int,
        step: str,
        serial_number: str,
        operator_id: str,
        day: Optional[date] = None,
    ) -> SaveResult:
        """Write one image atomically. Never raises for I/O problems."""
        if not serial_number.strip():
            logger.warning("No serial number scanned, dropping image from camera %d", camera_id)
            return SaveResult(ok=False, error="serial number is blank")
        if _UNSAFE_NAME.search(serial_number.strip()) or serial_number.strip() in (".", ".."):
            logger.warning("Refusing serial number %r for camera %d", serial_number, camera_id)
            return SaveResult(ok=False, error="serial number is not a valid directory name")
        if _UNSAFE_NAME.search(operator_id):
            logger.warning("Refusing operator ID %r for camera %d", operator_id, camera_id)
            return SaveResult(ok=False, error="operator ID contains a path separator")

        path = self.image_path(serial_number, step, camera_id, operator_id, day)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{path.stem}.", suffix=".tmp", dir=path.parent)
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            logger.error("Failed to save image %s: %s", path, e)
            return SaveResult(ok=False, path=path, error=str(e))

        logger.info("Saved %s (%d bytes)", path.name, len(data))
        return SaveResult(ok=True, path=path)

    def count_files(self, serial_number: str, day: Optional[date] = None) -> int:
        """Number of visible files in the session directory (0 if missing)."""
        if not serial_number.strip():
            return 0
        directory = self.session_dir(serial_number, day)
        try:
            return sum(
                1 for entry in directory.iterdir()
                if entry.is_file() and not entry.name.startswith(".")
            )
        except FileNotFoundError:
            return 0
        except OSError as e:
            logger.error("Cannot list %s: %s", directory, e)
            return 0

    # ── Async wrappers ─────────────────────────────────────────────

    async def save_async(
        self,
        data: bytes,
        camera_id: int,
        step: str,
        serial_number: str,
        operator_id: str,
    ) -> SaveResult:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor, self.save, data, camera_id, step, serial_number, operator_id,
        )

    async def count_files_async(self, serial_number: str) -> int:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self.count_files, serial_number)

    def close(self) -> None:
        self._executor.shutdown(wait=True)
