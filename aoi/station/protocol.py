"""Station wire protocol — line headers followed by raw image bytes.

Every header is UTF-8 text with ``;``-separated fields, terminated by a
single ``\\n``.  An ``IMAGE`` header announces exactly ``<len>`` raw bytes
that follow it on the same connection with no further framing.

  Station → Controller:  HELLO;<id>   CAM_ID;<id>   IMAGE;<id>;<len> + body
  Controller → Station:  shutter
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator, Optional, Union

logger = logging.getLogger(__name__)

HELLO = "HELLO"
CAM_ID = "CAM_ID"
IMAGE = "IMAGE"
SHUTTER = "shutter"

COMMANDS = frozenset({SHUTTER})

_LINE_FEED = b"\n"


# ── Frames ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Handshake:
    camera_id: int


@dataclass(frozen=True)
class IdentityUpdate:
    camera_id: int


@dataclass(frozen=True)
class ImageHeader:
    camera_id: int
    length: int


@dataclass(frozen=True)
class ImageBody:
    camera_id: int
    data: bytes


@dataclass(frozen=True)
class Command:
    name: str


Frame = Union[Handshake, IdentityUpdate, ImageHeader, ImageBody, Command]


# ── Encoding ──────────────────────────────────────────────────────


def encode_hello(camera_id: int) -> bytes:
    return f"{HELLO};{camera_id}\n".encode("utf-8")


def encode_camera_id(camera_id: int) -> bytes:
    return f"{CAM_ID};{camera_id}\n".encode("utf-8")


def encode_image_header(camera_id: int, length: int) -> bytes:
    return f"{IMAGE};{camera_id};{length}\n".encode("utf-8")


def encode_image(camera_id: int, data: bytes) -> bytes:
    """Header and body in one buffer, ready for a single write."""
    return encode_image_header(camera_id, len(data)) + bytes(data)


def encode_command(name: str) -> bytes:
    return f"{name}\n".encode("utf-8")


# ── Decoding ──────────────────────────────────────────────────────


def _parse_int(field: str) -> Optional[int]:
    # Only plain ASCII digits; signs, blanks and unicode digits are rejected
    if not field or not field.isascii() or not field.isdigit():
        return None
    return int(field)


def parse_header(line: str) -> Optional[Frame]:
    """Parse one header line (without the trailing newline).

    Returns ``None`` for anything that does not match the grammar; callers
    drop such lines and keep the connection open.
    """
    parts = line.split(";")
    tag = parts[0]

    if tag in (HELLO, CAM_ID) and len(parts) == 2:
        camera_id = _parse_int(parts[1])
        if camera_id is None:
            return None
        if tag == HELLO:
            return Handshake(camera_id)
        return IdentityUpdate(camera_id)

    if tag == IMAGE and len(parts) >= 3:
        camera_id = _parse_int(parts[1])
        length = _parse_int(parts[2])
        if camera_id is None or length is None:
            return None
        return ImageHeader(camera_id, length)

    if len(parts) == 1 and tag.strip() in COMMANDS:
        return Command(tag.strip())

    return None


class FrameReassembler:
    """Per-connection incremental parser.

    Bytes from arbitrary-sized reads go in through :meth:`feed`; complete
    frames come out in order.  A trailing partial header or image body stays
    buffered until the next read.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._pending: Optional[ImageHeader] = None

    @property
    def pending_header(self) -> Optional[ImageHeader]:
        return self._pending

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> list[Frame]:
        """Append *data* and return every frame that is now complete."""
        self._buffer.extend(data)
        return list(self.frames())

    def frames(self) -> Iterator[Frame]:
        """Drain complete frames from the current buffer."""
        while True:
            if self._pending is None:
                index = self._buffer.find(_LINE_FEED)
                if index < 0:
                    return
                raw = bytes(self._buffer[:index])
                del self._buffer[:index + 1]

                try:
                    line = raw.decode("utf-8")
                except UnicodeDecodeError:
                    logger.debug("Dropping undecodable header (%d bytes)", len(raw))
                    continue

                frame = parse_header(line)
                if frame is None:
                    logger.debug("Dropping invalid header: %r", line)
                    continue
                if isinstance(frame, ImageHeader):
                    self._pending = frame
                yield frame
                continue

            header = self._pending
            if len(self._buffer) < header.length:
                return
            body = bytes(self._buffer[:header.length])
            del self._buffer[:header.length]
            self._pending = None
            yield ImageBody(header.camera_id, body)

    def reset(self) -> None:
        """Forget buffered bytes and any in-flight image."""
        if self._pending is not None:
            logger.debug(
                "Discarding in-flight image from camera %d (%d/%d bytes)",
                self._pending.camera_id, len(self._buffer), self._pending.length,
            )
        self._buffer.clear()
        self._pending = None
