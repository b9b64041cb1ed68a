"""Station registry — which camera is behind which live connection.

The registry never owns a connection; the transport does.  Entries are held
in a :class:`weakref.WeakKeyDictionary` and removed explicitly on disconnect.

Presence is rebuilt from scratch on every event rather than patched, so the
online set always equals "camera IDs of still-connected connections".
"""

from __future__ import annotations

import logging
import weakref
from typing import Callable, Iterable, Iterator, Optional, Protocol

logger = logging.getLogger(__name__)

CAMERA_IDS = (1, 2, 3, 4)

PresenceListener = Callable[[int, bool], None]


class StationLink(Protocol):
    """What the registry needs to know about a connection."""

    @property
    def is_connected(self) -> bool: ...

    def write(self, data: bytes) -> None: ...


class StationRegistry:
    """Maps live connections to camera IDs and derives presence."""

    def __init__(self) -> None:
        self._camera_ids: weakref.WeakKeyDictionary[StationLink, int] = (
            weakref.WeakKeyDictionary()
        )
        self._online: frozenset[int] = frozenset()
        self._listeners: list[PresenceListener] = []

    def on_presence_change(self, listener: PresenceListener) -> None:
        """Register a callback invoked as ``listener(camera_id, online)``."""
        self._listeners.append(listener)

    # ── Events ─────────────────────────────────────────────────────

    def on_identity_seen(self, connection: StationLink, camera_id: int) -> None:
        """Associate *connection* with *camera_id*, replacing any prior ID."""
        previous = self._camera_ids.get(connection)
        self._camera_ids[connection] = camera_id
        if previous is not None and previous != camera_id:
            logger.info("Connection switched camera ID %d → %d", previous, camera_id)
        self._refresh()

    def on_disconnect(self, connection: StationLink) -> Optional[int]:
        """Forget *connection*. Returns the camera ID it held, if any."""
        camera_id = self._camera_ids.pop(connection, None)
        self._refresh()
        return camera_id

    # ── Queries ────────────────────────────────────────────────────

    def presence_snapshot(self) -> frozenset[int]:
        return self._online

    def is_online(self, camera_id: int) -> bool:
        return camera_id in self._online

    def camera_id_for(self, connection: StationLink) -> Optional[int]:
        return self._camera_ids.get(connection)

    def connections_for(self, targets: Iterable[int]) -> Iterator[tuple[StationLink, int]]:
        """Yield ``(connection, camera_id)`` for live connections in *targets*."""
        wanted = set(targets)
        for connection, camera_id in list(self._camera_ids.items()):
            if connection.is_connected and camera_id in wanted:
                yield connection, camera_id

    def __len__(self) -> int:
        return len(self._camera_ids)

    # ── Internal ───────────────────────────────────────────────────

    def _refresh(self) -> None:
        online = frozenset(
            camera_id
            for connection, camera_id in list(self._camera_ids.items())
            if connection.is_connected
        )
        previous = self._online
        self._online = online
        if online == previous:
            return

        for camera_id in sorted(previous | online):
            was, now = camera_id in previous, camera_id in online
            if was == now:
                continue
            logger.info("Camera %d %s", camera_id, "online" if now else "offline")
            for listener in self._listeners:
                try:
                    listener(camera_id, now)
                except Exception:
                    logger.exception("Presence listener failed for camera %d", camera_id)
