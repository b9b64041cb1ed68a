"""Command fan-out to connected stations."""

from __future__ import annotations

import logging
from typing import Iterable

from aoi.station.protocol import SHUTTER, encode_command
from aoi.station.registry import CAMERA_IDS, StationRegistry

logger = logging.getLogger(__name__)

MACRO_CAMERA_ID = 4


class CommandDispatcher:
    """Writes single-line commands to stations selected by camera ID."""

    def __init__(self, registry: StationRegistry) -> None:
        self.registry = registry

    def send(self, command: str, targets: Iterable[int]) -> set[int]:
        """Send *command* to every live connection whose ID is in *targets*.

        Connections that do not match are skipped silently.  Returns the
        camera IDs that were actually addressed.
        """
        payload = encode_command(command)
        sent: set[int] = set()
        for connection, camera_id in self.registry.connections_for(targets):
            try:
                connection.write(payload)
            except (ConnectionError, RuntimeError) as e:
                logger.warning("Could not send %s to camera %d: %s", command, camera_id, e)
                continue
            sent.add(camera_id)
            logger.info("Sent %s to camera %d", command, camera_id)
        return sent

    def send_shutter(self, targets: Iterable[int] = CAMERA_IDS) -> set[int]:
        return self.send(SHUTTER, targets)

    def broadcast_shutter(self, feature_enabled: bool, step: str) -> set[int]:
        """Fire the shutter for the current workflow position.

        With Step2 enabled and active only the macro station (camera 4)
        shoots; otherwise every camera online right now.
        """
        if feature_enabled and step == "Step2":
            targets = {MACRO_CAMERA_ID}
        else:
            targets = set(self.registry.presence_snapshot())
        sent = self.send(SHUTTER, targets)
        if not sent:
            logger.warning("Shutter requested but no station was reachable (targets %s)", sorted(targets))
        return sent
