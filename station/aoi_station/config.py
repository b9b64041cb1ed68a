"""Configuration for the AOI camera station."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

CAMERA_ID_RANGE = range(1, 5)


@dataclass
class StationConfig:
    """Station configuration — loaded from config.json.

    ``camera_id`` is written back whenever the operator changes it, so a
    station keeps its position across restarts.
    """

    camera_id: int = 1

    # Controller address; empty host means "find it via mDNS"
    controller_host: str = ""
    controller_port: int = 8080
    service_type: str = "_maccontrol._tcp.local."
    discovery_timeout: float = 30.0
    connect_timeout: float = 10.0
    reconnect_delay: float = 5.0

    # Camera
    camera_type: str = "command"  # command | file
    capture_command: list = field(default_factory=lambda: [
        "libcamera-still", "--nopreview", "-t", "1", "-e", "jpg", "-o", "-",
    ])
    capture_file: str = ""
    capture_timeout: float = 15.0

    @classmethod
    def load(cls, path: str | Path) -> StationConfig:
        path = Path(path)
        if path.exists():
            with open(path) as f:
                data = json.load(f)
            known = {k for k in cls.__dataclass_fields__}
            filtered = {k: v for k, v in data.items() if k in known}
            return cls(**filtered)
        logger.warning("Config not found at %s, using defaults", path)
        return cls()

    def save(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(asdict(self), f, indent=2)

    @property
    def uses_discovery(self) -> bool:
        return not self.controller_host
