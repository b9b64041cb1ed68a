"""Configuration for the AOI controller."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path

logger = logging.getLogger(__name__)

_ENV_PREFIX = "AOI_"


@dataclass
class ControllerConfig:
    """Controller configuration — loaded from config.json, then AOI_* env."""

    # Station socket
    host: str = "0.0.0.0"
    port: int = 8080

    # mDNS
    announce: bool = True
    service_name: str = "MacController"
    service_type: str = "_maccontrol._tcp.local."

    # Operator API
    api_host: str = "127.0.0.1"
    api_port: int = 8090

    # Images land in <base_dir>/<YYYYMMDD>/<serial>/
    base_dir: str = "~/Desktop/AOI"

    # Notice lifetimes (seconds)
    step2_disabled_tip_seconds: float = 2.0
    incomplete_reset_seconds: float = 2.0
    error_tip_seconds: float = 3.0

    @classmethod
    def load(cls, path: str | Path) -> ControllerConfig:
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
            json.dump(dict(self.__dict__), f, indent=2)

    def apply_env(self, environ: dict[str, str] | None = None) -> ControllerConfig:
        """Override fields from ``AOI_<FIELD>`` environment variables."""
        environ = os.environ if environ is None else environ
        for f in fields(self):
            raw = environ.get(_ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            current = getattr(self, f.name)
            if isinstance(current, bool):
                value = raw.strip().lower() in ("1", "true", "yes", "on")
            elif isinstance(current, int):
                value = int(raw)
            elif isinstance(current, float):
                value = float(raw)
            else:
                value = raw
            setattr(self, f.name, value)
        return self

    @property
    def image_dir(self) -> Path:
        return Path(self.base_dir).expanduser()
