"""mDNS advertisement of the controller.

Stations browse for ``_maccontrol._tcp.local.`` and dial the first address
they resolve, so no station needs a configured controller address.
"""

from __future__ import annotations

import logging
import socket
from typing import Optional

from zeroconf import ServiceInfo
from zeroconf.asyncio import AsyncZeroconf

logger = logging.getLogger(__name__)

CONTROLLER_SERVICE = "_maccontrol._tcp.local."
CONTROLLER_NAME = "MacController"


class ControllerAnnouncer:
    """Registers the controller's station port on the local network."""

    def __init__(
        self,
        port: int = 8080,
        name: str = CONTROLLER_NAME,
        service_type: str = CONTROLLER_SERVICE,
    ) -> None:
        self.port = port
        self.name = name
        self.service_type = service_type
        self._zeroconf: Optional[AsyncZeroconf] = None
        self._info: Optional[ServiceInfo] = None

    async def start(self) -> None:
        local_ip = get_local_ip()
        self._info = ServiceInfo(
            self.service_type,
            f"{self.name}.{self.service_type}",
            addresses=[socket.inet_aton(local_ip)],
            port=self.port,
            properties={"hostname": socket.gethostname()},
        )
        try:
            self._zeroconf = AsyncZeroconf()
            await self._zeroconf.async_register_service(self._info)
        except Exception:
            logger.exception("Failed to announce controller via mDNS")
            await self.stop()
            return
        logger.info("mDNS: announcing %s at %s:%d", self.service_type, local_ip, self.port)

    async def stop(self) -> None:
        if self._zeroconf is None:
            return
        try:
            if self._info is not None:
                await self._zeroconf.async_unregister_service(self._info)
        finally:
            await self._zeroconf.async_close()
            self._zeroconf = None
            self._info = None
            logger.info("mDNS: stopped announcing")


def get_local_ip() -> str:
    """Get this machine's LAN IP address."""
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        s.settimeout(2)
        s.connect(("8.8.8.8", 80))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except OSError:
        return "127.0.0.1"
