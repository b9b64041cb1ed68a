"""Controller discovery over mDNS.

The controller registers ``_maccontrol._tcp.local.``; a station browses for
it and dials the first IPv4 address that resolves.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from zeroconf import IPVersion, ServiceStateChange, Zeroconf
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

logger = logging.getLogger(__name__)

CONTROLLER_SERVICE = "_maccontrol._tcp.local."
_RESOLVE_TIMEOUT_MS = 3000


class ControllerDiscovery:
    """Resolves the controller's station endpoint on the local network."""

    def __init__(self, service_type: str = CONTROLLER_SERVICE):
        self.service_type = service_type
        self._lookups: set[asyncio.Task] = set()

    async def resolve(self, timeout: float = 30.0) -> Optional[tuple[str, int]]:
        """Browse until a controller resolves. Returns ``(host, port)`` or None."""
        loop = asyncio.get_running_loop()
        found: asyncio.Future = loop.create_future()
        aiozc = AsyncZeroconf()

        def _on_state_change(
            zeroconf: Zeroconf, service_type: str,
            name: str, state_change: ServiceStateChange,
        ) -> None:
            if state_change not in (ServiceStateChange.Added, ServiceStateChange.Updated):
                return
            task = asyncio.ensure_future(self._lookup(zeroconf, service_type, name, found))
            self._lookups.add(task)
            task.add_done_callback(self._lookups.discard)

        browser = AsyncServiceBrowser(
            aiozc.zeroconf, self.service_type, handlers=[_on_state_change],
        )
        logger.info("mDNS: browsing for controller (%s)", self.service_type)
        try:
            return await asyncio.wait_for(found, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("mDNS: no controller found within %.0fs", timeout)
            return None
        finally:
            for task in list(self._lookups):
                task.cancel()
            await browser.async_cancel()
            await aiozc.async_close()

    async def _lookup(
        self, zeroconf: Zeroconf, service_type: str, name: str, found: asyncio.Future,
    ) -> None:
        info = AsyncServiceInfo(service_type, name)
        if not await info.async_request(zeroconf, _RESOLVE_TIMEOUT_MS):
            logger.debug("mDNS: could not resolve %s", name)
            return
        addresses = info.parsed_addresses(IPVersion.V4Only)
        if not addresses or not info.port:
            logger.debug("mDNS: %s has no usable address", name)
            return
        if not found.done():
            logger.info("mDNS: discovered controller %s at %s:%d", name, addresses[0], info.port)
            found.set_result((addresses[0], info.port))
