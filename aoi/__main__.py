"""AOI controller entry point.

Usage:
    python -m aoi [--config CONFIG_PATH] [--base-dir DIR] [--port PORT]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path

from .config import ControllerConfig
from .controller import Controller


def main() -> None:
    parser = argparse.ArgumentParser(description="AOI multi-camera controller")
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to config.json (default: ~/.aoi/controller.json if present)",
    )
    parser.add_argument("--base-dir", default=None, help="Image directory (overrides config)")
    parser.add_argument("--port", type=int, default=None, help="Station port (overrides config)")
    parser.add_argument("--api-port", type=int, default=None, help="Operator API port (overrides config)")
    parser.add_argument("--no-announce", action="store_true", help="Do not advertise via mDNS")
    parser.add_argument("--no-api", action="store_true", help="Do not serve the operator API")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    log = logging.getLogger(__name__)

    config_path = args.config
    if config_path is None:
        candidate = Path.home() / ".aoi" / "controller.json"
        if candidate.exists():
            config_path = str(candidate)

    if config_path:
        config = ControllerConfig.load(config_path)
        log.info("Loaded config from %s", config_path)
    else:
        config = ControllerConfig()
    config.apply_env()

    if args.base_dir:
        config.base_dir = args.base_dir
    if args.port is not None:
        config.port = args.port
    if args.api_port is not None:
        config.api_port = args.api_port
    if args.no_announce:
        config.announce = False

    controller = Controller(config)

    if args.no_api:
        _run_headless(controller)
        return

    import uvicorn

    from .api import create_app

    log.info("Operator API on %s:%d", config.api_host, config.api_port)
    uvicorn.run(
        create_app(controller, manage_lifecycle=True),
        host=config.api_host,
        port=config.api_port,
        log_level="warning",
    )


def _run_headless(controller: Controller) -> None:
    """Run without the operator API until SIGINT/SIGTERM."""
    log = logging.getLogger(__name__)
    loop = asyncio.new_event_loop()
    stop = asyncio.Event()

    def _shutdown(sig: int) -> None:
        log.info("Received signal %d — shutting down", sig)
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _shutdown, sig)

    async def _run() -> None:
        await controller.start()
        try:
            await stop.wait()
        finally:
            await controller.stop()

    try:
        loop.run_until_complete(_run())
    finally:
        loop.close()


if __name__ == "__main__":
    main()
