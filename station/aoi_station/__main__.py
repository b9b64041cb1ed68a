"""AOI Station entry point.

Usage:
    python -m station.aoi_station [--config CONFIG_PATH] [--camera-id N]

Send SIGHUP to drop the connection and rediscover the controller.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path

from .agent import StationAgent
from .config import StationConfig


def main() -> None:
    parser = argparse.ArgumentParser(description="AOI camera station")
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to config.json (default: ~/.aoi-station/config.json)",
    )
    parser.add_argument(
        "--camera-id",
        type=int,
        choices=[1, 2, 3, 4],
        default=None,
        help="Camera position; saved to the config file",
    )
    parser.add_argument(
        "--controller",
        default=None,
        metavar="HOST[:PORT]",
        help="Controller address (skips mDNS discovery)",
    )
    parser.add_argument(
        "--image",
        default=None,
        help="Serve this file instead of using the camera",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args()

    level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    log = logging.getLogger(__name__)

    config_path = Path(args.config) if args.config else Path.home() / ".aoi-station" / "config.json"
    config = StationConfig.load(config_path)
    log.info("Using config %s", config_path)

    if args.controller:
        host, _, port = args.controller.partition(":")
        config.controller_host = host
        if port:
            config.controller_port = int(port)
    if args.image:
        config.camera_type = "file"
        config.capture_file = args.image

    agent = StationAgent(config, config_path=config_path)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    if args.camera_id is not None and args.camera_id != config.camera_id:
        loop.run_until_complete(agent.set_camera_id(args.camera_id))

    main_task = loop.create_task(agent.start())

    def _shutdown(sig: int) -> None:
        log.info("Received signal %d — shutting down", sig)
        main_task.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _shutdown, sig)
    loop.add_signal_handler(signal.SIGHUP, agent.reconnect)

    try:
        loop.run_until_complete(main_task)
    except asyncio.CancelledError:
        pass
    finally:
        loop.run_until_complete(agent.stop())
        loop.close()


if __name__ == "__main__":
    main()
