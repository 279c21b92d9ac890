"""
MeshCore Client - Entry Point

Run with: python -m meshcore_client /dev/ttyUSB0
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from meshcore_client import __version__
from meshcore_client.client import MeshCoreClient
from meshcore_client.config import load_config
from meshcore_client.core.events import SelfInfoEvent
from meshcore_client.errors import ChannelClosedError, MeshCoreError, SubscriptionLagged
from meshcore_client.transport import list_ports


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="meshcore-client",
        description="Connect to a MeshCore companion radio and print what it reports",
    )

    parser.add_argument(
        "port",
        nargs="?",
        help="Serial port of the device (default: from config)",
    )

    parser.add_argument(
        "-b",
        "--baudrate",
        type=int,
        default=None,
        help="Serial baud rate (default: from config, 115200)",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=None,
        help="TOML file overriding the built-in defaults",
    )

    parser.add_argument(
        "-w",
        "--watch",
        type=float,
        default=0.0,
        metavar="SECONDS",
        help="After connecting, print incoming events as JSON for this long",
    )

    parser.add_argument(
        "--list-ports",
        action="store_true",
        help="List available serial ports and exit",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    return parser.parse_args(argv)


def print_json(data: object) -> None:
    print(json.dumps(data, ensure_ascii=False), flush=True)


async def run_client(port: str | None, baudrate: int | None, config_path: Path | None, watch: float) -> None:
    """Connect, print the device's self info and optionally stream events."""
    config = load_config(config_path)
    client = MeshCoreClient.serial(port, baudrate, config)

    async with client:
        assert client.self_info is not None
        print_json(SelfInfoEvent(info=client.self_info).to_dict())
        if watch <= 0:
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + watch
        with client.subscribe() as sub:
            while (remaining := deadline - loop.time()) > 0:
                try:
                    event = await asyncio.wait_for(sub.recv(), remaining)
                except SubscriptionLagged as e:
                    logging.getLogger(__name__).warning("Output fell behind, %d events skipped", e.missed)
                    continue
                except (asyncio.TimeoutError, ChannelClosedError):
                    break
                print_json(event.to_dict())


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the application."""
    args = parse_args(argv)
    setup_logging(verbose=args.verbose)

    logger = logging.getLogger(__name__)

    if args.list_ports:
        for info in list_ports():
            print(f"{info.device}\t{info.description}")
        return 0

    try:
        asyncio.run(run_client(args.port, args.baudrate, args.config, args.watch))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except MeshCoreError as e:
        logger.error("%s", e)
        return 1
    except Exception as e:
        logger.exception("Fatal error: %s", e)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
