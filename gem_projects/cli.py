# ==============================================================================
# gem-projects - Native Messaging Host
# Requires: pip install playwright beautifulsoup4 pyyaml
# ==============================================================================
import argparse
import asyncio
import logging
import sys

from . import __version__
from .config import Settings, load_config
from .core import Coordinator
from .errors import ConfigError, SurfaceError
from .surfaces import PlaywrightDriver
from .transport import NativeMessagingChannel

log = logging.getLogger("gem_projects")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="gem-projects",
        description="Folder chats and background indexing for Gemini over Chrome DevTools.",
    )
    parser.add_argument("--config", help="path to config.yaml (default: ./config.yaml)")
    parser.add_argument("--selectors", help="path to an alternative selectors.yaml")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    # Chrome passes the caller's origin (and --parent-window on Windows).
    parser.add_argument("origin", nargs="?", help=argparse.SUPPRESS)
    args, _ = parser.parse_known_args(argv)
    return args


def setup_logging(verbose=False):
    # stdout is the native messaging channel
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(message)s",
        datefmt="%H:%M:%S",
    )


async def run(settings):
    driver = PlaywrightDriver(settings)
    try:
        await driver.connect()
    except SurfaceError as e:
        log.error("[Error] %s", e)
        return 1

    channel = NativeMessagingChannel()
    coordinator = Coordinator(settings, driver, emit=channel.emit)
    await coordinator.start()
    try:
        await channel.serve(coordinator)
    finally:
        await coordinator.shutdown()
        await driver.shutdown()
    log.info("[Exit] gem-projects stopped.")
    return 0


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.verbose)

    log.info("==========================================")
    log.info("       gem-projects v%s - Folder Chats     ", __version__)
    log.info("==========================================")

    try:
        settings = Settings.from_config(load_config(args.config, args.selectors))
    except ConfigError as e:
        log.critical("[Critical Error] %s", e)
        return 2

    try:
        return asyncio.run(run(settings))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
