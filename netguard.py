#!/usr/bin/env python3
"""
NetGuard - Wi-Fi and LAN discovery service
Scans nearby networks, tracks the active one and keeps an inventory of
devices sharing it.
"""
import signal
import sys
import threading

from app.controller import NetGuardController
from app.dependencies import create_dependencies
from config import (
    ConfigurationError,
    NetGuardError,
    get_data_dir,
    get_logger,
    is_debug_enabled,
    load_overrides,
    setup_logging,
)

logger = get_logger(__name__)


def main() -> int:
    """Entry point for the service."""
    data_dir = get_data_dir()
    try:
        debug = is_debug_enabled()
        intervals = load_overrides()
    except ConfigurationError as e:
        print(f"NetGuard configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(data_dir=data_dir, debug=debug, console_output=True)
    logger.info("NetGuard starting...")

    try:
        deps = create_dependencies(data_dir=data_dir)
    except NetGuardError as e:
        logger.exception(f"Startup failed: {e}")
        return 1

    controller = NetGuardController(deps, intervals=intervals)
    stopped = threading.Event()

    def signal_handler(signum, frame):
        """Handle SIGTERM/SIGINT to save data before exit."""
        logger.info(f"Received signal {signum}, saving data...")
        stopped.set()

    # Register signal handlers for graceful shutdown
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    controller.start()
    try:
        while not stopped.wait(1.0):
            pass
    finally:
        controller.stop()
        if deps.event_bus is not None:
            deps.event_bus.shutdown()
    logger.info("NetGuard stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
