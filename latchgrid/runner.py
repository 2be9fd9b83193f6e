#!/usr/bin/env python3
"""
latchgrid runner - headless tick loop for one grid device.

Discovers a device through the daemon, attaches a GridSession to it and
ticks at a fixed rate so the device's LEDs follow the latch.

Usage:
    python -m latchgrid
    python -m latchgrid --config path/to/grid.yaml --event-port 0
    python -m latchgrid --daemon-port 12002 --tick-hz 60 --log-level DEBUG
"""

import argparse
import signal
import sys
import time
from typing import Any, Dict, Optional

from latchgrid import log
from latchgrid import settings
from latchgrid.discovery import DiscoveryClient
from latchgrid.grid import GridSession

logger = log.get_logger("latchgrid.runner")


class GridRunner:
    """Drives discovery and a session from a single loop.

    Args:
        discovery: Client used to find the device
        session: Session that receives discovered descriptors
        tick_hz: Loop rate in ticks per second
    """

    def __init__(self, discovery: DiscoveryClient, session: GridSession, tick_hz: float = 30.0):
        if tick_hz <= 0:
            raise ValueError(f"tick_hz must be positive, got {tick_hz}")
        self.discovery = discovery
        self.session = session
        self.tick_interval = 1.0 / tick_hz
        self.running = False

    def step(self) -> None:
        """One loop iteration: collect replies, attach, tick."""
        for descriptor in self.discovery.poll():
            # Several replies in one poll: the last one wins
            self.session.attach(descriptor)
        self.session.tick()

    def run(self) -> None:
        """Request discovery and tick until stop() is called."""
        self.running = True
        self.discovery.request_discovery()

        next_tick = time.monotonic()
        while self.running:
            self.step()
            next_tick += self.tick_interval
            delay = next_tick - time.monotonic()
            if delay > 0:
                time.sleep(delay)
            else:
                # Fell behind; resume pacing from now
                next_tick = time.monotonic()

    def stop(self) -> None:
        self.running = False

    def shutdown(self) -> None:
        """Release sockets and report statistics."""
        logger.info("Shutting down...")
        self.session.close()
        self.discovery.close()
        self.discovery.stats.log_stats(logger, "DISCOVERY STATISTICS")
        self.session.stats.log_stats(logger, "GRID SESSION STATISTICS")
        logger.info("Final latch state:")
        for line in self.session.latch.render().splitlines():
            logger.info(f"  {line}")


def build_runner(config: Dict[str, Any]) -> GridRunner:
    """Create discovery client, session and runner from a config dict."""
    daemon = config["daemon"]
    discovery_cfg = config["discovery"]
    session_cfg = config["session"]

    discovery = DiscoveryClient(
        daemon_host=daemon["host"],
        daemon_port=daemon["port"],
        reply_host=discovery_cfg["reply_host"],
        reply_port=discovery_cfg["reply_port"],
        timeout=discovery_cfg["timeout"],
        max_retries=discovery_cfg["max_retries"],
        backoff=discovery_cfg["backoff"],
    )
    session = GridSession(
        event_host=session_cfg["event_host"],
        event_port=session_cfg["event_port"],
        prefix=session_cfg["prefix"],
        light_all_latches=session_cfg["light_all_latches"],
    )
    return GridRunner(discovery, session, tick_hz=config["runner"]["tick_hz"])


def apply_overrides(config: Dict[str, Any], args: argparse.Namespace) -> Dict[str, Any]:
    """Copy command-line overrides into the config dict."""
    config = settings.merge(config, {})
    if args.daemon_host is not None:
        config["daemon"]["host"] = args.daemon_host
    if args.daemon_port is not None:
        config["daemon"]["port"] = args.daemon_port
    if args.reply_port is not None:
        config["discovery"]["reply_port"] = args.reply_port
    if args.event_port is not None:
        config["session"]["event_port"] = args.event_port
    if args.prefix is not None:
        config["session"]["prefix"] = args.prefix
    if args.light_all_latches:
        config["session"]["light_all_latches"] = True
    if args.tick_hz is not None:
        config["runner"]["tick_hz"] = args.tick_hz
    return config


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="latchgrid - toggle latch driver for an OSC grid controller")
    parser.add_argument(
        "--config",
        default=str(settings.DEFAULT_CONFIG_PATH),
        help=f"Path to grid.yaml (default: {settings.DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument("--daemon-host", help="Discovery daemon host")
    parser.add_argument("--daemon-port", type=int, help="Discovery daemon port (default: 12002)")
    parser.add_argument("--reply-port", type=int, help="Local discovery reply port (default: 12288)")
    parser.add_argument("--event-port", type=int, help="Local device event port (default: 13001, 0 = any)")
    parser.add_argument("--prefix", help="Device address prefix, e.g. /monome")
    parser.add_argument("--tick-hz", type=float, help="Ticks per second (default: 30)")
    parser.add_argument(
        "--light-all-latches",
        action="store_true",
        help="Make /grid/led/all also update the latch",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: LATCHGRID_LOG_LEVEL or INFO)",
    )
    return parser.parse_args(argv)


def main(argv: Optional[list] = None) -> int:
    """Main entry point for the runner."""
    args = parse_args(argv)
    if args.log_level:
        log.set_level(args.log_level)

    try:
        config = apply_overrides(settings.load_config(args.config), args)
        settings.validate_config(config)
    except settings.ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    logger.info("=" * 60)
    logger.info("LATCHGRID")
    logger.info("=" * 60)

    try:
        runner = build_runner(config)
    except OSError as e:
        logger.error(f"Could not open sockets: {e}")
        return 1

    def signal_handler(sig, frame):
        runner.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        runner.run()
    except OSError as e:
        logger.error(f"Socket error: {e}")
        return 1
    finally:
        runner.shutdown()

    return 0


if __name__ == "__main__":
    sys.exit(main())
