#!/usr/bin/env python3
"""
Command-line tool for sending one OSC message into the latchgrid stack.

Usage:
    python -m latchgrid.cli <address> [arg1] [arg2] ...
    python -m latchgrid.cli /grid/key 3 2 1
    python -m latchgrid.cli --port 14656 /grid/led/all 1
"""

import argparse
import sys
from typing import Optional

from latchgrid.osc import (
    CommandClient,
    LOCALHOST,
    PORT_SERIALOSC,
    PORT_DEVICE_EVENTS,
)


def infer_port(address: str) -> Optional[int]:
    """Infer the destination port from the message address.

    - /serialosc/* -> PORT_SERIALOSC (12002), the discovery daemon
    - /grid/key    -> PORT_DEVICE_EVENTS (13001), a session's event port
    - anything else is device-bound; its port comes from discovery

    Args:
        address: OSC address string (e.g., "/grid/key")

    Returns:
        Port number, or None if the port cannot be inferred
    """
    if address.startswith("/serialosc/"):
        return PORT_SERIALOSC
    if address == "/grid/key" or address.endswith("/grid/key"):
        return PORT_DEVICE_EVENTS
    return None


def parse_argument(arg: str):
    """Parse a command-line argument to int, then float, else keep the string."""
    try:
        return int(arg)
    except ValueError:
        pass
    try:
        return float(arg)
    except ValueError:
        pass
    return arg


def send_osc_message(address: str, args: list, port: int, host: str = LOCALHOST):
    """Send a single OSC message."""
    with CommandClient(host, port) as client:
        client.send_message(address, args)
        print(f"Sent to {host}:{port} → {address} {args}")


def main(argv: Optional[list] = None) -> int:
    """CLI entry point for sending OSC messages."""
    parser = argparse.ArgumentParser(
        description="Send one OSC message",
        epilog=(
            "Ports are inferred from address: /serialosc/* → 12002, /grid/key → 13001. "
            "Device commands (/sys/*, /grid/led/*) need --port."
        ),
    )
    parser.add_argument("--host", default=LOCALHOST, help=f"Destination host (default: {LOCALHOST})")
    parser.add_argument("--port", type=int, help="Destination port (default: inferred from address)")
    parser.add_argument("address", help="OSC address, e.g. /grid/key")
    parser.add_argument("args", nargs="*", help="Message arguments")

    args = parser.parse_args(argv)

    if not args.address.startswith("/"):
        print("ERROR: OSC address must start with '/'", file=sys.stderr)
        return 2

    port = args.port if args.port is not None else infer_port(args.address)
    if port is None:
        print(f"ERROR: cannot infer a port for {args.address}; pass --port", file=sys.stderr)
        return 2

    send_osc_message(args.address, [parse_argument(arg) for arg in args.args], port, host=args.host)
    return 0


if __name__ == "__main__":
    sys.exit(main())
