#!/usr/bin/env python3
"""
Grid Emulator - Integration Testing

Emulates a serialosc-style discovery daemon and one 8x8 grid device over
loopback, for exercising latchgrid without hardware.

Features:
- Answers /serialosc/list with a /serialosc/device descriptor
- Accepts /sys/port and /sys/prefix configuration
- Tracks LED rows from /grid/led/row and /grid/led/all
- Programmatic key press/release API
- Optional interactive CLI mode
"""

import argparse
import signal
import sys
import threading
import time
from typing import List, Optional, Tuple
from pythonosc import dispatcher
from pythonosc.osc_server import BlockingOSCUDPServer

from latchgrid import osc


class GridEmulator:
    """Emulated discovery daemon plus grid device.

    Both servers bind on loopback. Port 0 picks a free port; the bound ports
    are available as `daemon_port` and `command_port` after start().

    Args:
        daemon_port: Port answering /serialosc/list (default: 0)
        command_port: Device command port (default: 0)
        serial: Serial reported in the descriptor
        device_type: Model string reported in the descriptor
    """

    def __init__(self, daemon_port: int = 0, command_port: int = 0,
                 serial: str = "m0000001", device_type: str = "monome 64"):
        self.daemon_port = daemon_port
        self.command_port = command_port
        self.serial = serial
        self.device_type = device_type

        # Device configuration, set by the session
        self.event_host = osc.LOCALHOST
        self.event_port: Optional[int] = None
        self.prefix = ""

        # LED state: one bitmask per row (protected by lock)
        self.led_rows: List[int] = [0] * osc.GRID_ROWS
        self.lock = threading.Lock()

        self.daemon_server: Optional[BlockingOSCUDPServer] = None
        self.device_server: Optional[BlockingOSCUDPServer] = None
        self.threads: List[threading.Thread] = []

        # Statistics
        self.list_requests = 0
        self.led_commands = 0
        self.key_events = 0
        self.unknown_messages = 0

        self.running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Start daemon and device servers."""
        daemon_dispatcher = dispatcher.Dispatcher()
        daemon_dispatcher.map(osc.ADDR_LIST, self._handle_list)
        self.daemon_server = BlockingOSCUDPServer((osc.LOCALHOST, self.daemon_port), daemon_dispatcher)
        self.daemon_port = self.daemon_server.server_address[1]

        device_dispatcher = dispatcher.Dispatcher()
        device_dispatcher.map(osc.ADDR_SYS_PORT, self._handle_sys_port)
        device_dispatcher.map(osc.ADDR_SYS_PREFIX, self._handle_sys_prefix)
        device_dispatcher.set_default_handler(self._handle_device_message)
        self.device_server = BlockingOSCUDPServer((osc.LOCALHOST, self.command_port), device_dispatcher)
        self.command_port = self.device_server.server_address[1]

        for server in (self.daemon_server, self.device_server):
            thread = threading.Thread(target=server.serve_forever, daemon=True)
            thread.start()
            self.threads.append(thread)

        self.running = True
        print(f"Grid Emulator: daemon on port {self.daemon_port}, device on port {self.command_port}")

    def stop(self):
        """Stop both servers."""
        self.running = False
        for server in (self.daemon_server, self.device_server):
            if server is not None:
                server.shutdown()
                server.server_close()
        for thread in self.threads:
            thread.join(timeout=1.0)
        self.threads = []
        print(f"\nGrid Emulator stopped.")
        print(f"  List requests: {self.list_requests}")
        print(f"  LED commands received: {self.led_commands}")
        print(f"  Key events sent: {self.key_events}")

    # ------------------------------------------------------------------
    # Daemon
    # ------------------------------------------------------------------

    def _handle_list(self, address: str, *args):
        """Answer /serialosc/list [host, port] with this device's descriptor."""
        if len(args) != 2:
            return

        host, port = args
        if not isinstance(host, str) or type(port) is not int:
            return

        self.list_requests += 1
        with osc.CommandClient(host, port) as client:
            client.send_message(osc.ADDR_DEVICE, [self.serial, self.device_type, self.command_port])

    # ------------------------------------------------------------------
    # Device
    # ------------------------------------------------------------------

    def _handle_sys_port(self, address: str, *args):
        if len(args) != 1:
            return
        try:
            self.event_port = int(args[0])
        except (TypeError, ValueError):
            pass

    def _handle_sys_prefix(self, address: str, *args):
        if len(args) != 1:
            return
        self.prefix = osc.prefixed(str(args[0]), "")

    def _strip_prefix(self, address: str) -> Optional[str]:
        if not self.prefix:
            return address
        if address.startswith(self.prefix + "/"):
            return address[len(self.prefix):]
        return None

    def _handle_device_message(self, address: str, *args):
        """Route /grid/led/* commands, honoring the configured prefix."""
        local = self._strip_prefix(address)
        try:
            args = [int(arg) for arg in args]
        except (TypeError, ValueError):
            self.unknown_messages += 1
            return

        if local == osc.ADDR_LED_ROW and len(args) == 3:
            x_offset, row, mask = args
            if 0 <= row < osc.GRID_ROWS and x_offset == 0:
                with self.lock:
                    self.led_rows[row] = mask & 0xFF
                    self.led_commands += 1
            return

        if local == osc.ADDR_LED_ALL and len(args) == 1:
            value = 0xFF if args[0] else 0
            with self.lock:
                self.led_rows = [value] * osc.GRID_ROWS
                self.led_commands += 1
            return

        self.unknown_messages += 1

    def get_led_row(self, row: int) -> int:
        """Current bitmask of one LED row."""
        with self.lock:
            return self.led_rows[row]

    def get_led_rows(self) -> Tuple[int, ...]:
        with self.lock:
            return tuple(self.led_rows)

    def is_lit(self, x: int, y: int) -> bool:
        return bool(self.get_led_row(y) & (1 << x))

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def send_key(self, x: int, y: int, state: int):
        """Send /grid/key [x, y, state] to the configured event port.

        Raises:
            RuntimeError: If no session has sent /sys/port yet
        """
        if self.event_port is None:
            raise RuntimeError("No event port configured; has a session attached?")

        with osc.CommandClient(self.event_host, self.event_port) as client:
            client.send_message(osc.prefixed(self.prefix, osc.ADDR_GRID_KEY), [x, y, state])
        self.key_events += 1

    def press(self, x: int, y: int):
        self.send_key(x, y, 1)

    def release(self, x: int, y: int):
        self.send_key(x, y, 0)

    def tap(self, x: int, y: int):
        """Press then release."""
        self.press(x, y)
        self.release(x, y)

    def print_led_grid(self):
        """Print current LED grid state."""
        print("\nLED Grid State:")
        print("   " + "".join(f"{c:2}" for c in range(osc.GRID_COLS)))
        for row, mask in enumerate(self.get_led_rows()):
            cells = "".join(" #" if mask & (1 << col) else " ." for col in range(osc.GRID_COLS))
            print(f"{row}: {cells}")


def interactive_mode(emulator: GridEmulator):
    """Interactive CLI mode for manual testing."""
    print("\nInteractive Mode")
    print("Commands:")
    print("  t <x> <y>  - Tap key (press + release), e.g. 't 3 2'")
    print("  p <x> <y>  - Press key")
    print("  r <x> <y>  - Release key")
    print("  s          - Show LED grid")
    print("  q          - Quit")

    while emulator.running:
        try:
            cmd = input("\n> ").strip().split()
            if not cmd:
                continue

            if cmd[0] == 'q':
                break
            elif cmd[0] == 's':
                emulator.print_led_grid()
            elif cmd[0] in ('t', 'p', 'r') and len(cmd) == 3:
                x, y = int(cmd[1]), int(cmd[2])
                action = {'t': emulator.tap, 'p': emulator.press, 'r': emulator.release}[cmd[0]]
                action(x, y)
            else:
                print("Unknown command")

        except (ValueError, RuntimeError) as e:
            print(f"Error: {e}")
        except (KeyboardInterrupt, EOFError):
            break


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Grid emulator for integration testing")
    parser.add_argument("--daemon-port", type=int, default=osc.PORT_SERIALOSC,
                        help=f"Discovery daemon port (default: {osc.PORT_SERIALOSC})")
    parser.add_argument("--command-port", type=int, default=0,
                        help="Device command port (default: any free port)")
    parser.add_argument("--serial", default="m0000001", help="Device serial (default: m0000001)")
    parser.add_argument("--interactive", action="store_true",
                        help="Run in interactive mode")

    args = parser.parse_args()

    emulator = GridEmulator(
        daemon_port=args.daemon_port,
        command_port=args.command_port,
        serial=args.serial,
    )

    def signal_handler(sig, frame):
        emulator.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    emulator.start()

    if args.interactive:
        interactive_mode(emulator)
        emulator.stop()
    else:
        print("Emulator running. Press Ctrl+C to exit.")
        while True:
            time.sleep(1)


if __name__ == "__main__":
    main()
