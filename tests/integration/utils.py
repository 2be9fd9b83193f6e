"""Integration test utilities for latchgrid.

Provides utilities for running loopback integration tests:
- OSCMessageCapture: Thread-safe OSC message capture for validation
- wait_until: Poll a condition (optionally ticking) until it holds
"""

import time
import threading
from collections import deque
from pythonosc import dispatcher
from pythonosc.osc_server import ThreadingOSCUDPServer

from latchgrid import osc


class OSCMessageCapture:
    """Captures OSC messages sent to a loopback port.

    Binds on an ephemeral port; the bound port is available as `port` after
    start(). Used as a silent daemon or device that records what it was sent.

    Example:
        capture = OSCMessageCapture()
        capture.start()
        client = DiscoveryClient(daemon_port=capture.port)
        ...
        assert len(capture.get_messages_by_address("/serialosc/list")) == 1
        capture.stop()
    """

    def __init__(self, port: int = 0):
        self.port = port
        self.messages = deque(maxlen=1000)  # Prevent unbounded growth
        self.lock = threading.Lock()
        self.server = None
        self.server_thread = None

    def start(self):
        """Start capture server in background thread."""
        disp = dispatcher.Dispatcher()
        disp.set_default_handler(self._capture_handler)

        self.server = ThreadingOSCUDPServer((osc.LOCALHOST, self.port), disp)
        self.port = self.server.server_address[1]

        self.server_thread = threading.Thread(target=self.server.serve_forever)
        self.server_thread.daemon = True
        self.server_thread.start()

    def _capture_handler(self, address, *args):
        with self.lock:
            self.messages.append((time.time(), address, args))

    def get_messages_by_address(self, address_pattern: str):
        """All captured (timestamp, address, args) tuples with this address prefix."""
        with self.lock:
            return [(ts, addr, args) for ts, addr, args in self.messages
                    if addr.startswith(address_pattern)]

    def clear(self):
        with self.lock:
            self.messages.clear()

    def stop(self):
        """Stop capture server and release its socket."""
        if self.server:
            self.server.shutdown()
            self.server.server_close()


def wait_until(condition, timeout: float = 2.0, interval: float = 0.01, step=None):
    """Poll `condition` until it returns truthy.

    Args:
        condition: Zero-argument callable
        timeout: Maximum seconds to wait
        interval: Sleep between polls
        step: Optional callable run before each poll (e.g. session.tick)

    Returns:
        The truthy value returned by condition

    Raises:
        TimeoutError: If the condition does not hold within timeout
    """
    deadline = time.monotonic() + timeout
    while True:
        if step is not None:
            step()
        result = condition()
        if result:
            return result
        if time.monotonic() >= deadline:
            raise TimeoutError(f"Condition not met within {timeout}s")
        time.sleep(interval)
