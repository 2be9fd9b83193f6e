#!/usr/bin/env python3
"""
latchgrid OSC infrastructure - shared networking, packet model and validation.

Provides the socket wrappers, packet decoding, constants and statistics used
by the discovery client, the grid session, the runner and the emulator.

Classes:
    - ArgKind: Closed set of OSC argument kinds understood by latchgrid
    - Message / Bundle: Typed packet variants decoded from a datagram
    - CommandClient: Outbound OSC client with explicit close()
    - NonBlockingOSCReceiver: Bound UDP socket drained without waiting
    - MessageStatistics: Thread-safe message counter with formatted output

Functions:
    - arg_kind(value): Classify a decoded argument
    - decode_packet(dgram): Parse a datagram into a Message or Bundle
    - iter_messages(packet): Flatten a packet into its messages
    - validate_port(port, allow_ephemeral): Validate a UDP port number

Constants:
    - PORT_SERIALOSC: Discovery daemon command port (12002)
    - PORT_DISCOVERY_REPLY: Local discovery reply port (12288)
    - PORT_DEVICE_EVENTS: Default device event port (13001)
    - GRID_ROWS, GRID_COLS: Latch grid dimensions
    - ADDR_*: Protocol address patterns
"""

import enum
import errno
import socket
import struct
import threading
from dataclasses import dataclass
from typing import Any, Iterator, List, Optional, Tuple, Union
from pythonosc import osc_bundle
from pythonosc import osc_message
from pythonosc import udp_client

from latchgrid.log import get_logger

logger = get_logger("latchgrid.osc")


# ============================================================================
# CONSTANTS
# ============================================================================

# Port allocation, loopback only
PORT_SERIALOSC = 12002        # Discovery daemon listens here for /serialosc/list
PORT_DISCOVERY_REPLY = 12288  # Daemon answers /serialosc/device here
PORT_DEVICE_EVENTS = 13001    # Device sends /grid/key here once told via /sys/port

LOCALHOST = "127.0.0.1"

# Grid dimensions (one byte per row)
GRID_ROWS = 8
GRID_COLS = 8

# Protocol addresses
ADDR_LIST = "/serialosc/list"
ADDR_DEVICE = "/serialosc/device"
ADDR_SYS_PORT = "/sys/port"
ADDR_SYS_PREFIX = "/sys/prefix"
ADDR_GRID_KEY = "/grid/key"
ADDR_LED_ROW = "/grid/led/row"
ADDR_LED_ALL = "/grid/led/all"

# Port validation range
PORT_MIN = 1
PORT_MAX = 65535

# Largest UDP payload we will read in one recvfrom
MAX_DATAGRAM = 65535


# ============================================================================
# PACKET MODEL
# ============================================================================

class ArgKind(enum.Enum):
    """Argument kinds latchgrid understands.

    python-osc decodes more tags than these (booleans, nil, doubles, MIDI,
    timetags); values of those kinds classify as None and fail any typed
    validation below.
    """
    INT32 = "i"
    FLOAT32 = "f"
    STRING = "s"
    BLOB = "b"


def arg_kind(value: Any) -> Optional[ArgKind]:
    """Classify a decoded OSC argument.

    Booleans are their own OSC tags (T/F), so they are never INT32 even
    though bool subclasses int in Python.

    Examples:
        >>> arg_kind(3)
        <ArgKind.INT32: 'i'>
        >>> arg_kind(True) is None
        True
    """
    if type(value) is int:
        return ArgKind.INT32
    if type(value) is float:
        return ArgKind.FLOAT32
    if isinstance(value, str):
        return ArgKind.STRING
    if isinstance(value, (bytes, bytearray)):
        return ArgKind.BLOB
    return None


@dataclass(frozen=True)
class Message:
    """A single OSC message: address pattern plus ordered arguments."""
    address: str
    args: Tuple[Any, ...] = ()

    @property
    def kinds(self) -> Tuple[Optional[ArgKind], ...]:
        return tuple(arg_kind(arg) for arg in self.args)

    def matches(self, *expected: ArgKind) -> bool:
        """True if the argument kinds are exactly `expected`."""
        return self.kinds == expected


@dataclass(frozen=True)
class Bundle:
    """An OSC bundle: NTP timestamp plus nested messages and bundles."""
    timestamp: float
    contents: Tuple[Union[Message, "Bundle"], ...] = ()


Packet = Union[Message, Bundle]


class PacketDecodeError(ValueError):
    """Raised when a datagram is neither a valid OSC message nor bundle."""


def _convert(element) -> Packet:
    # Iterating an OscBundle yields its nested messages and bundles in order
    if isinstance(element, osc_bundle.OscBundle):
        return Bundle(
            timestamp=element.timestamp,
            contents=tuple(_convert(child) for child in element),
        )
    return Message(address=element.address, args=tuple(element.params))


def decode_packet(dgram: bytes) -> Packet:
    """Parse a raw datagram into a typed Message or Bundle.

    Args:
        dgram: Raw UDP payload

    Returns:
        Message or Bundle (bundles keep their nesting)

    Raises:
        PacketDecodeError: If python-osc cannot parse the datagram, including
            addresses or string arguments that are not valid UTF-8
    """
    try:
        # Bundles start with "#bundle", messages with "/"
        if osc_bundle.OscBundle.dgram_is_bundle(dgram):
            return _convert(osc_bundle.OscBundle(dgram))
        if osc_message.OscMessage.dgram_is_message(dgram):
            return _convert(osc_message.OscMessage(dgram))
    except (osc_bundle.ParseError, osc_message.ParseError) as e:
        raise PacketDecodeError(f"Could not parse packet: {e}") from e
    except UnicodeDecodeError as e:
        # python-osc decodes strings outside its own ParseError handling
        raise PacketDecodeError(f"Packet contains invalid UTF-8: {e}") from e
    except (struct.error, IndexError) as e:
        raise PacketDecodeError(f"Truncated packet: {e}") from e
    raise PacketDecodeError("Datagram is neither an OSC message nor an OSC bundle")


def iter_messages(packet: Packet) -> Iterator[Message]:
    """Yield every message in a packet, depth-first in arrival order."""
    if isinstance(packet, Message):
        yield packet
        return
    for child in packet.contents:
        yield from iter_messages(child)


# ============================================================================
# SOCKETS
# ============================================================================

class CommandClient(udp_client.SimpleUDPClient):
    """Outbound OSC client bound to a single target address.

    Extends pythonosc's SimpleUDPClient with an explicit close() and context
    manager support so sessions can release the socket when re-attaching.

    Args:
        address: Target host
        port: Target UDP port
    """

    def __init__(self, address: str, port: int):
        super().__init__(address, port)
        # Kept for log messages; SimpleUDPClient stores these privately
        self.target = (address, port)
        self.closed = False

    def close(self):
        """Close the UDP socket."""
        # Closing twice is a no-op so detach() can always call it
        if hasattr(self, '_sock') and self._sock and not self.closed:
            self._sock.close()
        self.closed = True

    def __enter__(self):
        """Context manager support."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Ensure socket cleanup on context exit."""
        self.close()
        return False


class NonBlockingOSCReceiver:
    """UDP socket drained once per tick without ever blocking.

    Binding happens in the constructor so startup failures surface as
    OSError at the call site. Port 0 lets the OS choose a free port; the
    chosen port is available as `port`.

    Args:
        host: Local interface to bind
        port: Local UDP port (0 for any free port)
        stats: Optional MessageStatistics for decode failures
    """

    def __init__(self, host: str = LOCALHOST, port: int = 0,
                 stats: Optional["MessageStatistics"] = None):
        self.stats = stats
        # Plain UDP socket; python-osc servers would block or need a thread
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            self._sock.bind((host, port))
            # recvfrom raises BlockingIOError instead of waiting
            self._sock.setblocking(False)
        except OSError:
            self._sock.close()
            raise
        # Report the bound port, which differs from `port` when 0 was asked for
        self.host, self.port = self._sock.getsockname()[:2]
        self.closed = False

    def drain(self, limit: int = 1024) -> List[Tuple[Tuple[str, int], Message]]:
        """Read every pending datagram and return its messages in FIFO order.

        Undecodable datagrams are logged and skipped. Bundles are flattened.

        Args:
            limit: Maximum datagrams read in one call

        Returns:
            List of (origin_address, Message) pairs
        """
        received = []
        if self.closed:
            return received

        for _ in range(limit):
            try:
                dgram, origin = self._sock.recvfrom(MAX_DATAGRAM)
            except BlockingIOError:
                # Nothing left to read this tick
                break
            except OSError as e:
                # ICMP port-unreachable from an earlier send surfaces here on some platforms
                if e.errno in (errno.ECONNREFUSED, errno.ECONNRESET):
                    continue
                raise

            try:
                packet = decode_packet(dgram)
            except PacketDecodeError as e:
                logger.warning(f"Dropping undecodable datagram from {origin[0]}:{origin[1]}: {e}")
                if self.stats is not None:
                    self.stats.increment('undecodable_datagrams')
                continue

            # Bundles contribute every nested message, in order
            for message in iter_messages(packet):
                received.append((origin, message))

        return received

    def close(self):
        if not self.closed:
            self._sock.close()
            self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


# ============================================================================
# VALIDATION FUNCTIONS
# ============================================================================

def validate_port(port: int, allow_ephemeral: bool = False) -> None:
    """Validate UDP port number is in valid range.

    Args:
        port: Port number to validate
        allow_ephemeral: Accept 0 (bind to any free port)

    Raises:
        ValueError: If port is outside range 1-65535

    Examples:
        >>> validate_port(13001)  # OK
        >>> validate_port(0, allow_ephemeral=True)  # OK
        >>> validate_port(70000)  # Raises ValueError
    """
    # bool subclasses int but is never a valid port
    if type(port) is not int:
        raise ValueError(f"Port must be an integer, got {port!r}")
    if allow_ephemeral and port == 0:
        return
    if port < PORT_MIN or port > PORT_MAX:
        raise ValueError(f"Port must be in range {PORT_MIN}-{PORT_MAX}, got {port}")


def prefixed(prefix: str, address: str) -> str:
    """Join a device prefix (may be empty) and an address.

    Examples:
        >>> prefixed("", "/grid/key")
        '/grid/key'
        >>> prefixed("/monome/", "/grid/key")
        '/monome/grid/key'
    """
    # Normalize to a leading slash and no trailing slash
    prefix = prefix.rstrip('/')
    if prefix and not prefix.startswith('/'):
        prefix = '/' + prefix
    return f"{prefix}{address}"


# ============================================================================
# MESSAGE STATISTICS
# ============================================================================

class MessageStatistics:
    """Thread-safe message counters.

    The core is single threaded; the lock matters for the emulator, whose
    servers run on their own threads.

    Examples:
        >>> stats = MessageStatistics()
        >>> stats.increment('key_events')
        >>> stats.get('key_events')
        1
    """

    def __init__(self):
        self.counters = {}
        self.lock = threading.Lock()

    def increment(self, counter_name: str, amount: int = 1) -> None:
        with self.lock:
            self.counters[counter_name] = self.counters.get(counter_name, 0) + amount

    def get(self, counter_name: str) -> int:
        with self.lock:
            return self.counters.get(counter_name, 0)

    def snapshot(self) -> dict:
        with self.lock:
            return dict(self.counters)

    def format(self, title: str = "STATISTICS") -> str:
        """Render counters as a block of lines, sorted by name.

        Output format:
            ============================================================
            TITLE
            ============================================================
            Counter Name: value
            ============================================================
        """
        lines = ["=" * 60, title, "=" * 60]
        snapshot = self.snapshot()
        for name in sorted(snapshot):
            # key_events -> Key Events
            lines.append(f"{name.replace('_', ' ').title()}: {snapshot[name]}")
        lines.append("=" * 60)
        return "\n".join(lines)

    def log_stats(self, log, title: str = "STATISTICS") -> None:
        for line in self.format(title).splitlines():
            log.info(line)
