#!/usr/bin/env python3
"""
Grid session - per-device command/event channels and the latch bitmap.

Owns the two sockets for an attached device, keeps an 8x8 toggle latch
updated from /grid/key presses, and republishes the whole latch as LED rows
on every tick.

Tick sequence:
    1. Drain the event socket (non-blocking)
    2. Apply /grid/key presses to the latch (press toggles, release ignored)
    3. Send /grid/led/row [0, y, mask] for every row y in 0-7

The latch is the single source of truth. The device's LEDs are a replica
pushed every tick and never read back, so a dropped LED datagram is
repaired on the following tick.
"""

from typing import Callable, List, Optional, Tuple

from latchgrid import osc
from latchgrid.discovery import DeviceDescriptor
from latchgrid.log import get_logger

logger = get_logger("latchgrid.grid")


# ============================================================================
# LATCH MATRIX
# ============================================================================

class LatchMatrix:
    """8x8 toggle latch stored as one bitmask byte per row.

    Bit x of row y is the state of column x. Coordinates outside the grid
    never mutate the matrix.
    """

    def __init__(self, rows: int = osc.GRID_ROWS, cols: int = osc.GRID_COLS):
        self.num_rows = rows
        self.num_cols = cols
        self._rows = bytearray(rows)

    def in_bounds(self, x: int, y: int) -> bool:
        return 0 <= x < self.num_cols and 0 <= y < self.num_rows

    def toggle(self, x: int, y: int) -> bool:
        """Flip cell (x, y).

        Returns:
            True if the cell was flipped, False if (x, y) is off the grid
        """
        if not self.in_bounds(x, y):
            return False
        self._rows[y] ^= (1 << x)
        return True

    def is_set(self, x: int, y: int) -> bool:
        if not self.in_bounds(x, y):
            return False
        return bool(self._rows[y] & (1 << x))

    def row(self, y: int) -> int:
        """Bitmask for row y."""
        return self._rows[y]

    def rows(self) -> Tuple[int, ...]:
        return tuple(self._rows)

    def fill(self, state: bool) -> None:
        mask = (1 << self.num_cols) - 1 if state else 0
        for y in range(self.num_rows):
            self._rows[y] = mask

    def clear(self) -> None:
        self.fill(False)

    def as_grid(self) -> List[List[bool]]:
        """Rows of booleans, row 0 first, for rendering and diagnostics."""
        return [[self.is_set(x, y) for x in range(self.num_cols)]
                for y in range(self.num_rows)]

    def render(self) -> str:
        """Text picture of the latch, '#' for set and '.' for clear."""
        return "\n".join("".join('#' if cell else '.' for cell in row)
                         for row in self.as_grid())

    def __repr__(self):
        masks = " ".join(f"{mask:08b}" for mask in self._rows)
        return f"LatchMatrix({masks})"


# ============================================================================
# VALIDATION
# ============================================================================

def validate_key_event(args) -> Tuple[bool, Optional[Tuple[int, int, int]], Optional[str]]:
    """Validate /grid/key arguments.

    Args:
        args: Message arguments, expected (x, y, state) as plain ints

    Returns:
        Tuple of (is_valid, (x, y, state), error_message):
            - is_valid: True if shape and state are acceptable
            - (x, y, state): Parsed values, None if invalid
            - error_message: Human-readable error if invalid, None if valid

        Coordinates are not bounds checked here; the latch ignores
        off-grid cells.

    Examples:
        >>> validate_key_event((3, 2, 1))
        (True, (3, 2, 1), None)
        >>> validate_key_event((3, 2))
        (False, None, 'Expected 3 arguments (x, y, state), got 2')
    """
    args = tuple(args)
    if len(args) != 3:
        return False, None, f"Expected 3 arguments (x, y, state), got {len(args)}"

    if any(osc.arg_kind(arg) is not osc.ArgKind.INT32 for arg in args):
        return False, None, f"Expected integer arguments, got {list(args)}"

    x, y, state = args
    if state not in (0, 1):
        return False, None, f"Key state must be 0 or 1, got {state}"

    return True, (x, y, state), None


# ============================================================================
# GRID SESSION
# ============================================================================

class GridSession:
    """Session with one attached grid device.

    Constructed detached. attach() binds the command and event channels and
    tells the device where to send events; tick() then keeps the device's
    LEDs in sync with the latch.

    Args:
        event_host: Local interface for the event socket
        event_port: Local event port (default: 13001, 0 for any free port)
        prefix: Device address prefix; empty means bare /grid/* addresses
        light_all_latches: If True, light_all() also fills the latch so the
            next resync keeps the result. If False it is a transient flash
            that the next tick overwrites.
        client_factory: Builds the command client from (host, port)
        receiver_factory: Builds the event receiver from (host, port, stats)
    """

    def __init__(self, event_host: str = osc.LOCALHOST, event_port: int = osc.PORT_DEVICE_EVENTS,
                 prefix: str = "", light_all_latches: bool = False,
                 client_factory: Callable = osc.CommandClient,
                 receiver_factory: Callable = osc.NonBlockingOSCReceiver):
        osc.validate_port(event_port, allow_ephemeral=True)

        self.event_host = event_host
        self.requested_event_port = event_port
        self.prefix = prefix
        self.light_all_latches = light_all_latches
        self.client_factory = client_factory
        self.receiver_factory = receiver_factory

        self.latch = LatchMatrix()
        self.stats = osc.MessageStatistics()

        # Channels exist only while attached
        self.command_client = None
        self.event_receiver = None
        self.descriptor: Optional[DeviceDescriptor] = None

        self.key_address = osc.prefixed(prefix, osc.ADDR_GRID_KEY)
        self.led_row_address = osc.prefixed(prefix, osc.ADDR_LED_ROW)
        self.led_all_address = osc.prefixed(prefix, osc.ADDR_LED_ALL)

    @property
    def attached(self) -> bool:
        return self.descriptor is not None

    @property
    def event_port(self) -> Optional[int]:
        """Bound event port, or None while detached."""
        if self.event_receiver is None:
            return None
        return self.event_receiver.port

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def attach(self, descriptor: DeviceDescriptor) -> None:
        """Bind channels for `descriptor` and configure the device.

        A second attach replaces the first: the old channels are closed
        before the new ones are bound, and nothing more goes to the old
        device.

        Raises:
            OSError: If either channel cannot be created
        """
        if self.attached:
            logger.info(f"Re-attaching: replacing {self.descriptor.id} with {descriptor.id}")
            self.detach()

        client = self.client_factory(descriptor.host, descriptor.command_port)
        try:
            receiver = self.receiver_factory(self.event_host, self.requested_event_port, self.stats)
        except OSError:
            client.close()
            raise

        self.command_client = client
        self.event_receiver = receiver
        self.descriptor = descriptor

        if self.prefix:
            self._send(osc.ADDR_SYS_PREFIX, [self.prefix])
        self._send(osc.ADDR_SYS_PORT, [receiver.port])

        self.stats.increment('attachments')
        logger.info(f"Attached to {descriptor.id} at {descriptor.host}:{descriptor.command_port}, "
                    f"events on {self.event_host}:{receiver.port}")

    def detach(self) -> None:
        """Close both channels. Safe to call when already detached."""
        if self.command_client is not None:
            self.command_client.close()
        if self.event_receiver is not None:
            self.event_receiver.close()

        if self.descriptor is not None:
            logger.info(f"Detached from {self.descriptor.id}")

        self.command_client = None
        self.event_receiver = None
        self.descriptor = None

    close = detach

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.detach()
        return False

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def tick(self) -> bool:
        """Drain events, update the latch, then resync all LED rows.

        Returns:
            True if attached (commands were sent), False otherwise
        """
        if not self.attached:
            return False

        for origin, message in self.event_receiver.drain():
            self.process_message(message, origin)

        self.resync()
        self.stats.increment('ticks')
        return True

    def process_message(self, message: osc.Message, origin: Optional[Tuple[str, int]] = None) -> None:
        """Apply one inbound device message to the latch."""
        if message.address != self.key_address:
            self.stats.increment('ignored_messages')
            logger.debug(f"Ignoring device message {message.address} {list(message.args)}")
            return

        is_valid, event, error = validate_key_event(message.args)
        if not is_valid:
            self.stats.increment('invalid_key_events')
            source = f" from {origin[0]}:{origin[1]}" if origin else ""
            logger.warning(f"Invalid {message.address} event{source}: {error}")
            return

        x, y, state = event
        self.stats.increment('key_events')

        # Release is a no-op; only presses flip the latch
        if state != 1:
            return

        if not self.latch.toggle(x, y):
            self.stats.increment('out_of_range_events')
            logger.debug(f"Ignoring key press outside grid at ({x}, {y})")

    def resync(self) -> None:
        """Send every latch row to the device."""
        for y in range(self.latch.num_rows):
            self._send(self.led_row_address, [0, y, self.latch.row(y)])
        self.stats.increment('led_row_commands', self.latch.num_rows)

    # ------------------------------------------------------------------
    # Collaborator operations
    # ------------------------------------------------------------------

    def toggle(self, x: int, y: int) -> bool:
        """Flip a latch cell locally; the next tick pushes it to the device."""
        return self.latch.toggle(x, y)

    def light_all(self, state: bool) -> None:
        """Set every LED on or off with a single /grid/led/all command.

        With light_all_latches False the latch is untouched, so the next
        tick's resync replaces this with the latch contents.
        """
        if self.light_all_latches:
            self.latch.fill(state)

        if not self.attached:
            logger.debug("light_all ignored: no device attached")
            return

        self._send(self.led_all_address, [1 if state else 0])
        self.stats.increment('led_all_commands')

    set_all = light_all

    def _send(self, address: str, args: list) -> None:
        self.command_client.send_message(address, args)
