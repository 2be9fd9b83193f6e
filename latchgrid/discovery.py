#!/usr/bin/env python3
"""
Discovery client for the local serialosc-style registration daemon.

Sends /serialosc/list to the daemon and turns its /serialosc/device replies
into DeviceDescriptor values. Replies arrive asynchronously on a separate
port and are collected by poll(), which the caller runs once per tick.

Protocol:
    out -> daemon   /serialosc/list    [host: str, port: int]
    in  <- daemon   /serialosc/device  [serial: str, type: str, port: int]

The protocol has no correlation id or deadline, so an outstanding request
is re-sent after a timeout (with exponential backoff) until a descriptor
arrives or the retry budget runs out.
"""

import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from latchgrid import osc
from latchgrid.log import get_logger

logger = get_logger("latchgrid.discovery")


# ============================================================================
# DESCRIPTORS
# ============================================================================

@dataclass(frozen=True)
class DeviceDescriptor:
    """A grid device announced by the discovery daemon.

    Attributes:
        id: Device serial, e.g. "m0000001"
        host: Host the device's command port lives on
        command_port: UDP port accepting device commands
        device_type: Model string from the daemon, e.g. "monome 64"
    """
    id: str
    host: str
    command_port: int
    device_type: str = ""

    @property
    def address(self):
        return (self.host, self.command_port)


class DescriptorParseError(ValueError):
    """A /serialosc/device reply did not have the expected shape."""


def parse_device_reply(message: osc.Message, host: str = osc.LOCALHOST) -> DeviceDescriptor:
    """Interpret a /serialosc/device reply as a DeviceDescriptor.

    Args:
        message: Decoded reply message
        host: Host to attach to the descriptor (the daemon's host)

    Returns:
        DeviceDescriptor with fields copied verbatim

    Raises:
        DescriptorParseError: Wrong address, argument count or argument types,
            or a command port outside 1-65535

    Examples:
        >>> parse_device_reply(osc.Message("/serialosc/device", ("m1", "monome 64", 14656)))
        DeviceDescriptor(id='m1', host='127.0.0.1', command_port=14656, device_type='monome 64')
    """
    if message.address != osc.ADDR_DEVICE:
        raise DescriptorParseError(f"Unexpected address {message.address}")

    if len(message.args) != 3:
        raise DescriptorParseError(
            f"Expected 3 arguments (serial, type, port), got {len(message.args)}: {list(message.args)}"
        )

    if not message.matches(osc.ArgKind.STRING, osc.ArgKind.STRING, osc.ArgKind.INT32):
        kinds = [kind.name if kind else type(arg).__name__
                 for kind, arg in zip(message.kinds, message.args)]
        raise DescriptorParseError(f"Expected (string, string, int) arguments, got {kinds}")

    serial, device_type, port = message.args
    try:
        osc.validate_port(port)
    except ValueError as e:
        raise DescriptorParseError(str(e)) from e

    return DeviceDescriptor(id=serial, host=host, command_port=port, device_type=device_type)


# ============================================================================
# DISCOVERY CLIENT
# ============================================================================

class DiscoveryClient:
    """Requests device descriptors from the discovery daemon.

    Args:
        daemon_host: Host running the discovery daemon
        daemon_port: Daemon command port (default: 12002)
        reply_host: Host the daemon should answer to (sent in the request)
        reply_port: Local port for replies (default: 12288, 0 for any free port)
        timeout: Seconds to wait before re-sending an unanswered request
        max_retries: Automatic re-sends per request (0 disables retry)
        backoff: Multiplier applied to the timeout after each re-send
        clock: Monotonic time source
    """

    def __init__(self, daemon_host: str = osc.LOCALHOST, daemon_port: int = osc.PORT_SERIALOSC,
                 reply_host: str = osc.LOCALHOST, reply_port: int = osc.PORT_DISCOVERY_REPLY,
                 timeout: float = 2.0, max_retries: int = 3, backoff: float = 2.0,
                 clock: Callable[[], float] = time.monotonic):
        osc.validate_port(daemon_port)
        osc.validate_port(reply_port, allow_ephemeral=True)
        if timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {max_retries}")
        if backoff < 1.0:
            raise ValueError(f"backoff must be >= 1.0, got {backoff}")

        self.daemon_host = daemon_host
        self.daemon_port = daemon_port
        self.reply_host = reply_host
        self.reply_port = reply_port
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff = backoff
        self.clock = clock

        self.stats = osc.MessageStatistics()

        # Outbound channel to the daemon; OSError here is a fatal startup error
        self.client = osc.CommandClient(daemon_host, daemon_port)
        self.receiver: Optional[osc.NonBlockingOSCReceiver] = None

        # Request bookkeeping
        self.pending = False
        self.retries = 0
        self.last_request: Optional[float] = None
        self.last_reply_port: Optional[int] = None

    def open_receiver(self) -> osc.NonBlockingOSCReceiver:
        """Bind the reply socket if it is not bound yet."""
        if self.receiver is None:
            self.receiver = osc.NonBlockingOSCReceiver(self.reply_host, self.reply_port, stats=self.stats)
            logger.info(f"Listening for discovery replies on {self.reply_host}:{self.receiver.port}")
        return self.receiver

    def request_discovery(self, reply_port: Optional[int] = None) -> None:
        """Ask the daemon to list its devices.

        Does not wait for an answer; replies are collected by poll().

        Args:
            reply_port: Port the daemon should answer on. Defaults to this
                client's own reply socket, which is bound on first use.
                An explicit port binds the reply socket there if none is
                bound yet.

        Raises:
            ValueError: If reply_port is invalid, or differs from the port
                the reply socket is already bound to
            OSError: If the reply socket cannot be bound
        """
        if reply_port is None:
            reply_port = self.open_receiver().port
        else:
            osc.validate_port(reply_port)
            if self.receiver is None:
                self.reply_port = reply_port
                self.open_receiver()
            elif self.receiver.port != reply_port:
                raise ValueError(f"Reply socket is bound to port {self.receiver.port}, "
                                 f"cannot request replies on {reply_port}")

        self.last_reply_port = reply_port
        self.retries = 0
        self._send_request()

    def _send_request(self) -> None:
        self.client.send_message(osc.ADDR_LIST, [self.reply_host, self.last_reply_port])
        self.pending = True
        self.last_request = self.clock()
        self.stats.increment('list_requests')
        logger.info(f"Sent {osc.ADDR_LIST} to {self.daemon_host}:{self.daemon_port} "
                    f"(reply to {self.reply_host}:{self.last_reply_port})")

    def current_timeout(self) -> float:
        """Timeout for the current attempt, grown by backoff per retry."""
        return self.timeout * (self.backoff ** self.retries)

    def poll(self) -> List[DeviceDescriptor]:
        """Collect pending replies and apply the retry policy.

        Never blocks. Malformed replies are logged and discarded.

        Returns:
            Descriptors parsed this call, in arrival order
        """
        descriptors = []
        if self.receiver is not None:
            for origin, message in self.receiver.drain():
                descriptor = self.handle_reply(message)
                if descriptor is not None:
                    descriptors.append(descriptor)

        if descriptors:
            self.pending = False
        else:
            self._check_timeout()

        return descriptors

    def handle_reply(self, message: osc.Message) -> Optional[DeviceDescriptor]:
        """Parse one reply message, returning None for anything unusable."""
        if message.address != osc.ADDR_DEVICE:
            self.stats.increment('ignored_replies')
            logger.debug(f"Ignoring discovery message {message.address}")
            return None

        try:
            descriptor = parse_device_reply(message, host=self.daemon_host)
        except DescriptorParseError as e:
            self.stats.increment('malformed_replies')
            logger.warning(f"Discarding malformed {osc.ADDR_DEVICE} reply: {e}")
            return None

        self.stats.increment('device_replies')
        logger.info(f"Found device {descriptor.id} ({descriptor.device_type}) "
                    f"on port {descriptor.command_port}")
        return descriptor

    def _check_timeout(self) -> None:
        if not self.pending or self.last_request is None:
            return

        elapsed = self.clock() - self.last_request
        if elapsed < self.current_timeout():
            return

        if self.retries >= self.max_retries:
            self.pending = False
            self.stats.increment('abandoned_requests')
            logger.warning(f"No discovery reply after {self.retries} retries; giving up "
                           f"(is the daemon running on {self.daemon_host}:{self.daemon_port}?)")
            return

        self.retries += 1
        self.stats.increment('retries')
        logger.info(f"No discovery reply after {elapsed:.1f}s, retrying "
                    f"({self.retries}/{self.max_retries})")
        self._send_request()

    def close(self) -> None:
        """Release the daemon client and reply socket."""
        self.client.close()
        if self.receiver is not None:
            self.receiver.close()
            self.receiver = None
        self.pending = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
