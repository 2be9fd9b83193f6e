"""
Tests for latchgrid OSC infrastructure

Validates argument classification, packet decoding, the non-blocking
receiver and the shared helpers.
"""

import socket
import time

import pytest
from pythonosc.osc_bundle_builder import IMMEDIATELY, OscBundleBuilder
from pythonosc.osc_message_builder import OscMessageBuilder

from latchgrid import osc


# "/gr\xffd" padded to 8 bytes, then an empty type tag string
BAD_ADDRESS_DGRAM = b"/gr\xffd\x00\x00\x00,\x00\x00\x00"

# /serialosc/device with one string argument that is not UTF-8
BAD_STRING_ARG_DGRAM = b"/serialosc/device\x00\x00\x00,s\x00\x00\xff\xfe\x00\x00"


def build_message(address, *args):
    builder = OscMessageBuilder(address=address)
    for arg in args:
        builder.add_arg(arg)
    return builder.build()


def drain_until(receiver, count, timeout=1.0):
    """Drain until `count` messages have arrived or the timeout expires."""
    received = []
    deadline = time.monotonic() + timeout
    while len(received) < count and time.monotonic() < deadline:
        received.extend(receiver.drain())
        time.sleep(0.005)
    return received


class TestArgKind:
    """Test argument classification."""

    def test_supported_kinds(self):
        assert osc.arg_kind(7) is osc.ArgKind.INT32
        assert osc.arg_kind(0.5) is osc.ArgKind.FLOAT32
        assert osc.arg_kind("m0000001") is osc.ArgKind.STRING
        assert osc.arg_kind(b"\x00\x01") is osc.ArgKind.BLOB

    def test_bool_is_not_int(self):
        """Booleans decode from T/F tags and must not pass as ints."""
        assert osc.arg_kind(True) is None
        assert osc.arg_kind(False) is None

    def test_unsupported_kinds(self):
        assert osc.arg_kind(None) is None
        assert osc.arg_kind((1, 2, 3, 4)) is None

    def test_message_matches(self):
        msg = osc.Message("/serialosc/device", ("m1", "monome 64", 14656))
        assert msg.matches(osc.ArgKind.STRING, osc.ArgKind.STRING, osc.ArgKind.INT32)
        assert not msg.matches(osc.ArgKind.STRING, osc.ArgKind.STRING)


class TestDecodePacket:
    """Test datagram decoding into Message/Bundle."""

    def test_decode_message(self):
        dgram = build_message("/grid/key", 3, 2, 1).dgram

        packet = osc.decode_packet(dgram)

        assert packet == osc.Message("/grid/key", (3, 2, 1))

    def test_decode_mixed_arguments(self):
        dgram = build_message("/serialosc/device", "m1", "monome 64", 14656).dgram

        packet = osc.decode_packet(dgram)

        assert packet.address == "/serialosc/device"
        assert packet.args == ("m1", "monome 64", 14656)

    def test_decode_bundle_keeps_order(self):
        bundle = OscBundleBuilder(IMMEDIATELY)
        bundle.add_content(build_message("/grid/key", 0, 0, 1))
        bundle.add_content(build_message("/grid/key", 1, 0, 1))

        packet = osc.decode_packet(bundle.build().dgram)

        assert isinstance(packet, osc.Bundle)
        messages = list(osc.iter_messages(packet))
        assert [m.args for m in messages] == [(0, 0, 1), (1, 0, 1)]

    def test_nested_bundle_flattens_depth_first(self):
        inner = OscBundleBuilder(IMMEDIATELY)
        inner.add_content(build_message("/b"))
        outer = OscBundleBuilder(IMMEDIATELY)
        outer.add_content(build_message("/a"))
        outer.add_content(inner.build())
        outer.add_content(build_message("/c"))

        packet = osc.decode_packet(outer.build().dgram)

        assert [m.address for m in osc.iter_messages(packet)] == ["/a", "/b", "/c"]

    def test_garbage_raises(self):
        with pytest.raises(osc.PacketDecodeError):
            osc.decode_packet(b"not an osc packet")

    def test_invalid_utf8_address_raises(self):
        with pytest.raises(osc.PacketDecodeError, match="UTF-8"):
            osc.decode_packet(BAD_ADDRESS_DGRAM)

    def test_invalid_utf8_string_argument_raises(self):
        with pytest.raises(osc.PacketDecodeError, match="UTF-8"):
            osc.decode_packet(BAD_STRING_ARG_DGRAM)

    def test_truncated_argument_raises(self):
        # Type tag promises an int32 but no argument bytes follow
        with pytest.raises(osc.PacketDecodeError):
            osc.decode_packet(b"/grid/key\x00\x00\x00,i\x00\x00")

    def test_decode_error_is_value_error(self):
        assert issubclass(osc.PacketDecodeError, ValueError)


class TestNonBlockingReceiver:
    """Test the drain-without-wait receiver over loopback."""

    def test_drain_empty_returns_immediately(self):
        with osc.NonBlockingOSCReceiver(port=0) as receiver:
            start = time.monotonic()
            assert receiver.drain() == []
            assert time.monotonic() - start < 0.5

    def test_ephemeral_port_is_reported(self):
        with osc.NonBlockingOSCReceiver(port=0) as receiver:
            assert receiver.port > 0

    def test_drain_fifo_order(self):
        with osc.NonBlockingOSCReceiver(port=0) as receiver:
            with osc.CommandClient(osc.LOCALHOST, receiver.port) as client:
                client.send_message("/grid/key", [0, 0, 1])
                client.send_message("/grid/key", [1, 0, 1])
                client.send_message("/grid/key", [2, 0, 1])

            received = drain_until(receiver, 3)

        assert [msg.args for _, msg in received] == [(0, 0, 1), (1, 0, 1), (2, 0, 1)]

    def test_undecodable_datagram_is_skipped(self):
        stats = osc.MessageStatistics()
        with osc.NonBlockingOSCReceiver(port=0, stats=stats) as receiver:
            with osc.CommandClient(osc.LOCALHOST, receiver.port) as client:
                with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as raw:
                    raw.sendto(b"garbage!", (osc.LOCALHOST, receiver.port))
                client.send_message("/grid/key", [1, 1, 1])

            received = drain_until(receiver, 1)

        assert [msg.address for _, msg in received] == ["/grid/key"]
        assert stats.get('undecodable_datagrams') == 1

    @pytest.mark.parametrize("dgram", [BAD_ADDRESS_DGRAM, BAD_STRING_ARG_DGRAM],
                             ids=["address", "string-argument"])
    def test_invalid_utf8_datagram_is_skipped(self, dgram):
        stats = osc.MessageStatistics()
        with osc.NonBlockingOSCReceiver(port=0, stats=stats) as receiver:
            with osc.CommandClient(osc.LOCALHOST, receiver.port) as client:
                with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as raw:
                    raw.sendto(dgram, (osc.LOCALHOST, receiver.port))
                client.send_message("/grid/key", [2, 2, 1])

            received = drain_until(receiver, 1)

        assert [msg.args for _, msg in received] == [(2, 2, 1)]
        assert stats.get('undecodable_datagrams') == 1

    def test_drain_after_close_is_empty(self):
        receiver = osc.NonBlockingOSCReceiver(port=0)
        receiver.close()
        receiver.close()
        assert receiver.drain() == []

    def test_bind_conflict_raises(self):
        with osc.NonBlockingOSCReceiver(port=0) as first:
            with pytest.raises(OSError):
                osc.NonBlockingOSCReceiver(port=first.port)


class TestValidation:
    """Test port validation and address helpers."""

    def test_valid_ports(self):
        osc.validate_port(1)
        osc.validate_port(13001)
        osc.validate_port(65535)

    @pytest.mark.parametrize("port", [0, -1, 65536, 70000])
    def test_invalid_ports(self, port):
        with pytest.raises(ValueError, match="Port must be in range"):
            osc.validate_port(port)

    def test_ephemeral_port(self):
        osc.validate_port(0, allow_ephemeral=True)

    def test_non_integer_port(self):
        with pytest.raises(ValueError, match="integer"):
            osc.validate_port("13001")
        with pytest.raises(ValueError, match="integer"):
            osc.validate_port(True)

    def test_prefixed(self):
        assert osc.prefixed("", "/grid/key") == "/grid/key"
        assert osc.prefixed("/monome", "/grid/key") == "/monome/grid/key"
        assert osc.prefixed("monome/", "/grid/led/row") == "/monome/grid/led/row"


class TestMessageStatistics:
    """Test counter bookkeeping and formatting."""

    def test_increment_and_get(self):
        stats = osc.MessageStatistics()
        stats.increment('key_events')
        stats.increment('key_events', 2)

        assert stats.get('key_events') == 3
        assert stats.get('missing') == 0

    def test_format_sorted_title_case(self):
        stats = osc.MessageStatistics()
        stats.increment('ticks', 5)
        stats.increment('key_events')

        lines = stats.format("GRID").splitlines()

        assert lines[1] == "GRID"
        assert lines[3:5] == ["Key Events: 1", "Ticks: 5"]
