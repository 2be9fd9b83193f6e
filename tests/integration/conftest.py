"""Pytest fixtures for integration tests.

Provides reusable fixtures for loopback integration testing:
- emulator: Started GridEmulator (daemon + device) on ephemeral ports
- second_emulator: Another device, for re-attach scenarios
- discovery: DiscoveryClient pointed at the emulator's daemon
- session: GridSession with an ephemeral event port

All fixtures handle cleanup automatically via pytest's fixture system.
"""

import pytest

from latchgrid.discovery import DiscoveryClient
from latchgrid.grid import GridSession
from latchgrid.simulator.grid_emulator import GridEmulator
from tests.integration.utils import OSCMessageCapture


@pytest.fixture
def emulator():
    """Started grid emulator; stopped on teardown."""
    emu = GridEmulator()
    emu.start()
    yield emu
    emu.stop()


@pytest.fixture
def second_emulator():
    emu = GridEmulator(serial="m0000002")
    emu.start()
    yield emu
    emu.stop()


@pytest.fixture
def discovery(emulator):
    """DiscoveryClient aimed at the emulator, replies on an ephemeral port."""
    client = DiscoveryClient(daemon_port=emulator.daemon_port, reply_port=0, timeout=5.0)
    yield client
    client.close()


@pytest.fixture
def session():
    grid_session = GridSession(event_port=0)
    yield grid_session
    grid_session.close()


@pytest.fixture
def silent_daemon():
    """Captures /serialosc/list requests and never answers."""
    capture = OSCMessageCapture()
    capture.start()
    yield capture
    capture.stop()
