"""
latchgrid - toggle-latch driver for an OSC grid controller.

Modules:
    osc: Shared OSC infrastructure (sockets, packet model, constants)
    discovery: Discovery daemon client and device descriptors
    grid: Grid session, latch matrix and LED resync
    settings: YAML configuration
    runner: Headless tick loop
    cli: One-shot OSC sender
"""

__version__ = "0.1.0"

# Modules are imported on demand so `python -m latchgrid.cli` runs without
# pulling in the runner. Use: from latchgrid import discovery, grid, etc.
