#!/usr/bin/env python3
"""
Entry point for running latchgrid as a module.

Usage:
    python -m latchgrid [--config PATH] [--event-port PORT] ...
"""

import sys

from latchgrid.runner import main

sys.exit(main())
