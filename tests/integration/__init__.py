"""Integration testing infrastructure for latchgrid."""

from .utils import OSCMessageCapture, wait_until

__all__ = [
    'OSCMessageCapture',
    'wait_until',
]
