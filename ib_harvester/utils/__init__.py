"""Utility helpers shared across the harvester."""

from .clock import Clock, SystemClock
from .request_ids import RequestIdAllocator

__all__ = ["Clock", "SystemClock", "RequestIdAllocator"]
