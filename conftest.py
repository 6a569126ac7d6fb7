"""
Test configuration for pytest.
Makes sure an event loop exists before ib_async (and eventkit) get imported.
"""

import asyncio
import platform


def _ensure_event_loop():
    try:
        asyncio.get_event_loop()
    except RuntimeError:
        # No event loop in current thread, create one
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)


def pytest_configure(config):
    """Configure pytest with async support."""
    if platform.system() == "Windows":
        asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())
    _ensure_event_loop()


def pytest_sessionstart(session):
    _ensure_event_loop()
