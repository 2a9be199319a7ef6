"""
pytest configuration for collector tests.

Adds src directory to Python path for imports and sets up test environment.
"""

import sys
from pathlib import Path

import pytest

# Add src directory to Python path
src_dir = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_dir))


@pytest.fixture(autouse=True)
def _reset_log_context():
    """Context variables set by one test must not leak into the next."""
    from core.logging.context import clear_log_context

    clear_log_context()
    yield
    clear_log_context()


@pytest.fixture
def record_sleep():
    """Awaitable sleep replacement that records requested delays."""
    delays: list[float] = []

    async def _sleep(seconds: float) -> None:
        delays.append(seconds)

    _sleep.delays = delays
    return _sleep
