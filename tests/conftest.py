"""
Shared fixtures for the portal-livesync test suite.
"""

import pytest

from portal.livesync.feed.memory import InMemoryBackend
from portal.livesync.kinds import portal_kinds


@pytest.fixture
def registry():
    """Portal table registry."""
    return portal_kinds()


@pytest.fixture
async def backend(registry):
    """Connected in-memory backend."""
    mem = InMemoryBackend(registry)
    await mem.connect()
    yield mem
    await mem.close()
