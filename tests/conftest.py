"""Shared fixtures for unit tests that run without a database."""
from contextlib import asynccontextmanager
from unittest.mock import MagicMock

import pytest


@pytest.fixture
def fake_db():
    """(session, get_db replacement). Every get_db() yields the same mock session."""
    session = MagicMock(name="session")

    @asynccontextmanager
    async def _get_db():
        yield session

    return session, _get_db
