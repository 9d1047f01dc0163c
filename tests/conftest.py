"""Shared pytest fixtures for PharmaKPI application-level tests.

Feature tests live beside their code under app/ and carry their own
fixtures; this directory only covers application wiring.
"""

import pytest
from httpx import ASGITransport, AsyncClient

from app.main import app


@pytest.fixture
async def client():
    """Create async HTTP client for testing FastAPI endpoints."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
