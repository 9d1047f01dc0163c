"""Test fixtures for core infrastructure.

Duplicates the HTTP client fixture from tests/conftest.py, which is not
visible to tests collected under app/.
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
