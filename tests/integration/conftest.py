"""Shared fixtures for integration tests.

These tests drive the counter controller against the real FastAPI app
over HTTP (ASGI transport). No mocks on the registry, verifier or token
issuer; the OTP notifier is the recording double from the root conftest.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

from rxconsent.counter.gateway import HttpAccessGateway


@pytest.fixture()
async def http_client(app: Any) -> AsyncIterator[AsyncClient]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture()
def gateway(http_client: AsyncClient) -> HttpAccessGateway:
    return HttpAccessGateway(http_client)
