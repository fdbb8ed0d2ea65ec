"""
tests/test_app.py
Tests for app-level plumbing: health, request ids, auth failures.
"""

import pytest
from httpx import AsyncClient

from shared.models.models import User
from shared.utils.security import create_access_token


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["database"] == "ok"
    assert data["redis"] == "disabled"


@pytest.mark.asyncio
async def test_request_id_is_echoed(client: AsyncClient):
    response = await client.get("/", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"
    assert response.headers["X-Process-Time"].endswith("ms")


@pytest.mark.asyncio
async def test_garbage_token_rejected(client: AsyncClient):
    response = await client.get("/bookings", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_role_mismatch_token_rejected(client: AsyncClient, homeowner: User):
    token, _ = create_access_token(str(homeowner.id), "worker", homeowner.email)
    response = await client.get("/bookings", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401
