# tests/test_websocket.py — WebSocket, health, and security tests
from contextlib import asynccontextmanager

import pytest
from httpx import AsyncClient
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from auth import AuthService
from main import VERSION, app
from routers import websocket_router
from tests.conftest import get_auth_headers


@pytest.mark.asyncio
async def test_health_endpoint(client: AsyncClient):
    """Health endpoint returns OK"""
    resp = await client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["version"] == VERSION == "1.0.0"
    assert data["database"] == "connected"


@pytest.mark.asyncio
async def test_root(client: AsyncClient):
    resp = await client.get("/")
    assert resp.json()["name"] == "TaskHub"


@pytest.mark.asyncio
async def test_security_headers(client: AsyncClient):
    """Responses include security headers"""
    resp = await client.get("/health")
    assert resp.headers.get("X-Content-Type-Options") == "nosniff"
    assert resp.headers.get("X-Frame-Options") == "DENY"
    assert "x-request-id" in resp.headers
    assert "x-response-time" in resp.headers


@pytest.mark.asyncio
async def test_request_id_is_propagated(client: AsyncClient):
    resp = await client.get("/health", headers={"X-Request-ID": "req-123"})
    assert resp.headers["X-Request-ID"] == "req-123"
    assert resp.headers["X-Correlation-ID"] == "req-123"


@pytest.mark.asyncio
async def test_error_body_carries_request_id(client: AsyncClient):
    resp = await client.get("/api/v1/auth/me", headers={"X-Request-ID": "req-401"})
    assert resp.status_code == 401
    assert resp.json()["reason"] == "unauthenticated"
    assert resp.json()["request_id"] == "req-401"


@pytest.mark.asyncio
async def test_invalid_token_rejected(client: AsyncClient):
    """Invalid JWT tokens are rejected"""
    resp = await client.get(
        "/api/v1/auth/me",
        headers={"Authorization": "Bearer invalid-token-here"},
    )
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_validation_errors_are_422(client: AsyncClient, project_manager):
    resp = await client.post("/api/v1/projects", headers=get_auth_headers(project_manager), json={})
    assert resp.status_code == 422
    assert resp.json()["reason"] == "validation_error"


@pytest.mark.asyncio
async def test_ws_stats_for_platform_operators(client: AsyncClient, super_admin, org_admin):
    resp = await client.get("/ws/stats", headers=get_auth_headers(super_admin))
    assert resp.status_code == 200
    assert set(resp.json()) == {"total_connections", "tenants"}

    resp = await client.get("/ws/stats", headers=get_auth_headers(org_admin))
    assert resp.status_code == 403
    assert resp.json()["reason"] == "insufficient_capability"


@pytest.mark.asyncio
async def test_ws_stats_requires_authentication(client: AsyncClient):
    resp = await client.get("/ws/stats")
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_ws_handshake_refuses_deactivated_user(session_factory, db_session, employee, monkeypatch):
    @asynccontextmanager
    async def db_context():
        async with session_factory() as session:
            yield session

    monkeypatch.setattr(websocket_router, "get_db_context", db_context)
    token = AuthService.create_access_token(AuthService.token_claims(employee))
    assert (await websocket_router._authenticate(token))["sub"] == employee.id

    employee.is_active = False
    await db_session.commit()
    assert await websocket_router._authenticate(token) is None


def test_ws_rejects_bad_token():
    client = TestClient(app)
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect("/ws?token=not-a-jwt") as ws:
            ws.receive_json()
    assert exc.value.code == 4001
