# routers/websocket_router.py — Real-time notification channel
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, Query
from sqlalchemy import select

from auth import AuthService, get_current_principal, get_tenant_context
from authorization import require
from database import get_db_context
from errors import AuthenticationError
from models import User, UserRole
from notifier import manager
from permissions import Action, Principal, ResourceCategory
from tenancy import TenantContext

router = APIRouter(tags=["WebSocket"])
logger = logging.getLogger("taskhub.ws")


async def _authenticate(token: str):
    """Access-token claims for a live, unrevoked token held by an active user, else None"""
    try:
        payload = AuthService.verify_token(token)
    except AuthenticationError:
        return None
    if payload.get("type") != "access" or not payload.get("sub"):
        return None
    try:
        UserRole(payload.get("role"))
    except ValueError:
        return None
    async with get_db_context() as db:
        if await AuthService.is_token_revoked(token, db):
            return None
        user = (await db.execute(select(User).where(User.id == payload["sub"]))).scalar_one_or_none()
        if not user or not user.is_active or user.deleted_at is not None:
            return None
    return payload


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: str = Query(...),
):
    """Push channel for notifications addressed to the connected user"""
    payload = await _authenticate(token)
    if not payload:
        await websocket.close(code=4001, reason="Authentication failed")
        return

    user_id = payload["sub"]
    tenant_id = payload.get("tenant_id")
    role = UserRole(payload["role"])

    await manager.connect(websocket, user_id, tenant_id, role)
    await websocket.send_json({
        "type": "connected",
        "user_id": user_id,
        "tenant_id": tenant_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })

    try:
        while True:
            data = await websocket.receive_json()
            if data.get("type") == "ping":
                await websocket.send_json({"type": "pong", "timestamp": datetime.now(timezone.utc).isoformat()})
    except WebSocketDisconnect:
        manager.disconnect(websocket, user_id, tenant_id)
    except Exception as e:
        logger.error("WebSocket error: %s", e)
        manager.disconnect(websocket, user_id, tenant_id)


@router.get("/ws/stats")
async def websocket_stats(
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
):
    """Connection counts across all tenants (platform operators only)"""
    require(principal, ctx, Action.READ, ResourceCategory.TENANT)
    return manager.get_stats()
