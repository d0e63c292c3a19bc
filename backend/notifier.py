# notifier.py — Notification Publisher
#
# Publishing is at-most-once and best-effort: every failure is logged and
# swallowed. Routers schedule publishes as BackgroundTasks, so the HTTP
# response never waits on delivery.

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from fastapi import WebSocket
from sqlalchemy.ext.asyncio import async_sessionmaker

from database import async_session_maker
from models import Notification, NotificationPriority, UserRole

logger = logging.getLogger("taskhub.notify")

PLATFORM_KEY = "platform"

EVENT_TITLES = {
    "task.assigned": "Task assigned to you",
    "task.status_changed": "Task status changed",
    "project.member_added": "Added to project",
    "permission.updated": "Your permissions were updated",
    "permission.reset": "Your permissions were reset to defaults",
}

EVENT_PRIORITIES = {
    "permission.updated": NotificationPriority.HIGH,
    "permission.reset": NotificationPriority.HIGH,
}


class NotificationPublisher(Protocol):
    async def publish(self, target_user_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        ...

    async def publish_to_tenant_admins(self, tenant_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        ...


# ============================================================
# CONNECTIONS
# ============================================================

class ConnectionManager:
    """WebSocket connections per tenant; a user may hold several sockets (tabs, devices)"""

    def __init__(self):
        self._connections: Dict[str, Dict[str, List[WebSocket]]] = {}  # tenant_id -> {user_id -> [ws]}
        self._roles: Dict[str, UserRole] = {}  # user_id -> role

    async def connect(self, websocket: WebSocket, user_id: str, tenant_id: Optional[str], role: UserRole):
        await websocket.accept()
        key = tenant_id or PLATFORM_KEY
        self._connections.setdefault(key, {}).setdefault(user_id, []).append(websocket)
        self._roles[user_id] = UserRole(role)
        logger.info("WS connected: user=%s tenant=%s", user_id[:8], key[:8])

    def disconnect(self, websocket: WebSocket, user_id: str, tenant_id: Optional[str]):
        """Forget one socket; the user's other sockets stay connected"""
        key = tenant_id or PLATFORM_KEY
        users = self._connections.get(key, {})
        sockets = users.get(user_id, [])
        if websocket in sockets:
            sockets.remove(websocket)
        if not sockets:
            users.pop(user_id, None)
            self._roles.pop(user_id, None)
        if key in self._connections and not users:
            del self._connections[key]
        logger.info("WS disconnected: user=%s", user_id[:8])

    def _find(self, user_id: str) -> Optional[str]:
        for key, conns in self._connections.items():
            if user_id in conns:
                return key
        return None

    async def send_to_user(self, user_id: str, message: dict) -> bool:
        """Send to every socket the user holds; True if at least one took the frame"""
        key = self._find(user_id)
        if key is None:
            return False
        delivered = False
        for websocket in list(self._connections[key][user_id]):
            try:
                await websocket.send_json(message)
                delivered = True
            except Exception as exc:
                logger.warning("WS send to user=%s failed: %s", user_id[:8], exc)
                self.disconnect(websocket, user_id, key)
        return delivered

    def tenant_admins(self, tenant_id: str) -> List[str]:
        return [
            uid for uid in self._connections.get(tenant_id, {})
            if self._roles.get(uid) is UserRole.ORG_ADMIN
        ]

    def get_online_users(self, tenant_id: Optional[str]) -> list:
        return list(self._connections.get(tenant_id or PLATFORM_KEY, {}).keys())

    def get_stats(self) -> dict:
        return {
            "total_connections": sum(len(s) for users in self._connections.values() for s in users.values()),
            "tenants": len([k for k in self._connections if k != PLATFORM_KEY]),
        }


manager = ConnectionManager()


# ============================================================
# PUBLISHER
# ============================================================

class RealtimeNotifier:
    """Persists an inbox row for user-targeted events and pushes over WebSocket"""

    def __init__(self, connections: ConnectionManager, session_factory: async_sessionmaker):
        self._connections = connections
        self._session_factory = session_factory

    @staticmethod
    def _frame(event_type: str, payload: Dict[str, Any]) -> dict:
        return {
            "type": event_type,
            "payload": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def _store(self, target_user_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        async with self._session_factory() as session:
            session.add(Notification(
                user_id=target_user_id,
                tenant_id=payload.get("tenant_id"),
                event_type=event_type,
                title=EVENT_TITLES.get(event_type, event_type),
                body=payload.get("message", ""),
                payload=payload,
                priority=EVENT_PRIORITIES.get(event_type, NotificationPriority.NORMAL),
            ))
            await session.commit()

    async def publish(self, target_user_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        try:
            await self._store(target_user_id, event_type, payload)
        except Exception as exc:
            logger.error("Notification store failed event=%s user=%s", event_type, target_user_id, exc_info=exc)
        try:
            await self._connections.send_to_user(target_user_id, self._frame(event_type, payload))
        except Exception as exc:
            logger.error("Notification push failed event=%s user=%s", event_type, target_user_id, exc_info=exc)

    async def publish_to_tenant_admins(self, tenant_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        frame = self._frame(event_type, payload)
        for admin_id in self._connections.tenant_admins(tenant_id):
            try:
                await self._connections.send_to_user(admin_id, frame)
            except Exception as exc:
                logger.error("Admin push failed event=%s admin=%s", event_type, admin_id, exc_info=exc)


_notifier = RealtimeNotifier(manager, async_session_maker)


def get_notifier() -> NotificationPublisher:
    """Dependency; overridden in tests"""
    return _notifier
