# audit.py — Audit Trail Recorder
#
# Writes are best-effort: each record goes through its own session, and a
# failure is logged and dropped so it can never roll back or fail the
# business operation that produced it. Routers schedule record() as a
# BackgroundTask so the response does not wait on it either.

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from fastapi import BackgroundTasks, Request
from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import async_session_maker
from models import AuditAction, AuditLog, AuditResourceType, User, UserRole

logger = logging.getLogger("taskhub.audit")

_SENSITIVE_KEY_PATTERNS = ("password", "token", "secret", "authorization", "api_key")
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize(value: Any) -> Any:
    """Recursively replace values under secret-looking keys"""
    if isinstance(value, dict):
        return {
            str(k): _REDACTED_VALUE if _is_sensitive_key(str(k)) else sanitize(v)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [sanitize(item) for item in value]
    return value


@dataclass
class AuditEvent:
    tenant_id: Optional[str]
    user_id: Optional[str]
    action: AuditAction
    resource_type: AuditResourceType
    resource_id: Optional[str] = None
    before: Any = None
    after: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_id: Optional[str] = None

    def to_row(self) -> AuditLog:
        changes = {}
        if self.before is not None:
            changes["before"] = sanitize(self.before)
        if self.after is not None:
            changes["after"] = sanitize(self.after)
        return AuditLog(
            tenant_id=self.tenant_id,
            user_id=self.user_id,
            action=self.action,
            resource_type=self.resource_type,
            resource_id=self.resource_id,
            changes=changes,
            metadata_json=sanitize(self.metadata or {}),
            ip_address=self.ip_address,
            user_agent=self.user_agent,
            request_id=self.request_id,
        )


def request_context(request: Optional[Request]) -> Dict[str, Optional[str]]:
    """ip_address / user_agent / request_id for an AuditEvent"""
    if request is None:
        return {"ip_address": None, "user_agent": None, "request_id": None}
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
        "request_id": getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID"),
    }


def build_event(
    request: Optional[Request],
    user_id: Optional[str],
    tenant_id: Optional[str],
    action: AuditAction,
    resource_type: AuditResourceType,
    resource_id: Optional[str] = None,
    before: Any = None,
    after: Any = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> AuditEvent:
    return AuditEvent(
        tenant_id=tenant_id,
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        before=before,
        after=after,
        metadata=metadata or {},
        **request_context(request),
    )


class AuditRecorder:
    """Fire-and-forget audit writer bound to a session factory"""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def record(self, event: AuditEvent) -> Optional[AuditLog]:
        try:
            async with self._session_factory() as session:
                row = event.to_row()
                session.add(row)
                try:
                    await session.commit()
                except SQLAlchemyError:
                    await session.rollback()
                    raise
                return row
        except Exception as exc:
            logger.warning(
                "audit_write_failed action=%s resource=%s/%s request_id=%s",
                getattr(event.action, "value", event.action),
                getattr(event.resource_type, "value", event.resource_type),
                event.resource_id, event.request_id,
                exc_info=exc,
            )
            return None

    def schedule(self, background_tasks: BackgroundTasks, event: AuditEvent) -> None:
        """Record after the response has been sent"""
        background_tasks.add_task(self.record, event)


_recorder = AuditRecorder(async_session_maker)


def get_audit_recorder() -> AuditRecorder:
    """Dependency; overridden in tests to point at the test database"""
    return _recorder


# ============================================================
# QUERIES
# ============================================================

def _exclude_super_admin_authors(stmt):
    super_admin_ids = select(User.id).where(User.role == UserRole.SUPER_ADMIN)
    return stmt.where(or_(AuditLog.user_id.is_(None), AuditLog.user_id.not_in(super_admin_ids)))


@dataclass
class AuditFilters:
    action: Optional[AuditAction] = None
    resource_type: Optional[AuditResourceType] = None
    resource_id: Optional[str] = None
    user_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


def _apply_filters(stmt, tenant_id: str, filters: AuditFilters):
    stmt = stmt.where(AuditLog.tenant_id == tenant_id)
    if filters.action:
        stmt = stmt.where(AuditLog.action == filters.action)
    if filters.resource_type:
        stmt = stmt.where(AuditLog.resource_type == filters.resource_type)
    if filters.resource_id:
        stmt = stmt.where(AuditLog.resource_id == filters.resource_id)
    if filters.user_id:
        stmt = stmt.where(AuditLog.user_id == filters.user_id)
    if filters.start_date:
        stmt = stmt.where(AuditLog.timestamp >= filters.start_date)
    if filters.end_date:
        stmt = stmt.where(AuditLog.timestamp <= filters.end_date)
    return _exclude_super_admin_authors(stmt)


async def list_audit_logs(
    db: AsyncSession,
    tenant_id: str,
    filters: Optional[AuditFilters] = None,
    page: int = 1,
    limit: int = 50,
) -> Tuple[List[AuditLog], Dict[str, int]]:
    """One page of a tenant's audit log plus pagination metadata.

    Entries written by super_admin users are excluded from both the page and
    the total, including when the filter names a super_admin user id.
    """
    filters = filters or AuditFilters()
    total = (await db.execute(
        _apply_filters(select(func.count(AuditLog.id)), tenant_id, filters)
    )).scalar() or 0

    stmt = (
        _apply_filters(select(AuditLog), tenant_id, filters)
        .order_by(AuditLog.timestamp.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    rows = (await db.execute(stmt)).scalars().all()
    pagination = {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit) if limit else 0,
    }
    return list(rows), pagination


async def get_audit_log(db: AsyncSession, tenant_id: str, log_id: str) -> Optional[AuditLog]:
    stmt = _apply_filters(select(AuditLog), tenant_id, AuditFilters()).where(AuditLog.id == log_id)
    return (await db.execute(stmt)).scalar_one_or_none()
