# routers/audit.py — Tenant audit trail (read-only)
from datetime import datetime
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from audit import AuditFilters, get_audit_log, list_audit_logs
from auth import get_current_principal, get_tenant_context
from authorization import require
from database import get_db_session
from errors import ResourceNotFound
from models import AuditAction, AuditLog, AuditResourceType
from permissions import Action, Principal, ResourceCategory
from tenancy import TenantContext

router = APIRouter(prefix="/api/v1/audit-logs", tags=["Audit"])


class AuditLogOut(BaseModel):
    id: str
    timestamp: str
    tenant_id: Optional[str] = None
    user_id: Optional[str] = None
    action: str
    resource_type: str
    resource_id: Optional[str] = None
    changes: Dict[str, Any] = {}
    metadata: Dict[str, Any] = {}
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_id: Optional[str] = None


class AuditPage(BaseModel):
    logs: List[AuditLogOut]
    pagination: Dict[str, int]


def _log_to_out(log: AuditLog) -> AuditLogOut:
    return AuditLogOut(
        id=log.id,
        timestamp=log.timestamp.isoformat() if log.timestamp else "",
        tenant_id=log.tenant_id,
        user_id=log.user_id,
        action=AuditAction(log.action).value,
        resource_type=AuditResourceType(log.resource_type).value,
        resource_id=log.resource_id,
        changes=log.changes or {},
        metadata=log.metadata_json or {},
        ip_address=log.ip_address,
        user_agent=log.user_agent,
        request_id=log.request_id,
    )


async def _page(db, ctx: TenantContext, filters: AuditFilters, page: int, limit: int) -> AuditPage:
    logs, pagination = await list_audit_logs(db, ctx.tenant_id, filters, page=page, limit=limit)
    return AuditPage(logs=[_log_to_out(log) for log in logs], pagination=pagination)


@router.get("", response_model=AuditPage)
async def list_logs(
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
    action: Optional[AuditAction] = None,
    resource_type: Optional[AuditResourceType] = None,
    user_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
):
    """Audit entries for the current tenant, newest first"""
    require(principal, ctx, Action.READ, ResourceCategory.AUDIT)
    filters = AuditFilters(
        action=action, resource_type=resource_type, user_id=user_id,
        start_date=start_date, end_date=end_date,
    )
    return await _page(db, ctx, filters, page, limit)


@router.get("/user/{user_id}", response_model=AuditPage)
async def list_logs_by_user(
    user_id: str,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
):
    require(principal, ctx, Action.READ, ResourceCategory.AUDIT)
    return await _page(db, ctx, AuditFilters(user_id=user_id), page, limit)


@router.get("/resource/{resource_type}/{resource_id}", response_model=AuditPage)
async def list_logs_by_resource(
    resource_type: AuditResourceType,
    resource_id: str,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
):
    require(principal, ctx, Action.READ, ResourceCategory.AUDIT)
    filters = AuditFilters(resource_type=resource_type, resource_id=resource_id)
    return await _page(db, ctx, filters, page, limit)


@router.get("/{log_id}", response_model=AuditLogOut)
async def get_log(
    log_id: str,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
):
    require(principal, ctx, Action.READ, ResourceCategory.AUDIT)
    log = await get_audit_log(db, ctx.tenant_id, log_id)
    if not log:
        raise ResourceNotFound("Audit log not found")
    return _log_to_out(log)
