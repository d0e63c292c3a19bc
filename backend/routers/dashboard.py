# routers/dashboard.py — Landing-page counts and recent activity, shaped by role
from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from audit import list_audit_logs
from auth import get_current_principal, get_tenant_context
from authorization import require
from database import get_db_session
from models import AuditAction, AuditResourceType, Project, Task, TaskStatus, Tenant, TenantPlan, User, UserRole
from permissions import Action, Operation, Principal, ResourceCategory
from scoping import tenant_predicate, visible_projects, visible_tasks
from tenancy import TenantContext

router = APIRouter(prefix="/api/v1/dashboard", tags=["Dashboard"])

CLOSED = (TaskStatus.DONE, TaskStatus.CANCELLED)


async def _count(db: AsyncSession, stmt) -> int:
    return (await db.execute(stmt)).scalar() or 0


async def _platform_stats(db: AsyncSession) -> dict:
    live_tenants = Tenant.deleted_at.is_(None)
    return {
        "total_tenants": await _count(db, select(func.count(Tenant.id)).where(live_tenants)),
        "active_tenants": await _count(db, select(func.count(Tenant.id)).where(live_tenants, Tenant.is_active.is_(True))),
        "total_users": await _count(db, select(func.count(User.id)).where(User.deleted_at.is_(None))),
        "total_projects": await _count(db, select(func.count(Project.id))),
        "total_tasks": await _count(db, select(func.count(Task.id))),
    }


async def _tenant_stats(db: AsyncSession, principal: Principal, tenant_id: str) -> dict:
    """Counts over what the principal can see; an employee's tasks are their assigned ones"""
    tasks = visible_tasks(principal, tenant_id)
    stats = {
        "projects": await _count(db, select(func.count(Project.id)).where(visible_projects(principal, tenant_id))),
        "active_tasks": await _count(db, select(func.count(Task.id)).where(tasks, Task.status.not_in(CLOSED))),
        "completed_tasks": await _count(db, select(func.count(Task.id)).where(tasks, Task.status == TaskStatus.DONE)),
    }
    if principal.role is UserRole.ORG_ADMIN:
        stats["users"] = await _count(db, select(func.count(User.id)).where(
            tenant_predicate(User, tenant_id), User.deleted_at.is_(None),
        ))
    return stats


def _require_view(principal: Principal, ctx: TenantContext) -> None:
    if principal.is_super_admin:
        require(principal, ctx, Action.READ, ResourceCategory.TENANT)
    else:
        require(principal, ctx, Action.READ, ResourceCategory.TASK)


@router.get("")
async def get_dashboard(
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Stats plus the most recent items the caller can see"""
    _require_view(principal, ctx)
    role = UserRole(principal.role).value

    if principal.is_super_admin:
        recent = (await db.execute(
            select(Tenant).where(Tenant.deleted_at.is_(None)).order_by(Tenant.created_at.desc()).limit(5)
        )).scalars().all()
        return {
            "role": role,
            "stats": await _platform_stats(db),
            "recent_tenants": [
                {
                    "id": t.id,
                    "name": t.name,
                    "subdomain": t.subdomain,
                    "plan": TenantPlan(t.plan).value,
                    "is_active": t.is_active,
                    "created_at": t.created_at.isoformat() if t.created_at else None,
                }
                for t in recent
            ],
        }

    tenant_id = ctx.require_resource_scope()
    recent = (await db.execute(
        select(Task).where(visible_tasks(principal, tenant_id)).order_by(Task.created_at.desc()).limit(10)
    )).scalars().all()
    data = {
        "role": role,
        "stats": await _tenant_stats(db, principal, tenant_id),
        "recent_tasks": [
            {
                "id": t.id,
                "title": t.title,
                "status": TaskStatus(t.status).value,
                "project_id": t.project_id,
                "assignee_id": t.assignee_id,
                "created_at": t.created_at.isoformat() if t.created_at else None,
            }
            for t in recent
        ],
    }

    if principal.capabilities.allows(ResourceCategory.AUDIT, Operation.READ):
        logs, _ = await list_audit_logs(db, tenant_id, limit=10)
        data["recent_audit_logs"] = [
            {
                "id": log.id,
                "timestamp": log.timestamp.isoformat() if log.timestamp else None,
                "user_id": log.user_id,
                "action": AuditAction(log.action).value,
                "resource_type": AuditResourceType(log.resource_type).value,
                "resource_id": log.resource_id,
            }
            for log in logs
        ]
    return data


@router.get("/stats")
async def get_dashboard_stats(
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Counts only"""
    _require_view(principal, ctx)
    if principal.is_super_admin:
        return await _platform_stats(db)
    return await _tenant_stats(db, principal, ctx.require_resource_scope())
