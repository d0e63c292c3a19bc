# routers/tenants.py — Tenant lifecycle management (super_admin)
import re
from typing import Optional, List

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from pydantic import BaseModel, EmailStr, Field, field_validator
from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from audit import AuditRecorder, build_event, get_audit_recorder
from auth import AuthService, get_current_principal, get_tenant_context, user_summary, validate_password_strength
from authorization import ResourceFacts, require
from database import get_db_session
from errors import ConflictError, InsufficientCapability, ResourceNotFound, TenantAccessDenied
from models import (
    AuditAction, AuditResourceType, Project, Task, Tenant, TenantPlan, User, UserRole, utcnow,
)
from permissions import Action, Principal, ResourceCategory
from tenancy import TenantContext

router = APIRouter(prefix="/api/v1/tenants", tags=["Tenants"])

SUBDOMAIN_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")


# --- Schemas ---

class TenantOut(BaseModel):
    id: str
    name: str
    subdomain: str
    domain: Optional[str] = None
    plan: str
    settings: dict
    is_active: bool
    user_count: int = 0
    created_at: str


class TenantAdminCreate(BaseModel):
    email: EmailStr
    password: str
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return validate_password_strength(v)


class TenantCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    subdomain: str = Field(..., min_length=1, max_length=63)
    domain: Optional[str] = None
    plan: TenantPlan = TenantPlan.FREE
    settings: dict = Field(default_factory=dict)
    admin: Optional[TenantAdminCreate] = None

    @field_validator("subdomain")
    @classmethod
    def validate_subdomain(cls, v: str) -> str:
        v = v.lower()
        if not SUBDOMAIN_RE.match(v):
            raise ValueError("Subdomain may contain only lowercase letters, digits and hyphens")
        return v


class TenantUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    domain: Optional[str] = None
    plan: Optional[TenantPlan] = None
    settings: Optional[dict] = None


class TenantSettingsOut(BaseModel):
    tenant_id: str
    plan: str
    settings: dict


class TenantSettingsUpdate(BaseModel):
    settings: dict


# --- Helpers ---

def _tenant_to_out(t: Tenant, user_count: int = 0) -> TenantOut:
    return TenantOut(
        id=t.id,
        name=t.name,
        subdomain=t.subdomain,
        domain=t.domain,
        plan=TenantPlan(t.plan).value,
        settings=t.settings or {},
        is_active=t.is_active,
        user_count=user_count,
        created_at=t.created_at.isoformat() if t.created_at else "",
    )


async def _user_count(db: AsyncSession, tenant_id: str) -> int:
    return (await db.execute(
        select(func.count(User.id)).where(User.tenant_id == tenant_id, User.deleted_at.is_(None))
    )).scalar() or 0


async def _get_tenant(db: AsyncSession, tenant_id: str) -> Tenant:
    tenant = await db.get(Tenant, tenant_id)
    if not tenant or tenant.deleted_at is not None:
        raise ResourceNotFound("Tenant not found")
    return tenant


def _require_settings_access(principal: Principal, ctx: TenantContext, tenant_id: str) -> None:
    """super_admin for any tenant, org_admin for their own"""
    if principal.is_super_admin:
        return
    if principal.role is not UserRole.ORG_ADMIN:
        raise InsufficientCapability()
    if ctx.tenant_id != tenant_id:
        raise TenantAccessDenied()


def _settings_to_out(t: Tenant) -> TenantSettingsOut:
    return TenantSettingsOut(tenant_id=t.id, plan=TenantPlan(t.plan).value, settings=t.settings or {})


# --- Endpoints ---

@router.post("", response_model=TenantOut, status_code=201)
async def create_tenant(
    data: TenantCreate,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
    recorder: AuditRecorder = Depends(get_audit_recorder),
):
    """Create a tenant, optionally with its first org_admin"""
    require(principal, ctx, Action.CREATE, ResourceCategory.TENANT)

    clash = (await db.execute(
        select(Tenant.id).where(or_(Tenant.name == data.name, Tenant.subdomain == data.subdomain))
    )).first()
    if clash:
        raise ConflictError("Tenant name or subdomain already in use")
    if data.admin:
        taken = (await db.execute(select(User.id).where(User.email == data.admin.email))).first()
        if taken:
            raise ConflictError("Admin email already in use")

    tenant = Tenant(
        name=data.name,
        subdomain=data.subdomain,
        domain=data.domain,
        plan=data.plan,
        settings=data.settings,
        is_active=True,
    )
    db.add(tenant)
    await db.flush()

    admin = None
    if data.admin:
        admin = User(
            email=data.admin.email,
            first_name=data.admin.first_name,
            last_name=data.admin.last_name,
            password_hash=AuthService.hash_password(data.admin.password),
            tenant_id=tenant.id,
            role=UserRole.ORG_ADMIN,
            is_active=True,
        )
        db.add(admin)
    await db.commit()

    out = _tenant_to_out(tenant, user_count=1 if admin else 0)
    recorder.schedule(background_tasks, build_event(
        request, principal.id, tenant.id, AuditAction.CREATE, AuditResourceType.TENANT, tenant.id,
        after=out.model_dump(),
    ))
    if admin:
        recorder.schedule(background_tasks, build_event(
            request, principal.id, tenant.id, AuditAction.CREATE, AuditResourceType.USER, admin.id,
            after=user_summary(admin),
        ))
    return out


@router.get("", response_model=List[TenantOut])
async def list_tenants(
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
    is_active: Optional[bool] = None,
    search: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    """List tenants"""
    require(principal, ctx, Action.READ, ResourceCategory.TENANT)

    stmt = select(Tenant).where(Tenant.deleted_at.is_(None))
    if is_active is not None:
        stmt = stmt.where(Tenant.is_active == is_active)
    if search:
        pattern = f"%{search}%"
        stmt = stmt.where(or_(Tenant.name.ilike(pattern), Tenant.subdomain.ilike(pattern)))
    stmt = stmt.order_by(Tenant.created_at.desc()).offset(offset).limit(limit)

    tenants = (await db.execute(stmt)).scalars().all()
    return [_tenant_to_out(t, await _user_count(db, t.id)) for t in tenants]


@router.get("/stats")
async def platform_stats(
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Platform-wide tenant and user counts"""
    require(principal, ctx, Action.READ, ResourceCategory.TENANT)

    by_status = dict((await db.execute(
        select(Tenant.is_active, func.count(Tenant.id))
        .where(Tenant.deleted_at.is_(None))
        .group_by(Tenant.is_active)
    )).all())
    by_role = {
        UserRole(r).value: c
        for r, c in (await db.execute(
            select(User.role, func.count(User.id))
            .where(User.deleted_at.is_(None))
            .group_by(User.role)
        )).all()
    }
    return {
        "tenants": {
            "total": sum(by_status.values()),
            "active": by_status.get(True, 0),
            "suspended": by_status.get(False, 0),
        },
        "users": {"total": sum(by_role.values()), "by_role": by_role},
    }


@router.get("/{tenant_id}", response_model=TenantOut)
async def get_tenant(
    tenant_id: str,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
):
    require(principal, ctx, Action.READ, ResourceCategory.TENANT, ResourceFacts(tenant_id=tenant_id))
    tenant = await _get_tenant(db, tenant_id)
    return _tenant_to_out(tenant, await _user_count(db, tenant.id))


@router.patch("/{tenant_id}", response_model=TenantOut)
async def update_tenant(
    tenant_id: str,
    update: TenantUpdate,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
    recorder: AuditRecorder = Depends(get_audit_recorder),
):
    require(principal, ctx, Action.UPDATE, ResourceCategory.TENANT, ResourceFacts(tenant_id=tenant_id))
    tenant = await _get_tenant(db, tenant_id)
    before = _tenant_to_out(tenant).model_dump()

    if update.name is not None and update.name != tenant.name:
        clash = (await db.execute(
            select(Tenant.id).where(Tenant.name == update.name, Tenant.id != tenant.id)
        )).first()
        if clash:
            raise ConflictError("Tenant name already in use")
        tenant.name = update.name
    if update.domain is not None:
        tenant.domain = update.domain
    if update.plan is not None:
        tenant.plan = update.plan
    if update.settings is not None:
        tenant.settings = update.settings
    await db.commit()

    out = _tenant_to_out(tenant, await _user_count(db, tenant.id))
    recorder.schedule(background_tasks, build_event(
        request, principal.id, tenant.id, AuditAction.UPDATE, AuditResourceType.TENANT, tenant.id,
        before=before, after=out.model_dump(),
    ))
    return out


@router.get("/{tenant_id}/settings", response_model=TenantSettingsOut)
async def get_tenant_settings(
    tenant_id: str,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
):
    _require_settings_access(principal, ctx, tenant_id)
    return _settings_to_out(await _get_tenant(db, tenant_id))


@router.put("/{tenant_id}/settings", response_model=TenantSettingsOut)
async def update_tenant_settings(
    tenant_id: str,
    update: TenantSettingsUpdate,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
    recorder: AuditRecorder = Depends(get_audit_recorder),
):
    """Merge keys into the tenant's settings; keys not named are kept"""
    _require_settings_access(principal, ctx, tenant_id)
    tenant = await _get_tenant(db, tenant_id)
    before = dict(tenant.settings or {})

    # Reassign so the JSON column is flagged dirty
    tenant.settings = {**before, **update.settings}
    await db.commit()

    recorder.schedule(background_tasks, build_event(
        request, principal.id, tenant.id, AuditAction.UPDATE, AuditResourceType.TENANT, tenant.id,
        before={"settings": before}, after={"settings": tenant.settings},
    ))
    return _settings_to_out(tenant)


async def _set_active(db, tenant: Tenant, active: bool) -> None:
    tenant.is_active = active
    await db.commit()


@router.post("/{tenant_id}/suspend", response_model=TenantOut)
async def suspend_tenant(
    tenant_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
    recorder: AuditRecorder = Depends(get_audit_recorder),
):
    """Suspend a tenant; its users can no longer log in or use the API"""
    require(principal, ctx, Action.UPDATE, ResourceCategory.TENANT, ResourceFacts(tenant_id=tenant_id))
    tenant = await _get_tenant(db, tenant_id)
    await _set_active(db, tenant, False)
    recorder.schedule(background_tasks, build_event(
        request, principal.id, tenant.id, AuditAction.UPDATE, AuditResourceType.TENANT, tenant.id,
        before={"is_active": True}, after={"is_active": False},
    ))
    return _tenant_to_out(tenant, await _user_count(db, tenant.id))


@router.post("/{tenant_id}/activate", response_model=TenantOut)
async def activate_tenant(
    tenant_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
    recorder: AuditRecorder = Depends(get_audit_recorder),
):
    require(principal, ctx, Action.UPDATE, ResourceCategory.TENANT, ResourceFacts(tenant_id=tenant_id))
    tenant = await _get_tenant(db, tenant_id)
    await _set_active(db, tenant, True)
    recorder.schedule(background_tasks, build_event(
        request, principal.id, tenant.id, AuditAction.UPDATE, AuditResourceType.TENANT, tenant.id,
        before={"is_active": False}, after={"is_active": True},
    ))
    return _tenant_to_out(tenant, await _user_count(db, tenant.id))


@router.delete("/{tenant_id}")
async def delete_tenant(
    tenant_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
    recorder: AuditRecorder = Depends(get_audit_recorder),
):
    """Soft-delete a tenant; its rows stay but every tenant check refuses it"""
    require(principal, ctx, Action.DELETE, ResourceCategory.TENANT, ResourceFacts(tenant_id=tenant_id))
    tenant = await _get_tenant(db, tenant_id)
    tenant.is_active = False
    tenant.deleted_at = utcnow()
    await db.commit()

    recorder.schedule(background_tasks, build_event(
        request, principal.id, tenant.id, AuditAction.DELETE, AuditResourceType.TENANT, tenant.id,
    ))
    return {"status": "deleted", "id": tenant.id}


@router.get("/{tenant_id}/stats")
async def tenant_stats(
    tenant_id: str,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Row counts for one tenant (counts only, no business data)"""
    require(principal, ctx, Action.READ, ResourceCategory.TENANT, ResourceFacts(tenant_id=tenant_id))
    tenant = await _get_tenant(db, tenant_id)

    users_by_role = {
        UserRole(r).value: c
        for r, c in (await db.execute(
            select(User.role, func.count(User.id))
            .where(User.tenant_id == tenant.id, User.deleted_at.is_(None))
            .group_by(User.role)
        )).all()
    }
    projects = (await db.execute(
        select(func.count(Project.id)).where(Project.tenant_id == tenant.id)
    )).scalar() or 0
    tasks = (await db.execute(
        select(func.count(Task.id)).where(Task.tenant_id == tenant.id)
    )).scalar() or 0

    return {
        "tenant_id": tenant.id,
        "users": {"total": sum(users_by_role.values()), "by_role": users_by_role},
        "projects": projects,
        "tasks": tasks,
    }
