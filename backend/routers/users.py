# routers/users.py — User management inside a tenant
from typing import Optional, List

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from pydantic import BaseModel, EmailStr, Field, field_validator
from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from audit import AuditRecorder, build_event, get_audit_recorder
from auth import (
    AuthService, get_current_principal, get_current_user, get_tenant_context,
    validate_password_strength,
)
from authorization import ResourceFacts, require
from database import get_db_session
from errors import CannotModifySelf, ConflictError, ResourceNotFound
from models import AuditAction, AuditResourceType, User, UserRole, utcnow
from permissions import Action, Principal, ResourceCategory
from scoping import tenant_predicate
from tenancy import TenantContext

router = APIRouter(prefix="/api/v1/users", tags=["Users"])


# --- Schemas ---

class UserOut(BaseModel):
    id: str
    email: str
    first_name: str
    last_name: str
    role: str
    tenant_id: Optional[str] = None
    is_active: bool
    last_login_at: Optional[str] = None
    created_at: str


class UserCreate(BaseModel):
    email: EmailStr
    password: str
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    role: UserRole = UserRole.EMPLOYEE

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return validate_password_strength(v)


class UserUpdate(BaseModel):
    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    is_active: Optional[bool] = None


class ProfileUpdate(BaseModel):
    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)


class RoleUpdate(BaseModel):
    role: UserRole


# --- Helpers ---

def _user_to_out(u: User) -> UserOut:
    return UserOut(
        id=u.id,
        email=u.email,
        first_name=u.first_name or "",
        last_name=u.last_name or "",
        role=UserRole(u.role).value,
        tenant_id=u.tenant_id,
        is_active=u.is_active,
        last_login_at=u.last_login_at.isoformat() if u.last_login_at else None,
        created_at=u.created_at.isoformat() if u.created_at else "",
    )


async def _load_target(db: AsyncSession, user_id: str, ctx: TenantContext) -> User:
    """A live user of the bound tenant.

    Platform accounts are tenantless; they stay addressable so that acting on
    them is refused as cannot_manage_super_admin rather than reported missing.
    """
    tenant_id = ctx.require_resource_scope()
    target = (await db.execute(
        select(User).where(
            User.id == user_id,
            User.deleted_at.is_(None),
            or_(tenant_predicate(User, tenant_id), User.role == UserRole.SUPER_ADMIN),
        )
    )).scalar_one_or_none()
    if not target:
        raise ResourceNotFound("User not found")
    return target


# --- Own profile ---

@router.get("/me", response_model=UserOut)
async def get_profile(user: User = Depends(get_current_user)):
    return _user_to_out(user)


@router.patch("/me", response_model=UserOut)
async def update_profile(
    update: ProfileUpdate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Update own name; role and status are not self-service"""
    if update.first_name is not None:
        user.first_name = update.first_name
    if update.last_name is not None:
        user.last_name = update.last_name
    await db.commit()
    return _user_to_out(user)


# --- Tenant users ---

@router.get("", response_model=List[UserOut])
async def list_users(
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
    role: Optional[UserRole] = None,
    is_active: Optional[bool] = None,
    search: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    """List users in the current tenant"""
    require(principal, ctx, Action.READ, ResourceCategory.USER)

    stmt = (
        select(User)
        .where(User.tenant_id == ctx.tenant_id)
        .where(User.deleted_at.is_(None))
        .where(User.role != UserRole.SUPER_ADMIN)
    )
    if role:
        stmt = stmt.where(User.role == role)
    if is_active is not None:
        stmt = stmt.where(User.is_active == is_active)
    if search:
        pattern = f"%{search}%"
        stmt = stmt.where(or_(
            User.email.ilike(pattern), User.first_name.ilike(pattern), User.last_name.ilike(pattern),
        ))
    stmt = stmt.order_by(User.created_at.desc()).offset(offset).limit(limit)

    result = await db.execute(stmt)
    return [_user_to_out(u) for u in result.scalars().all()]


@router.get("/count")
async def count_users(
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Count active users in the current tenant"""
    require(principal, ctx, Action.READ, ResourceCategory.USER)

    role_stmt = (
        select(User.role, func.count(User.id))
        .where(User.tenant_id == ctx.tenant_id)
        .where(User.deleted_at.is_(None))
        .where(User.is_active.is_(True))
        .group_by(User.role)
    )
    by_role = {UserRole(r).value: c for r, c in (await db.execute(role_stmt)).all()}
    return {"total": sum(by_role.values()), "by_role": by_role}


@router.post("", response_model=UserOut, status_code=201)
async def create_user(
    data: UserCreate,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
    recorder: AuditRecorder = Depends(get_audit_recorder),
):
    """Create a user in the current tenant"""
    require(principal, ctx, Action.CREATE, ResourceCategory.USER, ResourceFacts(requested_role=data.role))

    existing = (await db.execute(select(User.id).where(User.email == data.email))).first()
    if existing:
        raise ConflictError("User with this email already exists")

    user = User(
        email=data.email,
        first_name=data.first_name,
        last_name=data.last_name,
        password_hash=AuthService.hash_password(data.password),
        tenant_id=ctx.tenant_id,
        role=data.role,
        is_active=True,
    )
    db.add(user)
    await db.commit()

    out = _user_to_out(user)
    recorder.schedule(background_tasks, build_event(
        request, principal.id, ctx.tenant_id, AuditAction.CREATE, AuditResourceType.USER, user.id,
        after=out.model_dump(),
    ))
    return out


@router.get("/{user_id}", response_model=UserOut)
async def get_user(
    user_id: str,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Get a specific user"""
    target = await _load_target(db, user_id, ctx)
    require(principal, ctx, Action.READ, ResourceCategory.USER, ResourceFacts(target_user=target))
    return _user_to_out(target)


@router.patch("/{user_id}", response_model=UserOut)
async def update_user(
    user_id: str,
    update: UserUpdate,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
    recorder: AuditRecorder = Depends(get_audit_recorder),
):
    target = await _load_target(db, user_id, ctx)
    require(principal, ctx, Action.UPDATE, ResourceCategory.USER, ResourceFacts(target_user=target))
    if update.is_active is False and target.id == principal.id:
        raise CannotModifySelf("Cannot deactivate your own account")

    before = _user_to_out(target).model_dump()
    if update.first_name is not None:
        target.first_name = update.first_name
    if update.last_name is not None:
        target.last_name = update.last_name
    if update.is_active is not None:
        target.is_active = update.is_active
    await db.commit()

    out = _user_to_out(target)
    recorder.schedule(background_tasks, build_event(
        request, principal.id, ctx.tenant_id, AuditAction.UPDATE, AuditResourceType.USER, target.id,
        before=before, after=out.model_dump(),
    ))
    return out


@router.patch("/{user_id}/role", response_model=UserOut)
async def update_user_role(
    user_id: str,
    role_update: RoleUpdate,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
    recorder: AuditRecorder = Depends(get_audit_recorder),
):
    """Change a user's role; takes effect on their next login"""
    target = await _load_target(db, user_id, ctx)
    require(principal, ctx, Action.UPDATE, ResourceCategory.USER,
            ResourceFacts(target_user=target, requested_role=role_update.role))
    if target.id == principal.id:
        raise CannotModifySelf("Cannot change your own role")

    old_role = UserRole(target.role)
    target.role = role_update.role
    await db.commit()

    recorder.schedule(background_tasks, build_event(
        request, principal.id, ctx.tenant_id, AuditAction.UPDATE, AuditResourceType.USER, target.id,
        before={"role": old_role.value}, after={"role": role_update.role.value},
    ))
    return _user_to_out(target)


@router.delete("/{user_id}")
async def deactivate_user(
    user_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
    recorder: AuditRecorder = Depends(get_audit_recorder),
):
    """Soft-delete / deactivate a user"""
    target = await _load_target(db, user_id, ctx)
    require(principal, ctx, Action.DELETE, ResourceCategory.USER, ResourceFacts(target_user=target))

    target.is_active = False
    target.deleted_at = utcnow()
    await db.commit()

    recorder.schedule(background_tasks, build_event(
        request, principal.id, ctx.tenant_id, AuditAction.DELETE, AuditResourceType.USER, target.id,
    ))
    return {"user_id": user_id, "status": "deactivated"}
