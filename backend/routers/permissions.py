# routers/permissions.py — Per-user permission overrides
from typing import Optional, List, Dict

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import overrides
from audit import AuditRecorder, build_event, get_audit_recorder
from auth import get_current_principal, get_current_user, get_tenant_context
from database import get_db_session
from errors import ResourceNotFound
from models import AuditAction, AuditResourceType, User, UserRole
from notifier import NotificationPublisher, get_notifier
from permissions import CapabilityMatrix, Principal
from tenancy import TenantContext

router = APIRouter(prefix="/api/v1/permissions", tags=["Permissions"])


# --- Schemas ---

class CapabilitiesIn(BaseModel):
    create: bool = False
    read: bool = False
    update: bool = False
    delete: bool = False
    assign: bool = False


class MatrixIn(BaseModel):
    tenant: CapabilitiesIn = Field(default_factory=CapabilitiesIn)
    user: CapabilitiesIn = Field(default_factory=CapabilitiesIn)
    project: CapabilitiesIn = Field(default_factory=CapabilitiesIn)
    task: CapabilitiesIn = Field(default_factory=CapabilitiesIn)
    report: CapabilitiesIn = Field(default_factory=CapabilitiesIn)
    audit: CapabilitiesIn = Field(default_factory=CapabilitiesIn)


class PermissionsUpdate(BaseModel):
    permissions: MatrixIn


class UserPermissionsOut(BaseModel):
    user_id: str
    email: str
    name: str
    role: str
    tenant_id: Optional[str] = None
    permissions: Dict[str, Dict[str, bool]]
    is_default: bool


# --- Helpers ---

def _out(user: User, matrix: CapabilityMatrix, is_default: bool) -> UserPermissionsOut:
    return UserPermissionsOut(
        user_id=user.id,
        email=user.email,
        name=user.full_name,
        role=UserRole(user.role).value,
        tenant_id=user.tenant_id,
        permissions=matrix.to_dict(),
        is_default=is_default,
    )


async def _load_target(db: AsyncSession, user_id: str) -> User:
    user = (await db.execute(
        select(User).where(User.id == user_id, User.deleted_at.is_(None))
    )).scalar_one_or_none()
    if not user:
        raise ResourceNotFound("User not found")
    return user


def _publish_change(
    background_tasks: BackgroundTasks,
    notifier: NotificationPublisher,
    principal: Principal,
    target: User,
    event: str,
    matrix: CapabilityMatrix,
) -> None:
    payload = {
        "tenant_id": target.tenant_id,
        "user_id": target.id,
        "changed_by": principal.id,
        "permissions": matrix.to_dict(),
        "message": "Your permissions have changed; they apply from your next request",
    }
    background_tasks.add_task(notifier.publish, target.id, event, payload)
    if target.tenant_id:
        admin_payload = {**payload, "message": f"Permissions changed for {target.email}"}
        background_tasks.add_task(notifier.publish_to_tenant_admins, target.tenant_id, f"{event}.admin", admin_payload)


# --- Endpoints ---

@router.get("", response_model=List[UserPermissionsOut])
async def list_manageable(
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Users whose permissions the caller may manage, each with an effective matrix"""
    entries = await overrides.list_effective(db, principal)
    return [_out(user, matrix, is_default) for user, matrix, is_default in entries]


@router.get("/me", response_model=UserPermissionsOut)
async def my_permissions(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    matrix, is_default = await overrides.effective_matrix(db, user)
    return _out(user, matrix, is_default)


@router.get("/{user_id}", response_model=UserPermissionsOut)
async def get_permissions(
    user_id: str,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
):
    target = await _load_target(db, user_id)
    overrides.check_management_scope(principal, target, write=False)
    matrix, is_default = await overrides.effective_matrix(db, target)
    return _out(target, matrix, is_default)


@router.put("/{user_id}", response_model=UserPermissionsOut)
async def set_permissions(
    user_id: str,
    data: PermissionsUpdate,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
    recorder: AuditRecorder = Depends(get_audit_recorder),
    notifier: NotificationPublisher = Depends(get_notifier),
):
    """Replace a user's capability matrix"""
    target = await _load_target(db, user_id)
    overrides.check_management_scope(principal, target, write=True)
    before, _ = await overrides.effective_matrix(db, target)

    matrix = await overrides.set_override(
        db, principal, target, CapabilityMatrix.from_dict(data.permissions.model_dump()),
    )

    recorder.schedule(background_tasks, build_event(
        request, principal.id, target.tenant_id, AuditAction.PERMISSION_CHANGE,
        AuditResourceType.PERMISSION, target.id,
        before=before.to_dict(), after=matrix.to_dict(),
    ))
    _publish_change(background_tasks, notifier, principal, target, "permission.updated", matrix)
    return _out(target, matrix, False)


@router.post("/{user_id}/reset", response_model=UserPermissionsOut)
async def reset_permissions(
    user_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    ctx: TenantContext = Depends(get_tenant_context),
    db: AsyncSession = Depends(get_db_session),
    recorder: AuditRecorder = Depends(get_audit_recorder),
    notifier: NotificationPublisher = Depends(get_notifier),
):
    """Reset a user's capability matrix to their role's defaults"""
    target = await _load_target(db, user_id)
    overrides.check_management_scope(principal, target, write=True)
    before, _ = await overrides.effective_matrix(db, target)

    matrix = await overrides.reset_to_default(db, principal, target)

    recorder.schedule(background_tasks, build_event(
        request, principal.id, target.tenant_id, AuditAction.PERMISSION_CHANGE,
        AuditResourceType.PERMISSION, target.id,
        before=before.to_dict(), after=matrix.to_dict(), metadata={"reset": True},
    ))
    _publish_change(background_tasks, notifier, principal, target, "permission.reset", matrix)
    return _out(target, matrix, False)
