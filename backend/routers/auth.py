# routers/auth.py — Authentication endpoints with token revocation
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from audit import AuditRecorder, build_event, get_audit_recorder
from auth import (
    AuthService, UserRegister, UserLogin, TokenResponse, RefreshRequest,
    LogoutRequest, PasswordChange, get_bearer_token, get_current_principal,
    get_current_user, user_summary,
)
from database import get_db_session
from errors import AuthenticationError, ConflictError, TenantAccessDenied, ValidationFailed
from models import AuditAction, AuditResourceType, Tenant, User, UserRole, utcnow
from permissions import Principal

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])


def _tenant_usable(tenant) -> bool:
    return tenant is not None and tenant.is_active and tenant.deleted_at is None


@router.post("/register", response_model=TokenResponse, status_code=201)
async def register(
    user_data: UserRegister,
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db_session),
    recorder: AuditRecorder = Depends(get_audit_recorder),
):
    """Register a new employee account in an existing, active tenant"""
    if not user_data.tenant_id and not user_data.subdomain:
        raise ValidationFailed("tenant_id or subdomain is required")

    if user_data.tenant_id:
        tenant = await db.get(Tenant, user_data.tenant_id)
    else:
        tenant = (await db.execute(
            select(Tenant).where(Tenant.subdomain == user_data.subdomain.lower())
        )).scalar_one_or_none()
    if not _tenant_usable(tenant):
        raise TenantAccessDenied("Tenant not found or inactive")

    existing = (await db.execute(select(User).where(User.email == user_data.email))).scalar_one_or_none()
    if existing:
        raise ConflictError("User already exists")

    user = User(
        email=user_data.email,
        first_name=user_data.first_name,
        last_name=user_data.last_name,
        password_hash=AuthService.hash_password(user_data.password),
        tenant_id=tenant.id,
        role=UserRole.EMPLOYEE,
        is_active=True,
    )
    db.add(user)
    await db.commit()

    recorder.schedule(background_tasks, build_event(
        request, user.id, tenant.id, AuditAction.CREATE, AuditResourceType.USER, user.id,
        after=user_summary(user), metadata={"via": "register"},
    ))
    return AuthService.issue_tokens(user)


@router.post("/login", response_model=TokenResponse)
async def login(
    credentials: UserLogin,
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db_session),
    recorder: AuditRecorder = Depends(get_audit_recorder),
):
    """Authenticate and receive tokens"""
    email = credentials.email.lower()
    AuthService.check_brute_force(email)

    user = (await db.execute(select(User).where(User.email == credentials.email))).scalar_one_or_none()

    if not user or not AuthService.verify_password(credentials.password, user.password_hash):
        AuthService.record_failed_attempt(email)
        # Written inline: background tasks do not run for an error response
        await recorder.record(build_event(
            request, user.id if user else None, user.tenant_id if user else None,
            AuditAction.LOGIN_FAILED, AuditResourceType.USER, user.id if user else None,
            metadata={"email": email},
        ))
        raise AuthenticationError("Invalid credentials")

    if not user.is_active or user.deleted_at is not None:
        raise AuthenticationError("Account is disabled")

    if user.tenant_id is not None:
        tenant = await db.get(Tenant, user.tenant_id)
        if not _tenant_usable(tenant):
            raise TenantAccessDenied("Tenant is suspended")

    AuthService.clear_attempts(email)
    user.last_login_at = utcnow()
    user.last_login_ip = request.client.host if request.client else None
    await db.commit()

    recorder.schedule(background_tasks, build_event(
        request, user.id, user.tenant_id, AuditAction.LOGIN, AuditResourceType.USER, user.id,
    ))
    return AuthService.issue_tokens(user)


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(
    refresh_req: RefreshRequest,
    db: AsyncSession = Depends(get_db_session),
):
    """Exchange a refresh token for a new token pair; the old refresh token is revoked"""
    payload = AuthService.verify_token(refresh_req.refresh_token)

    if payload.get("type") != "refresh":
        raise AuthenticationError("Invalid token type. Expected refresh token.")
    if await AuthService.is_token_revoked(refresh_req.refresh_token, db):
        raise AuthenticationError("Refresh token has been revoked")

    user = (await db.execute(select(User).where(User.id == payload.get("sub")))).scalar_one_or_none()
    if not user or not user.is_active or user.deleted_at is not None:
        raise AuthenticationError("User not found or inactive")

    await AuthService.revoke_token(refresh_req.refresh_token, db)
    return AuthService.issue_tokens(user)


@router.post("/logout")
async def logout(
    request: Request,
    background_tasks: BackgroundTasks,
    body: Optional[LogoutRequest] = None,
    token: str = Depends(get_bearer_token),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db_session),
    recorder: AuditRecorder = Depends(get_audit_recorder),
):
    """Revoke the presented access token and, if given, the refresh token"""
    await AuthService.revoke_token(token, db)
    if body and body.refresh_token:
        payload = AuthService.verify_token(body.refresh_token)
        if payload.get("sub") != principal.id:
            raise AuthenticationError("Refresh token does not belong to this user")
        await AuthService.revoke_token(body.refresh_token, db)

    recorder.schedule(background_tasks, build_event(
        request, principal.id, principal.tenant_id, AuditAction.LOGOUT, AuditResourceType.USER, principal.id,
    ))
    return {"status": "logged_out", "message": "Session terminated"}


@router.get("/me")
async def get_current_user_info(
    principal: Principal = Depends(get_current_principal),
    user: User = Depends(get_current_user),
):
    """Current user with the effective permissions used for this request"""
    return {**user_summary(user), "permissions": principal.capabilities.to_dict()}


@router.post("/change-password")
async def change_password(
    password_data: PasswordChange,
    request: Request,
    background_tasks: BackgroundTasks,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    recorder: AuditRecorder = Depends(get_audit_recorder),
):
    """Change current user's password"""
    if not AuthService.verify_password(password_data.current_password, user.password_hash):
        raise HTTPException(status_code=400, detail="Current password is incorrect")

    user.password_hash = AuthService.hash_password(password_data.new_password)
    await db.commit()

    recorder.schedule(background_tasks, build_event(
        request, user.id, user.tenant_id, AuditAction.UPDATE, AuditResourceType.USER, user.id,
        metadata={"field": "password"},
    ))
    return {"status": "password_changed", "message": "Password updated successfully"}
