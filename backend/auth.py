# auth.py — Credentials, principals and tenant binding for TaskHub
# Features:
# - JWT access/refresh tokens with JTI (HS256)
# - Revocation list keyed by SHA-256 of the raw token, TTL = token lifetime
# - Password policy (min 8 chars, at least one letter and one digit)
# - Brute force protection
# - Principal dependency carrying the effective capability matrix
# - Tenant context dependency (header > query > subdomain > credential)

import os
import uuid
import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
from collections import defaultdict

import bcrypt
from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import HTTPException, Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr, Field, field_validator
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session
from errors import AuthenticationError, TenantAccessDenied
from models import User, Tenant, UserRole, RevokedToken, utcnow
from overrides import get_override
from permissions import Principal, role_defaults
from tenancy import TenantContext, resolve_tenant

logger = logging.getLogger("taskhub.auth")

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY or SECRET_KEY == "change-this-to-a-secure-random-key-in-production":
    SECRET_KEY = secrets.token_urlsafe(64)
    logger.warning(
        "JWT_SECRET_KEY not set or insecure. Generated ephemeral key. "
        "Set JWT_SECRET_KEY in production!"
    )

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))
REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "7"))
TENANT_BASE_DOMAIN = os.getenv("TENANT_BASE_DOMAIN", "").lower().strip(".")
MIN_PASSWORD_LENGTH = 8
MAX_LOGIN_ATTEMPTS = 5
LOGIN_LOCKOUT_MINUTES = 15

security = HTTPBearer(auto_error=False)

# In-memory brute force tracker (per process)
_login_attempts: Dict[str, list] = defaultdict(list)


def validate_password_strength(v: str) -> str:
    if len(v) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if not any(c.isalpha() for c in v):
        raise ValueError("Password must contain at least one letter")
    if not any(c.isdigit() for c in v):
        raise ValueError("Password must contain at least one digit")
    return v


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

class UserRegister(BaseModel):
    email: EmailStr
    password: str
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    tenant_id: Optional[str] = None
    subdomain: Optional[str] = None

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return validate_password_strength(v)


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: Dict[str, Any]


class RefreshRequest(BaseModel):
    refresh_token: str


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = None


class PasswordChange(BaseModel):
    current_password: str
    new_password: str

    @field_validator("new_password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return validate_password_strength(v)


def user_summary(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "role": UserRole(user.role).value,
        "tenant_id": user.tenant_id,
        "is_active": user.is_active,
    }


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Password hashing, token issue/verify and revocation"""

    @staticmethod
    def hash_password(password: str) -> str:
        salt = bcrypt.gensalt(rounds=12)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify_password(password: str, password_hash: str) -> bool:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))

    @staticmethod
    def token_claims(user: User) -> Dict[str, Any]:
        return {
            "sub": user.id,
            "email": user.email,
            "tenant_id": user.tenant_id,
            "role": UserRole(user.role).value,
        }

    @staticmethod
    def _create_token(data: Dict[str, Any], token_type: str, expires_delta: timedelta) -> str:
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        to_encode.update({
            "exp": now + expires_delta,
            "iat": now,
            "type": token_type,
            "jti": str(uuid.uuid4()),
        })
        return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        delta = expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
        return AuthService._create_token(data, "access", delta)

    @staticmethod
    def create_refresh_token(data: Dict[str, Any]) -> str:
        return AuthService._create_token(data, "refresh", timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS))

    @staticmethod
    def issue_tokens(user: User) -> TokenResponse:
        claims = AuthService.token_claims(user)
        return TokenResponse(
            access_token=AuthService.create_access_token(claims),
            refresh_token=AuthService.create_refresh_token(claims),
            expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
            user=user_summary(user),
        )

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            raise AuthenticationError("Token expired")
        except JWTError:
            raise AuthenticationError("Invalid token")

    @staticmethod
    def check_brute_force(email: str) -> None:
        """Check if login attempts exceed threshold"""
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=LOGIN_LOCKOUT_MINUTES)
        _login_attempts[email] = [t for t in _login_attempts[email] if t > cutoff]
        if len(_login_attempts[email]) >= MAX_LOGIN_ATTEMPTS:
            raise HTTPException(
                status_code=429,
                detail=f"Too many login attempts. Try again in {LOGIN_LOCKOUT_MINUTES} minutes.",
            )

    @staticmethod
    def record_failed_attempt(email: str) -> None:
        _login_attempts[email].append(datetime.now(timezone.utc))

    @staticmethod
    def clear_attempts(email: str) -> None:
        _login_attempts.pop(email, None)

    # --- Revocation ---

    @staticmethod
    def token_hash(token: str) -> str:
        return hashlib.sha256(token.encode("utf-8")).hexdigest()

    @staticmethod
    async def is_token_revoked(token: str, db: AsyncSession) -> bool:
        stmt = select(RevokedToken.id).where(RevokedToken.token_hash == AuthService.token_hash(token))
        return (await db.execute(stmt)).first() is not None

    @staticmethod
    async def revoke_token(token: str, db: AsyncSession) -> None:
        """Add a token to the revocation list until it would have expired anyway"""
        payload = AuthService.verify_token(token)
        token_hash = AuthService.token_hash(token)
        now = utcnow()
        # Rows past their expiry no longer matter: the signature check rejects those tokens
        await db.execute(delete(RevokedToken).where(RevokedToken.expires_at < now))
        if not await AuthService.is_token_revoked(token, db):
            db.add(RevokedToken(
                token_hash=token_hash,
                user_id=payload.get("sub"),
                expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            ))
        await db.commit()


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_bearer_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Not authenticated")
    return credentials.credentials


async def get_current_principal(
    token: str = Depends(get_bearer_token),
    db: AsyncSession = Depends(get_db_session),
) -> Principal:
    payload = AuthService.verify_token(token)

    if payload.get("type") != "access":
        raise AuthenticationError("Invalid token type")
    if await AuthService.is_token_revoked(token, db):
        raise AuthenticationError("Token has been revoked")

    user_id = payload.get("sub")
    try:
        role = UserRole(payload.get("role"))
    except ValueError:
        raise AuthenticationError("Invalid token")
    if not user_id:
        raise AuthenticationError("Invalid token")

    user = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if not user or not user.is_active or user.deleted_at is not None:
        raise AuthenticationError("User not found or inactive")

    # Single snapshot of the effective matrix for the whole request
    capabilities = await get_override(db, user.id) or role_defaults(role)

    return Principal(
        id=user.id,
        role=role,
        tenant_id=payload.get("tenant_id"),
        capabilities=capabilities,
        email=user.email,
        display_name=user.full_name,
    )


async def get_current_user(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db_session),
) -> User:
    """The caller's own User row"""
    return (await db.execute(select(User).where(User.id == principal.id))).scalar_one()


def _subdomain_label(host: str) -> Optional[str]:
    if not TENANT_BASE_DOMAIN or not host:
        return None
    host = host.split(":", 1)[0].lower().rstrip(".")
    suffix = "." + TENANT_BASE_DOMAIN
    if not host.endswith(suffix):
        return None
    label = host[: -len(suffix)]
    return label if label and "." not in label else None


async def get_tenant_context(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db_session),
) -> TenantContext:
    explicit, source = request.headers.get("X-Tenant-ID"), "header"
    if not explicit:
        explicit, source = request.query_params.get("tenant_id"), "query"
    if not explicit:
        label = _subdomain_label(request.headers.get("host", ""))
        if label:
            source = "subdomain"
            tenant = (await db.execute(
                select(Tenant).where(Tenant.subdomain == label)
            )).scalar_one_or_none()
            if tenant is None and not principal.is_super_admin:
                raise TenantAccessDenied("Unknown tenant")
            explicit = tenant.id if tenant else None

    ctx = resolve_tenant(principal, explicit or None, source)

    if ctx.tenant_id and not principal.is_super_admin:
        tenant = await db.get(Tenant, ctx.tenant_id)
        if tenant is None or not tenant.is_active or tenant.deleted_at is not None:
            raise TenantAccessDenied("Tenant is not active")

    request.state.tenant_id = ctx.tenant_id
    return ctx
