# overrides.py — Permission Override Store
#
# One row per user (user_id UNIQUE). Writes are a single dialect-level
# INSERT ... ON CONFLICT (user_id) DO UPDATE so concurrent updates to the
# same user never produce two rows. A missing or inactive row means
# "use the role defaults" and is never an error.

import logging
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from errors import (
    CannotManageSuperAdmin,
    CannotModifySelf,
    InsufficientCapability,
    TenantAccessDenied,
)
from models import PermissionOverride, User, UserRole, new_uuid, utcnow
from permissions import CapabilityMatrix, Operation, Principal, ResourceCategory, role_defaults

logger = logging.getLogger("taskhub.permissions")

ORG_ADMIN_MANAGEABLE = frozenset({UserRole.PROJECT_MANAGER, UserRole.EMPLOYEE})


# ============================================================
# READS
# ============================================================

async def get_override(db: AsyncSession, user_id: str) -> Optional[CapabilityMatrix]:
    """Active override matrix for a user, or None (use role defaults)"""
    result = await db.execute(
        select(PermissionOverride).where(
            PermissionOverride.user_id == user_id,
            PermissionOverride.is_active.is_(True),
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        return None
    return CapabilityMatrix.from_dict(row.capabilities)


async def effective_matrix(db: AsyncSession, user: User) -> Tuple[CapabilityMatrix, bool]:
    """(matrix, is_default) for a user"""
    matrix = await get_override(db, user.id)
    if matrix is None:
        return role_defaults(user.role), True
    return matrix, False


# ============================================================
# SCOPE RULES
# ============================================================

def check_management_scope(caller: Principal, target: User, write: bool) -> None:
    """Raise unless ``caller`` may view (write=False) or change ``target``'s permissions"""
    if caller.id == target.id:
        if write:
            raise CannotModifySelf()
        return

    needed = Operation.UPDATE if write else Operation.READ
    if not caller.capabilities.allows(ResourceCategory.USER, needed):
        raise InsufficientCapability()

    if caller.role is UserRole.SUPER_ADMIN:
        return
    if caller.role is not UserRole.ORG_ADMIN:
        raise InsufficientCapability()

    target_role = UserRole(target.role)
    if target_role is UserRole.SUPER_ADMIN:
        raise CannotManageSuperAdmin()
    if target.tenant_id != caller.tenant_id:
        raise TenantAccessDenied()
    if target_role not in ORG_ADMIN_MANAGEABLE:
        raise InsufficientCapability("Organization admins can only manage project managers and employees")


async def list_effective(db: AsyncSession, caller: Principal) -> List[Tuple[User, CapabilityMatrix, bool]]:
    """Every user the caller may manage, each with an effective matrix"""
    stmt = select(User).where(User.deleted_at.is_(None), User.id != caller.id)
    if caller.role is UserRole.ORG_ADMIN:
        stmt = stmt.where(
            User.tenant_id == caller.tenant_id,
            User.role.in_(list(ORG_ADMIN_MANAGEABLE)),
        )
    elif caller.role is not UserRole.SUPER_ADMIN:
        raise InsufficientCapability()
    if not caller.capabilities.allows(ResourceCategory.USER, Operation.READ):
        raise InsufficientCapability()

    users = (await db.execute(stmt.order_by(User.created_at))).scalars().all()
    if not users:
        return []

    rows = (await db.execute(
        select(PermissionOverride).where(
            PermissionOverride.user_id.in_([u.id for u in users]),
            PermissionOverride.is_active.is_(True),
        )
    )).scalars().all()
    by_user = {r.user_id: CapabilityMatrix.from_dict(r.capabilities) for r in rows}

    entries = []
    for user in users:
        if user.id in by_user:
            entries.append((user, by_user[user.id], False))
        else:
            entries.append((user, role_defaults(user.role), True))
    return entries


# ============================================================
# WRITES
# ============================================================

_INSERTS = {
    "postgresql": postgresql_insert,
    "sqlite": sqlite_insert,
}


def _upsert_statement(db: AsyncSession, values: dict):
    """INSERT .. ON CONFLICT (user_id) DO UPDATE for the bound dialect"""
    dialect = db.bind.dialect.name if db.bind is not None else ""
    if dialect not in _INSERTS:
        raise RuntimeError(f"Permission overrides need PostgreSQL or SQLite, not {dialect or 'unbound'}")

    stmt = _INSERTS[dialect](PermissionOverride).values(**values)
    return stmt.on_conflict_do_update(
        index_elements=[PermissionOverride.user_id],
        set_={
            "tenant_id": stmt.excluded.tenant_id,
            "capabilities": stmt.excluded.capabilities,
            "is_active": True,
            "updated_by": stmt.excluded.updated_by,
            "updated_at": stmt.excluded.updated_at,
        },
    )


async def _upsert(db: AsyncSession, target: User, matrix: CapabilityMatrix, updated_by: str) -> None:
    now = utcnow()
    values = {
        "id": new_uuid(),
        "user_id": target.id,
        "tenant_id": target.tenant_id,
        "capabilities": matrix.to_dict(),
        "is_active": True,
        "updated_by": updated_by,
        "created_at": now,
        "updated_at": now,
    }
    await db.execute(_upsert_statement(db, values))
    await db.commit()


async def set_override(
    db: AsyncSession, caller: Principal, target: User, matrix: CapabilityMatrix,
) -> CapabilityMatrix:
    check_management_scope(caller, target, write=True)
    await _upsert(db, target, matrix, caller.id)
    logger.info("Permissions for user=%s updated by user=%s", target.id, caller.id)
    return matrix


async def reset_to_default(db: AsyncSession, caller: Principal, target: User) -> CapabilityMatrix:
    """Materialise the role defaults as the user's override record"""
    check_management_scope(caller, target, write=True)
    matrix = role_defaults(target.role)
    await _upsert(db, target, matrix, caller.id)
    logger.info("Permissions for user=%s reset to %s defaults by user=%s",
                target.id, UserRole(target.role).value, caller.id)
    return matrix
