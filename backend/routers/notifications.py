# routers/notifications.py — In-app notification inbox
from typing import Optional, Dict, Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_principal
from database import get_db_session
from errors import ResourceNotFound
from models import Notification, NotificationPriority, utcnow
from permissions import Principal

router = APIRouter(prefix="/api/v1/notifications", tags=["Notifications"])


# --- Schemas ---

class NotificationOut(BaseModel):
    id: str
    event_type: str
    title: str
    body: str
    payload: Dict[str, Any] = {}
    priority: str
    read_at: Optional[str] = None
    is_read: bool
    created_at: str


def _notif_out(n: Notification) -> dict:
    return NotificationOut(
        id=n.id,
        event_type=n.event_type,
        title=n.title,
        body=n.body or "",
        payload=n.payload or {},
        priority=NotificationPriority(n.priority).value,
        read_at=n.read_at.isoformat() if n.read_at else None,
        is_read=n.read_at is not None,
        created_at=n.created_at.isoformat() if n.created_at else "",
    ).model_dump()


async def _own(db: AsyncSession, user_id: str, notification_id: str) -> Notification:
    notif = (await db.execute(
        select(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == user_id,
        )
    )).scalar_one_or_none()
    if not notif:
        raise ResourceNotFound("Notification not found")
    return notif


# ============================================================
# LIST
# ============================================================

@router.get("")
async def list_notifications(
    unread_only: bool = Query(default=False),
    event_type: Optional[str] = Query(None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db_session),
    principal: Principal = Depends(get_current_principal),
):
    query = select(Notification).where(Notification.user_id == principal.id)
    if unread_only:
        query = query.where(Notification.read_at.is_(None))
    if event_type:
        query = query.where(Notification.event_type == event_type)
    query = query.order_by(Notification.created_at.desc()).offset(offset).limit(limit)
    result = await db.execute(query)
    return [_notif_out(n) for n in result.scalars().all()]


@router.get("/count")
async def notification_count(
    db: AsyncSession = Depends(get_db_session),
    principal: Principal = Depends(get_current_principal),
):
    unread = (await db.execute(
        select(func.count(Notification.id)).where(
            Notification.user_id == principal.id,
            Notification.read_at.is_(None),
        )
    )).scalar() or 0
    return {"unread": unread}


# ============================================================
# MARK READ
# ============================================================

@router.post("/{notification_id}/read")
async def mark_read(
    notification_id: str,
    db: AsyncSession = Depends(get_db_session),
    principal: Principal = Depends(get_current_principal),
):
    notif = await _own(db, principal.id, notification_id)
    if notif.read_at is None:
        notif.read_at = utcnow()
        await db.commit()
    return {"status": "read"}


@router.post("/read-all")
async def mark_all_read(
    db: AsyncSession = Depends(get_db_session),
    principal: Principal = Depends(get_current_principal),
):
    result = await db.execute(
        select(Notification).where(
            Notification.user_id == principal.id,
            Notification.read_at.is_(None),
        )
    )
    notifications = result.scalars().all()
    for n in notifications:
        n.read_at = utcnow()
    await db.commit()
    return {"marked": len(notifications)}


# ============================================================
# DELETE
# ============================================================

@router.delete("/{notification_id}")
async def delete_notification(
    notification_id: str,
    db: AsyncSession = Depends(get_db_session),
    principal: Principal = Depends(get_current_principal),
):
    notif = await _own(db, principal.id, notification_id)
    await db.delete(notif)
    await db.commit()
    return {"status": "deleted"}


@router.delete("")
async def clear_read_notifications(
    db: AsyncSession = Depends(get_db_session),
    principal: Principal = Depends(get_current_principal),
):
    result = await db.execute(
        select(Notification).where(
            Notification.user_id == principal.id,
            Notification.read_at.is_not(None),
        )
    )
    notifications = result.scalars().all()
    for n in notifications:
        await db.delete(n)
    await db.commit()
    return {"deleted": len(notifications)}
