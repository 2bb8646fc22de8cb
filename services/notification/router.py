"""
services/notification/router.py
In-app inbox for booking, wallet and withdrawal notices. Rows are written by
the PushNotifier; FCM delivery happens in tasks/notification_tasks.py.
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.exceptions import NotFound
from shared.middleware.auth import get_current_user
from shared.models.models import Notification, NotificationType, User
from shared.schemas.schemas import MessageResponse, NotificationResponse, UnreadCountResponse
from shared.utils.clock import utcnow

router = APIRouter(prefix="/notifications", tags=["Notifications"])


def _inbox(user: User):
    return select(Notification).where(Notification.user_id == user.id)


@router.get("", response_model=List[NotificationResponse])
async def list_notifications(
    unread_only: bool = Query(False),
    type: Optional[NotificationType] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Newest first; filter by notice type, e.g. BOOKING_CANCELLED."""
    query = _inbox(current_user)
    if unread_only:
        query = query.where(Notification.is_read.is_(False))
    if type is not None:
        query = query.where(Notification.type == type)

    rows = await db.scalars(
        query.order_by(Notification.created_at.desc(), Notification.id)
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return [NotificationResponse.model_validate(n) for n in rows]


@router.get("/unread-count", response_model=UnreadCountResponse)
async def unread_count(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    count = await db.scalar(
        select(func.count(Notification.id)).where(
            Notification.user_id == current_user.id,
            Notification.is_read.is_(False),
        )
    )
    return UnreadCountResponse(unread_count=count or 0)


@router.post("/read-all", response_model=MessageResponse)
async def mark_all_read(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        update(Notification)
        .where(Notification.user_id == current_user.id, Notification.is_read.is_(False))
        .values(is_read=True, read_at=utcnow())
    )
    await db.commit()
    return MessageResponse(message=f"{result.rowcount} notifications marked as read")


@router.post("/{notification_id}/read", response_model=NotificationResponse)
async def mark_read(
    notification_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    notice = await db.scalar(_inbox(current_user).where(Notification.id == notification_id))
    if notice is None:
        raise NotFound("Notification not found", notification_id=str(notification_id))
    if not notice.is_read:
        notice.is_read = True
        notice.read_at = utcnow()
        await db.commit()
    return NotificationResponse.model_validate(notice)
