"""
shared/notifier.py
Notification seam used by the booking services.

The state machine receives a Notifier at construction time and never looks
one up globally. Delivery is best-effort: emit_side_effects() logs and drops
failures so a committed transition is never undone by a broken transport.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Protocol
from uuid import UUID

from fastapi import Depends
from sqlalchemy.ext.asyncio import async_sessionmaker

from config.database import get_session_factory
from shared.models.models import Notification, NotificationType

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def notify(
        self,
        user_id: UUID,
        type: NotificationType,
        title: str,
        message: str,
        data: Optional[dict] = None,
    ) -> None:
        ...


@dataclass
class Notice:
    user_id: UUID
    type: NotificationType
    title: str
    message: str
    data: dict = field(default_factory=dict)


class PushNotifier:
    """
    Stores an in-app Notification row in its own session and hands the
    push off to Celery. Returns as soon as the task is enqueued.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def notify(
        self,
        user_id: UUID,
        type: NotificationType,
        title: str,
        message: str,
        data: Optional[dict] = None,
    ) -> None:
        async with self.session_factory() as session:
            session.add(
                Notification(user_id=user_id, type=type, title=title, message=message, data=data)
            )
            await session.commit()

        from tasks.notification_tasks import send_push_notification
        send_push_notification.delay(
            user_id=str(user_id),
            title=title,
            body=message,
            data={k: str(v) for k, v in (data or {}).items()},
        )


async def emit_side_effects(notifier: Notifier, notices: Iterable[Notice]) -> None:
    """Deliver every notice; failures are logged, never raised."""
    for notice in notices:
        try:
            await notifier.notify(
                notice.user_id, notice.type, notice.title, notice.message, notice.data or None
            )
        except Exception as e:
            logger.warning(
                f"Notification {notice.type.value} to {notice.user_id} failed: {e}", exc_info=True
            )


def stringify(data: dict) -> dict:
    return {k: (str(v) if not isinstance(v, (int, float, bool, str)) else v) for k, v in data.items()}


def booking_data(booking: Any, **extra: Any) -> dict:
    return stringify(
        {"booking_id": booking.id, "booking_number": booking.booking_number, **extra}
    )


def get_notifier(session_factory: async_sessionmaker = Depends(get_session_factory)) -> Notifier:
    """FastAPI dependency: the production notifier."""
    return PushNotifier(session_factory)
