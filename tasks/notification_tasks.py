"""
tasks/notification_tasks.py
Celery task for FCM push delivery.

The in-app Notification row is written by the PushNotifier before this task
is enqueued; the task only resolves the user's device token and pushes.

Usage:
    from tasks.notification_tasks import send_push_notification
    send_push_notification.delay(user_id=str(user.id), title=..., body=..., data={...})
"""

import logging
from uuid import UUID

from celery import Task
from sqlalchemy import select

from config.settings import settings
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


# ── Base Task with DB session ──────────────────────────────────────────────────

class DatabaseTask(Task):
    """Base class that provides a synchronous DB session for tasks."""
    abstract = True
    _sessionmaker = None

    def get_session(self):
        """Get a synchronous SQLAlchemy session (Celery runs sync by default)."""
        if DatabaseTask._sessionmaker is None:
            from sqlalchemy import create_engine
            from sqlalchemy.orm import sessionmaker

            # postgresql+asyncpg:// → postgresql+psycopg2://
            sync_url = settings.DATABASE_URL.replace("+asyncpg", "+psycopg2").replace("+aiosqlite", "")
            engine = create_engine(sync_url, pool_pre_ping=True)
            DatabaseTask._sessionmaker = sessionmaker(bind=engine)
        return DatabaseTask._sessionmaker()


# ── Delivery ───────────────────────────────────────────────────────────────────

def _firebase_app():
    import firebase_admin
    from firebase_admin import credentials

    if not firebase_admin._apps:
        firebase_admin.initialize_app(credentials.Certificate(settings.FIREBASE_CREDENTIALS_PATH))
    return firebase_admin.get_app()


def _send_fcm(fcm_token: str, title: str, body: str, data: dict = None) -> bool:
    """Send FCM push notification. Returns True on success."""
    try:
        from firebase_admin import messaging

        message = messaging.Message(
            notification=messaging.Notification(title=title, body=body),
            data={k: str(v) for k, v in (data or {}).items()},
            token=fcm_token,
            android=messaging.AndroidConfig(priority="high"),
            apns=messaging.APNSConfig(
                payload=messaging.APNSPayload(
                    aps=messaging.Aps(badge=1, sound="default")
                )
            ),
        )
        messaging.send(message, app=_firebase_app())
        return True
    except Exception as e:
        logger.warning(f"FCM send failed: {e}")
        return False


@celery_app.task(bind=True, base=DatabaseTask, max_retries=3, default_retry_delay=60)
def send_push_notification(self, user_id: str, title: str, body: str, data: dict = None):
    """Push to the user's registered device. Users without a token are skipped."""
    from shared.models.models import User

    db = self.get_session()
    try:
        fcm_token = db.execute(select(User.fcm_token).where(User.id == UUID(user_id))).scalar_one_or_none()
    finally:
        db.close()

    if not fcm_token:
        logger.debug(f"send_push_notification: no device token for user {user_id}")
        return False

    if not _send_fcm(fcm_token, title, body, data):
        raise self.retry(countdown=60 * (2 ** self.request.retries))
    return True
