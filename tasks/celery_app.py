"""
tasks/celery_app.py
Celery application instance — shared across all task modules.

Workers are started with:
    celery -A tasks.celery_app worker --loglevel=info --concurrency=4

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery
from celery.schedules import crontab

from config.settings import settings

celery_app = Celery(
    "homeserve",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "tasks.booking_tasks",
        "tasks.notification_tasks",
    ],
)

# ── Configuration ─────────────────────────────────────────────────────────────

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="Asia/Kolkata",
    enable_utc=True,

    # Acknowledge after execution so a dying worker does not lose the task
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    result_expires=3600,
    task_max_retries=3,

    # Rate limits (per worker per second)
    task_annotations={
        "tasks.notification_tasks.send_push_notification": {"rate_limit": "30/s"},
    },

    task_routes={
        "tasks.notification_tasks.*": {"queue": "notifications"},
        "tasks.booking_tasks.run_partner_matching": {"queue": "matching"},
        "tasks.booking_tasks.cancel_abandoned_bookings": {"queue": "default"},
        "tasks.booking_tasks.retrigger_stale_matching": {"queue": "default"},
    },

    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    # Cancel unpaid bookings nobody picked up within ABANDONED_BOOKING_MINUTES
    "cancel-abandoned-bookings": {
        "task": "tasks.booking_tasks.cancel_abandoned_bookings",
        "schedule": crontab(minute=0),  # top of every hour
    },

    # Re-notify partners for searches that have gone quiet
    "retrigger-stale-matching": {
        "task": "tasks.booking_tasks.retrigger_stale_matching",
        "schedule": settings.STALE_SEARCH_MINUTES * 60,
    },
}
