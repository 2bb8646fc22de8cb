"""
tasks/booking_tasks.py
Celery tasks for the booking lifecycle: partner matching with retry,
abandoned-booking reaper and stale-search re-matching.

The booking services are async; each task runs them on a fresh event loop
with its own NullPool engine so no connection outlives the loop it was
opened on.
"""

import asyncio
import logging
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from config.settings import settings
from services.booking.service import BookingStateMachine
from shared.notifier import PushNotifier
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


async def _with_state_machine(fn):
    engine = create_async_engine(settings.DATABASE_URL, poolclass=NullPool)
    session_factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    try:
        async with session_factory() as session:
            machine = BookingStateMachine(session, notifier=PushNotifier(session_factory))
            return await fn(machine)
    finally:
        await engine.dispose()


def _run(fn):
    return asyncio.run(_with_state_machine(fn))


# ── Matching ──────────────────────────────────────────────────────────────────

@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def run_partner_matching(self, booking_id: str):
    """
    Find and notify candidates for a SEARCHING_PARTNER booking.
    Engine failures are retried with exponential backoff.
    """
    try:
        candidates = _run(
            lambda machine: machine.dispatch_matching(UUID(booking_id), raise_errors=True)
        )
    except Exception as e:
        logger.exception(f"run_partner_matching failed for {booking_id}: {e}")
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))

    logger.info(f"run_partner_matching: {len(candidates)} candidate(s) for booking {booking_id}")
    return len(candidates)


# ── Housekeeping (beat) ───────────────────────────────────────────────────────

@celery_app.task
def cancel_abandoned_bookings():
    """
    Beat task: runs hourly.
    Cancels unassigned online/wallet bookings whose payment never completed
    within ABANDONED_BOOKING_MINUTES of creation.
    """
    count = _run(lambda machine: machine.cancel_abandoned_bookings())
    logger.info(f"cancel_abandoned_bookings: cancelled {count} booking(s)")
    return count


@celery_app.task
def retrigger_stale_matching():
    """Beat task: re-notify candidates for searches idle longer than STALE_SEARCH_MINUTES."""
    count = _run(lambda machine: machine.retrigger_stale_matching())
    logger.info(f"retrigger_stale_matching: re-ran matching for {count} booking(s)")
    return count
