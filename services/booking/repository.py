"""
services/booking/repository.py
Explicit queries used by the booking state machine.
Status changes are compare-and-set UPDATEs: the WHERE clause names the
status the caller validated, so a concurrent writer makes rowcount 0
instead of silently overwriting.
"""

from datetime import datetime
from typing import Any, Iterable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.booking.transitions import CLAIMABLE_STATUSES, UNASSIGNED_STATUSES
from shared.exceptions import NotFound
from shared.models.models import (
    AssociationStatus,
    Booking,
    BookingItem,
    BookingStatus,
    BookingStatusHistory,
    BusinessPartner,
    PartnerAssociation,
    PaymentMethod,
    PaymentStatus,
    Rating,
    Service,
    ServicePartner,
)
from shared.utils.clock import utcnow


class BookingRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    # ── Lookups ───────────────────────────────────────────────

    async def get(self, booking_id: UUID) -> Booking:
        result = await self.db.execute(
            select(Booking)
            .where(Booking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        booking = result.scalar_one_or_none()
        if not booking:
            raise NotFound("Booking not found", booking_id=str(booking_id))
        return booking

    async def find_service(self, service_id: UUID) -> Optional[Service]:
        return await self.db.get(Service, service_id)

    async def find_partner(self, partner_id: UUID) -> Optional[ServicePartner]:
        return await self.db.get(ServicePartner, partner_id, populate_existing=True)

    async def find_partner_by_user(self, user_id: UUID) -> Optional[ServicePartner]:
        result = await self.db.execute(
            select(ServicePartner).where(ServicePartner.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def find_business_partner(self, business_partner_id: UUID) -> Optional[BusinessPartner]:
        return await self.db.get(BusinessPartner, business_partner_id)

    async def find_business_partner_by_user(self, user_id: UUID) -> Optional[BusinessPartner]:
        result = await self.db.execute(
            select(BusinessPartner).where(BusinessPartner.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def is_active_team_member(self, business_partner_id: UUID, partner_id: UUID) -> bool:
        result = await self.db.execute(
            select(PartnerAssociation.id).where(
                PartnerAssociation.business_partner_id == business_partner_id,
                PartnerAssociation.service_partner_id == partner_id,
                PartnerAssociation.status == AssociationStatus.ACTIVE,
            )
        )
        return result.first() is not None

    async def has_rating(self, booking_id: UUID) -> bool:
        result = await self.db.execute(select(Rating.id).where(Rating.booking_id == booking_id))
        return result.first() is not None

    # ── Writes ────────────────────────────────────────────────

    async def compare_and_set(
        self,
        booking_id: UUID,
        expected_status: BookingStatus,
        values: dict,
        extra_conditions: Iterable[Any] = (),
    ) -> bool:
        """UPDATE ... WHERE id = :id AND status = :expected. True if exactly one row changed."""
        stmt = (
            update(Booking)
            .where(Booking.id == booking_id, Booking.status == expected_status, *extra_conditions)
            .values({"updated_at": utcnow(), **values})
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def current_status(self, booking_id: UUID) -> BookingStatus:
        status = await self.db.scalar(select(Booking.status).where(Booking.id == booking_id))
        if status is None:
            raise NotFound("Booking not found", booking_id=str(booking_id))
        return status

    def add_history(
        self,
        booking_id: UUID,
        status: BookingStatus,
        changed_by: Optional[UUID],
        notes: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> BookingStatusHistory:
        entry = BookingStatusHistory(
            booking_id=booking_id,
            status=status,
            changed_by=changed_by,
            notes=notes,
            created_at=created_at or utcnow(),
        )
        self.db.add(entry)
        return entry

    async def history(self, booking_id: UUID) -> List[BookingStatusHistory]:
        result = await self.db.execute(
            select(BookingStatusHistory)
            .where(BookingStatusHistory.booking_id == booking_id)
            .order_by(BookingStatusHistory.created_at, BookingStatusHistory.id)
        )
        return list(result.scalars())

    async def increment_completion_stats(self, partner_id: UUID) -> None:
        # Right-hand sides read the pre-update row, hence the +1 in the rate.
        await self.db.execute(
            update(ServicePartner)
            .where(ServicePartner.id == partner_id)
            .values(
                total_bookings=ServicePartner.total_bookings + 1,
                completed_bookings=ServicePartner.completed_bookings + 1,
                completion_rate=(ServicePartner.completed_bookings + 1) * 100.0
                / (ServicePartner.total_bookings + 1),
            )
            .execution_options(synchronize_session=False)
        )

    async def apply_rating(self, partner_id: UUID, rating: int) -> None:
        await self.db.execute(
            update(ServicePartner)
            .where(ServicePartner.id == partner_id)
            .values(
                avg_rating=(ServicePartner.avg_rating * ServicePartner.total_ratings + rating)
                / (ServicePartner.total_ratings + 1.0),
                total_ratings=ServicePartner.total_ratings + 1,
            )
            .execution_options(synchronize_session=False)
        )

    async def update_partner_location(
        self, partner_id: UUID, latitude: float, longitude: float
    ) -> None:
        await self.db.execute(
            update(ServicePartner)
            .where(ServicePartner.id == partner_id)
            .values(
                current_latitude=latitude,
                current_longitude=longitude,
                location_updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

    # ── Queries ───────────────────────────────────────────────

    async def list_bookings(
        self,
        visibility: Optional[Any] = None,
        status: Optional[BookingStatus] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        customer_id: Optional[UUID] = None,
        partner_id: Optional[UUID] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[Booking], int]:
        query = select(Booking)
        if visibility is not None:
            query = query.where(visibility)
        if status:
            query = query.where(Booking.status == status)
        if date_from:
            query = query.where(Booking.scheduled_at >= date_from)
        if date_to:
            query = query.where(Booking.scheduled_at <= date_to)
        if customer_id:
            query = query.where(Booking.customer_id == customer_id)
        if partner_id:
            query = query.where(Booking.partner_id == partner_id)

        total = await self.db.scalar(select(func.count()).select_from(query.subquery()))
        result = await self.db.execute(
            query.order_by(Booking.scheduled_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars()), total or 0

    async def find_abandoned(self, created_before: datetime) -> List[Booking]:
        """
        Unassigned bookings still waiting on an online or wallet payment past
        the cutoff. Cash bookings are paid on completion and never abandoned.
        """
        result = await self.db.execute(
            select(Booking).where(
                Booking.status.in_(list(UNASSIGNED_STATUSES)),
                Booking.partner_id.is_(None),
                Booking.payment_method != PaymentMethod.CASH,
                Booking.payment_status == PaymentStatus.PENDING,
                Booking.created_at < created_before,
            )
        )
        return list(result.scalars())

    async def find_stale_searches(self, updated_before: datetime) -> List[Booking]:
        result = await self.db.execute(
            select(Booking).where(
                Booking.status == BookingStatus.SEARCHING_PARTNER,
                Booking.partner_id.is_(None),
                Booking.updated_at < updated_before,
            )
        )
        return list(result.scalars())

    async def find_claimable_near(
        self, partner: ServicePartner, limit: int = 50
    ) -> List[Booking]:
        """Open bookings in the partner's category; distance is filtered by the caller."""
        query = (
            select(Booking)
            .join(BookingItem, BookingItem.booking_id == Booking.id)
            .join(Service, Service.id == BookingItem.service_id)
            .where(
                Booking.partner_id.is_(None),
                Booking.status.in_(list(CLAIMABLE_STATUSES)),
                Service.category_id == partner.category_id,
            )
        )
        if partner.business_partner_id:
            query = query.where(
                or_(
                    Booking.business_partner_id.is_(None),
                    Booking.business_partner_id == partner.business_partner_id,
                )
            )
        else:
            query = query.where(Booking.business_partner_id.is_(None))
        result = await self.db.execute(
            query.order_by(Booking.scheduled_at).limit(limit)
        )
        return list(result.scalars().unique())


def claimable_or_assigned(partner_id: UUID):
    """Visibility clause for a service partner."""
    return or_(
        Booking.partner_id == partner_id,
        and_(
            Booking.partner_id.is_(None),
            Booking.status.in_(list(CLAIMABLE_STATUSES)),
        ),
    )
