"""
tests/conftest.py
Shared fixtures: a fresh SQLite database per test, seeded users, partners
and a priced service, a recording notifier, a mocked refund gateway and an
httpx client wired to the FastAPI app through dependency overrides.
"""

import os
import uuid

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("APP_ENV", "test")

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config.database import Base, get_db, get_session_factory
from config.redis_client import get_redis
from services.booking.service import BookingStateMachine
from services.payment.provider import RefundResult, get_payment_provider
from shared.models.models import (
    AssociationStatus,
    AvailabilityStatus,
    Booking,
    BookingItem,
    BookingStatus,
    BusinessPartner,
    KYCStatus,
    PartnerAssociation,
    PaymentMethod,
    PaymentStatus,
    Service,
    ServiceCategory,
    ServicePartner,
    User,
    UserRole,
)
from shared.notifier import get_notifier
from shared.utils.security import create_access_token

# Booking address used throughout (Bengaluru); partners are placed north of it.
SERVICE_LAT = 12.9716
SERVICE_LNG = 77.5946
KM_IN_LAT = 1 / 111.195


# ── Fakes ──────────────────────────────────────────────────────────────────────

class RecordingNotifier:
    def __init__(self):
        self.sent = []

    async def notify(self, user_id, type, title, message, data=None):
        self.sent.append({"user_id": user_id, "type": type, "title": title, "message": message, "data": data})

    def to(self, user_id, type=None):
        return [n for n in self.sent if n["user_id"] == user_id and (type is None or n["type"] == type)]

    def of_type(self, type):
        return [n for n in self.sent if n["type"] == type]


class FakeRedis:
    def __init__(self):
        self.store = {}

    async def exists(self, key):
        return 1 if key in self.store else 0

    async def setex(self, key, ttl, value):
        self.store[key] = value


class FakeClock:
    def __init__(self, now=None):
        self.now = now or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


# ── Database ───────────────────────────────────────────────────────────────────

@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ── Collaborators ──────────────────────────────────────────────────────────────

@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def payment_provider():
    provider = AsyncMock()
    provider.refund.side_effect = lambda booking_id, amount, reason, payment_reference=None: RefundResult(
        refund_id=f"rfnd_{booking_id.hex[:8]}", amount=amount, status="processed"
    )
    return provider


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def machine(db, notifier, payment_provider, clock):
    return BookingStateMachine(db, notifier=notifier, payment_provider=payment_provider, clock=clock)


# ── Seed data ──────────────────────────────────────────────────────────────────

async def _user(db, email, name, role):
    user = User(email=email, full_name=name, role=role, is_active=True)
    db.add(user)
    await db.commit()
    return user


async def _partner(db, user, category, km_north, **fields):
    partner = ServicePartner(
        user_id=user.id,
        category_id=category.id,
        availability_status=AvailabilityStatus.AVAILABLE,
        kyc_status=KYCStatus.APPROVED,
        current_latitude=SERVICE_LAT + km_north * KM_IN_LAT,
        current_longitude=SERVICE_LNG,
        service_radius_km=10.0,
        **fields,
    )
    db.add(partner)
    await db.commit()
    return partner


@pytest.fixture
async def customer(db):
    return await _user(db, "asha@homeserve.in", "Asha Rao", UserRole.CUSTOMER)


@pytest.fixture
async def other_customer(db):
    return await _user(db, "vikram@homeserve.in", "Vikram Shah", UserRole.CUSTOMER)


@pytest.fixture
async def admin(db):
    return await _user(db, "ops@homeserve.in", "Ops Admin", UserRole.ADMIN)


@pytest.fixture
async def super_admin(db):
    """First SUPER_ADMIN doubles as the platform commission wallet."""
    return await _user(db, "treasury@homeserve.in", "Platform Treasury", UserRole.SUPER_ADMIN)


@pytest.fixture
async def category(db):
    category = ServiceCategory(name="Plumbing", is_active=True)
    db.add(category)
    await db.commit()
    return category


@pytest.fixture
async def service(db, category):
    service = Service(
        category_id=category.id,
        name="Tap repair",
        base_price=Decimal("1000.00"),
        duration_minutes=60,
        surge_multiplier=1.0,
        is_active=True,
    )
    db.add(service)
    await db.commit()
    return service


@pytest.fixture
async def partner_user(db):
    return await _user(db, "ravi@homeserve.in", "Ravi Kumar", UserRole.SERVICE_PARTNER)


@pytest.fixture
async def partner(db, partner_user, category):
    return await _partner(db, partner_user, category, km_north=1.0)


@pytest.fixture
async def second_partner_user(db):
    return await _user(db, "suresh@homeserve.in", "Suresh Naik", UserRole.SERVICE_PARTNER)


@pytest.fixture
async def second_partner(db, second_partner_user, category):
    return await _partner(db, second_partner_user, category, km_north=2.0)


@pytest.fixture
async def business_user(db):
    return await _user(db, "owner@fixitpros.in", "FixIt Pros", UserRole.BUSINESS_PARTNER)


@pytest.fixture
async def business(db, business_user):
    business = BusinessPartner(
        user_id=business_user.id, business_name="FixIt Pros", commission_rate=0.2, is_active=True
    )
    db.add(business)
    await db.commit()
    return business


@pytest.fixture
async def team_partner_user(db):
    return await _user(db, "imran@fixitpros.in", "Imran Ali", UserRole.SERVICE_PARTNER)


@pytest.fixture
async def team_partner(db, team_partner_user, category, business):
    partner = await _partner(db, team_partner_user, category, km_north=3.0, business_partner_id=business.id)
    db.add(
        PartnerAssociation(
            business_partner_id=business.id,
            service_partner_id=partner.id,
            status=AssociationStatus.ACTIVE,
        )
    )
    await db.commit()
    return partner


async def make_booking(db, customer, service, status=BookingStatus.COMPLETED, **fields):
    """Insert a booking directly in a given status, bypassing the lifecycle."""
    now = datetime.now(timezone.utc)
    values = dict(
        booking_number=f"BKTEST{uuid.uuid4().hex[:12].upper()}",
        customer_id=customer.id,
        status=status,
        scheduled_at=now + timedelta(days=1),
        service_address="12 MG Road, Bengaluru",
        service_latitude=SERVICE_LAT,
        service_longitude=SERVICE_LNG,
        payment_method=PaymentMethod.ONLINE,
        payment_status=PaymentStatus.PENDING,
        total_amount=Decimal("1000.00"),
        advance_amount=Decimal("300.00"),
        remaining_amount=Decimal("700.00"),
        estimated_duration_minutes=60,
        before_images=[],
        after_images=[],
        rejected_partner_ids=[],
    )
    values.update(fields)
    booking = Booking(**values)
    booking.items = [
        BookingItem(
            service_id=service.id,
            quantity=1,
            unit_price=Decimal("1000.00"),
            total_price=Decimal("1000.00"),
        )
    ]
    db.add(booking)
    await db.commit()
    return booking


# ── HTTP ───────────────────────────────────────────────────────────────────────

def auth_headers(user: User) -> dict:
    token, _ = create_access_token(user.id, user.role.value)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
async def client(session_factory, notifier, payment_provider, fake_redis):
    from main import app

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_redis] = lambda: fake_redis
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_payment_provider] = lambda: payment_provider

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
