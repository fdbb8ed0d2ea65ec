"""
tests/test_concurrency.py
Concurrent coordinator calls against a file-backed SQLite database whose
transactions start with BEGIN IMMEDIATE, so writers queue the way row
locks queue them on PostgreSQL.
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config.database import Base
from services.booking.coordinator import (
    DispatchCoordinator,
    booking_lock_query,
    worker_lock_query,
)
from shared.models.models import (
    Booking,
    BookingStatus,
    PaymentMethod,
    PaymentStatus,
    User,
    UserRole,
    WorkerAvailability,
    WorkerProfile,
)
from shared.utils.exceptions import ConflictError
from tests.conftest import make_user, make_worker


@pytest_asyncio.fixture
async def serial_factory(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}",
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    await engine.dispose()


def _booking(homeowner: User, worker: WorkerProfile, completed: bool = False) -> Booking:
    return Booking(
        id=uuid.uuid4(),
        homeowner_id=homeowner.id,
        worker_id=worker.id,
        description="Bathroom tap drips",
        booking_date=datetime.now(timezone.utc) + timedelta(days=1),
        address="4 Oak Lane",
        status=BookingStatus.COMPLETED if completed else BookingStatus.PENDING,
        payment_status=PaymentStatus.PAID if completed else PaymentStatus.PENDING_PAYMENT,
        payment_method=PaymentMethod.CASH if completed else PaymentMethod.NONE,
        completed_at=datetime.now(timezone.utc) if completed else None,
    )


def test_lock_queries_select_for_update():
    for query in (booking_lock_query(uuid.uuid4()), worker_lock_query(uuid.uuid4())):
        assert str(query.compile(dialect=postgresql.dialect())).rstrip().endswith("FOR UPDATE")
        assert "FOR UPDATE" not in str(query.compile(dialect=sqlite.dialect()))


@pytest.mark.asyncio
async def test_concurrent_accepts_for_one_worker(serial_factory):
    async with serial_factory() as db:
        homeowner = await make_user(db, "Hannah Homeowner", UserRole.HOMEOWNER)
        worker = await make_worker(db, "Walter Worker")
        worker_user = await db.get(User, worker.user_id)
        first, second = _booking(homeowner, worker), _booking(homeowner, worker)
        db.add_all([first, second])
        await db.commit()

    async def accept(booking_id):
        async with serial_factory() as db:
            return await DispatchCoordinator(db).update_status(
                worker_user, booking_id, BookingStatus.ACCEPTED
            )

    results = await asyncio.gather(
        accept(first.id), accept(second.id), return_exceptions=True
    )

    accepted = [r for r in results if isinstance(r, Booking)]
    conflicts = [r for r in results if isinstance(r, ConflictError)]
    assert len(accepted) == 1
    assert len(conflicts) == 1

    async with serial_factory() as db:
        stored_worker = await db.get(WorkerProfile, worker.id)
        assert stored_worker.availability == WorkerAvailability.BUSY
        statuses = sorted([
            (await db.get(Booking, first.id)).status.value,
            (await db.get(Booking, second.id)).status.value,
        ])
        assert statuses == ["accepted", "pending"]


@pytest.mark.asyncio
async def test_concurrent_reviews_recompute_over_both(serial_factory):
    async with serial_factory() as db:
        worker = await make_worker(db, "Walter Worker")
        owners = [
            await make_user(db, "Hannah Homeowner", UserRole.HOMEOWNER),
            await make_user(db, "Oscar Other", UserRole.HOMEOWNER),
        ]
        bookings = [_booking(owner, worker, completed=True) for owner in owners]
        db.add_all(bookings)
        await db.commit()

    async def review(owner, booking, rating):
        async with serial_factory() as db:
            return await DispatchCoordinator(db).submit_review(owner, booking.id, rating)

    results = await asyncio.gather(
        review(owners[0], bookings[0], 5),
        review(owners[1], bookings[1], 2),
    )

    # Whichever commits last has seen both reviews.
    assert Decimal("3.50") in [average for _, _, average in results]
    async with serial_factory() as db:
        stored_worker = await db.get(WorkerProfile, worker.id)
        assert stored_worker.average_rating == Decimal("3.50")
