"""
services/booking/router.py
Booking lifecycle endpoints. Every mutation goes through the
DispatchCoordinator; realtime events are sent after the commit as a
background task so a push failure can never undo the booking write.

Status:  pending → accepted → in_progress → completed
         any non-terminal → cancelled
"""

from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.booking.coordinator import (
    BOOKING_RELATIONS,
    DispatchCoordinator,
    enrich_booking,
    fetch_booking_with_relations,
    worker_profile_for,
)
from services.notification.fanout import RealtimeFanout, get_fanout
from shared.middleware.auth import require_any_role, require_homeowner
from shared.models.models import Booking, BookingStatus, User, UserRole
from shared.schemas.schemas import (
    BookingCreateRequest,
    BookingListResponse,
    BookingPayRequest,
    BookingPaymentFailedRequest,
    BookingResponse,
    BookingStatusUpdateRequest,
)
from shared.utils.exceptions import AuthorizationError

router = APIRouter(prefix="/bookings", tags=["Bookings"])


def _schedule_fanout(
    background_tasks: BackgroundTasks,
    fanout: RealtimeFanout,
    coordinator: DispatchCoordinator,
) -> None:
    if coordinator.outbox:
        background_tasks.add_task(fanout.deliver_all, list(coordinator.outbox))


# ── Create ────────────────────────────────────────────────────

@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreateRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(require_homeowner),
    db: AsyncSession = Depends(get_db),
    fanout: RealtimeFanout = Depends(get_fanout),
):
    """
    Request a worker. The worker must be `available` at the moment of
    booking. Sending payment_status=paid books and pays in one step: the
    booking is created already completed.
    """
    coordinator = DispatchCoordinator(db)
    booking = await coordinator.create_booking(current_user, data)
    _schedule_fanout(background_tasks, fanout, coordinator)
    return enrich_booking(booking)


# ── Read Endpoints ────────────────────────────────────────────

@router.get("", response_model=BookingListResponse)
async def list_my_bookings(
    status_filter: BookingStatus = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    current_user: User = Depends(require_any_role),
    db: AsyncSession = Depends(get_db),
):
    """Homeowners see bookings they created; workers see bookings assigned to them."""
    if current_user.role == UserRole.WORKER:
        profile = await worker_profile_for(db, current_user)
        if not profile:
            return BookingListResponse(items=[], total=0, page=page, page_size=page_size, pages=0)
        condition = Booking.worker_id == profile.id
    else:
        condition = Booking.homeowner_id == current_user.id

    filters = [condition]
    if status_filter:
        filters.append(Booking.status == status_filter)

    total = await db.scalar(select(func.count(Booking.id)).where(*filters)) or 0
    result = await db.execute(
        select(Booking)
        .options(*BOOKING_RELATIONS)
        .where(*filters)
        .order_by(Booking.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    bookings = result.scalars().all()
    return BookingListResponse(
        items=[enrich_booking(b) for b in bookings],
        total=total,
        page=page,
        page_size=page_size,
        pages=(total + page_size - 1) // page_size,
    )


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    current_user: User = Depends(require_any_role),
    db: AsyncSession = Depends(get_db),
):
    """Get booking details. Only the two parties to the booking may read it."""
    booking = await fetch_booking_with_relations(db, booking_id)

    if current_user.role == UserRole.HOMEOWNER:
        if booking.homeowner_id != current_user.id:
            raise AuthorizationError(reason="not the booking owner")
    else:
        profile = await worker_profile_for(db, current_user)
        if not profile or booking.worker_id != profile.id:
            raise AuthorizationError(reason="not the assigned worker")

    return enrich_booking(booking)


# ── Transitions ───────────────────────────────────────────────

@router.put("/{booking_id}/status", response_model=BookingResponse)
async def update_booking_status(
    booking_id: UUID,
    data: BookingStatusUpdateRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(require_any_role),
    db: AsyncSession = Depends(get_db),
    fanout: RealtimeFanout = Depends(get_fanout),
):
    """
    Generic status change. Workers drive the job forward; homeowners may
    only cancel, and any other value from them is rejected.
    """
    coordinator = DispatchCoordinator(db)
    booking = await coordinator.update_status(
        current_user, booking_id, BookingStatus(data.status), data.reason
    )
    _schedule_fanout(background_tasks, fanout, coordinator)
    return enrich_booking(booking)


@router.post("/{booking_id}/pay", response_model=BookingResponse)
async def pay_booking(
    booking_id: UUID,
    data: BookingPayRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(require_homeowner),
    db: AsyncSession = Depends(get_db),
    fanout: RealtimeFanout = Depends(get_fanout),
):
    """
    Record a confirmed payment. The booking becomes paid and completed and
    the worker is released. A second payment is a conflict.
    """
    coordinator = DispatchCoordinator(db)
    booking = await coordinator.pay(current_user, booking_id, data.method, data.amount)
    _schedule_fanout(background_tasks, fanout, coordinator)
    return enrich_booking(booking)


@router.post("/{booking_id}/payment-failed", response_model=BookingResponse)
async def payment_failed(
    booking_id: UUID,
    data: BookingPaymentFailedRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(require_homeowner),
    db: AsyncSession = Depends(get_db),
    fanout: RealtimeFanout = Depends(get_fanout),
):
    """Record a failed payment attempt. The booking can still be paid later."""
    coordinator = DispatchCoordinator(db)
    booking = await coordinator.record_payment_failure(
        current_user, booking_id, data.method, data.reason
    )
    _schedule_fanout(background_tasks, fanout, coordinator)
    return enrich_booking(booking)
