"""
services/booking/coordinator.py
Dispatch coordinator: the single entry point for every booking mutation.

Each operation runs in one transaction on the request session:
  lock rows → validate against the state machine → write Booking and
  worker availability → append Notification rows → audit → commit.
Realtime events are only collected in `outbox`; the router hands them to
the fan-out as a background task once the commit has succeeded.

Lock order is always booking row first, then worker row.
"""

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from config.settings import settings
from services.booking.state_machine import (
    Actor,
    apply_rule,
    check_payment_transition,
    check_status_transition,
    initial_state,
)
from services.notification.fanout import RealtimeEvent
from services.notification.journal import NotificationJournal, notification_event
from services.review.rating import recompute_average_rating
from shared.models.models import (
    Booking,
    BookingAuditLog,
    BookingStatus,
    PaymentMethod,
    PaymentStatus,
    Review,
    ServiceCategory,
    User,
    UserRole,
    WorkerAvailability,
    WorkerProfile,
)
from shared.schemas.schemas import (
    BookingCreateRequest,
    BookingResponse,
    BookingReviewSummary,
)
from shared.utils.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

DEFAULT_ADDRESS = "Address not provided"


# ── Read helpers ──────────────────────────────────────────────

BOOKING_RELATIONS = (
    selectinload(Booking.homeowner),
    selectinload(Booking.worker).selectinload(WorkerProfile.user),
    selectinload(Booking.reviews),
)


async def fetch_booking_with_relations(db: AsyncSession, booking_id: uuid.UUID) -> Booking:
    result = await db.execute(
        select(Booking)
        .options(*BOOKING_RELATIONS)
        .where(Booking.id == booking_id)
        .execution_options(populate_existing=True)
    )
    booking = result.scalar_one_or_none()
    if not booking:
        raise NotFoundError("Booking not found")
    return booking


async def worker_profile_for(db: AsyncSession, user: User) -> Optional[WorkerProfile]:
    if user.role != UserRole.WORKER:
        return None
    result = await db.execute(select(WorkerProfile).where(WorkerProfile.user_id == user.id))
    return result.scalar_one_or_none()


def booking_lock_query(booking_id: uuid.UUID):
    return (
        select(Booking)
        .where(Booking.id == booking_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )


def worker_lock_query(worker_id: uuid.UUID):
    return (
        select(WorkerProfile)
        .where(WorkerProfile.id == worker_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )


def enrich_booking(booking: Booking, distance_km: Optional[float] = None) -> BookingResponse:
    """Booking plus homeowner/worker display fields and the homeowner's review."""
    data = {col.name: getattr(booking, col.name) for col in Booking.__table__.columns}
    homeowner = booking.homeowner
    worker = booking.worker
    worker_user = worker.user if worker else None
    review = next(
        (r for r in booking.reviews if r.reviewer_id == booking.homeowner_id), None
    )
    return BookingResponse(
        **data,
        homeowner_name=homeowner.name if homeowner else None,
        homeowner_phone=homeowner.phone if homeowner else None,
        homeowner_image=homeowner.profile_image if homeowner else None,
        worker_user_id=worker.user_id if worker else None,
        worker_name=worker_user.name if worker_user else None,
        worker_phone=worker_user.phone if worker_user else None,
        worker_image=worker_user.profile_image if worker_user else None,
        worker_hourly_rate=worker.hourly_rate if worker else None,
        worker_average_rating=worker.average_rating if worker else None,
        review=BookingReviewSummary.model_validate(review) if review else None,
        distance_km=distance_km,
    )


def _money(amount: Optional[Decimal]) -> str:
    return f"{(amount or Decimal('0')):.2f}"


def _method_label(method: PaymentMethod) -> str:
    return "Mock Wallet" if method == PaymentMethod.MOCK else method.value.upper()


# ── Coordinator ───────────────────────────────────────────────

class DispatchCoordinator:
    """
    One instance per request. Owns the Booking + availability write for
    every operation and collects the realtime events to send afterwards.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.journal = NotificationJournal(db)
        self.outbox: List[RealtimeEvent] = []

    # ── Internals ─────────────────────────────────────────────

    def _emit(self, user_id: uuid.UUID, kind: str, payload: dict) -> None:
        self.outbox.append(RealtimeEvent(user_id=user_id, kind=kind, payload=payload))

    async def _notify(
        self,
        user_id: uuid.UUID,
        template: str,
        booking: Booking,
        data: Optional[dict] = None,
        **template_vars,
    ) -> None:
        notification = await self.journal.record(
            user_id,
            template,
            booking_id=booking.id,
            data={"booking_id": str(booking.id), **(data or {})},
            **template_vars,
        )
        self.outbox.append(notification_event(notification))

    async def _lock_booking(self, booking_id: uuid.UUID) -> Booking:
        result = await self.db.execute(booking_lock_query(booking_id))
        booking = result.scalar_one_or_none()
        if not booking:
            raise NotFoundError("Booking not found")
        return booking

    async def _lock_worker(self, worker_id: uuid.UUID) -> WorkerProfile:
        result = await self.db.execute(worker_lock_query(worker_id))
        worker = result.scalar_one_or_none()
        if not worker:
            raise NotFoundError("Worker not found")
        return worker

    async def _actor_for(self, booking: Booking, user: User) -> Actor:
        """Which side of the booking the caller is on. Non-parties are rejected."""
        if user.role == UserRole.HOMEOWNER and booking.homeowner_id == user.id:
            return Actor.HOMEOWNER
        if user.role == UserRole.WORKER:
            profile = await worker_profile_for(self.db, user)
            if profile and booking.worker_id == profile.id:
                return Actor.WORKER
        logger.warning(
            "Rejected non-party access to booking",
            extra={"booking_id": str(booking.id), "user_id": str(user.id)},
        )
        raise AuthorizationError(reason="not a party to the booking")

    def _require_owner(self, booking: Booking, user: User) -> None:
        if booking.homeowner_id != user.id:
            logger.warning(
                "Rejected non-owner booking operation",
                extra={"booking_id": str(booking.id), "user_id": str(user.id)},
            )
            raise AuthorizationError(reason="not the booking owner")

    def _audit(
        self,
        booking: Booking,
        from_status: Optional[BookingStatus],
        to_status: BookingStatus,
        changed_by: Optional[User],
        reason: Optional[str] = None,
    ) -> None:
        """Append an immutable audit log entry for every status change."""
        self.db.add(
            BookingAuditLog(
                booking_id=booking.id,
                from_status=from_status.value if from_status else None,
                to_status=to_status.value,
                changed_by_id=changed_by.id if changed_by else None,
                reason=reason,
            )
        )

    def _booking_payload(self, booking: Booking, **extra) -> dict:
        return {
            "booking_id": str(booking.id),
            **extra,
            "booking": enrich_booking(booking).model_dump(mode="json"),
        }

    async def _notify_paid(self, booking: Booking) -> None:
        worker_user_id = booking.worker.user_id
        amount = _money(booking.payment_amount or booking.estimated_price)
        service = booking.service_category.value if booking.service_category else "service"
        await self._notify(
            worker_user_id,
            "PAYMENT_RECEIVED",
            booking,
            currency=settings.CURRENCY_LABEL,
            amount=amount,
            method=_method_label(booking.payment_method),
            service=service,
        )
        await self._notify(
            booking.homeowner_id,
            "PAYMENT_SUCCESS",
            booking,
            currency=settings.CURRENCY_LABEL,
            amount=amount,
            worker_name=booking.worker.user.name,
        )
        payload = self._booking_payload(booking)
        self._emit(worker_user_id, "booking_completed", payload)
        self._emit(booking.homeowner_id, "booking_completed", payload)

    # ── Create ────────────────────────────────────────────────

    async def create_booking(self, homeowner: User, data: BookingCreateRequest) -> Booking:
        """
        Create a booking against an available worker.
        paymentStatus=paid creates it already completed (book-and-pay).
        """
        payment_status = PaymentStatus(data.payment_status or PaymentStatus.PENDING_PAYMENT)
        payment_method = PaymentMethod(data.payment_method or PaymentMethod.NONE)
        if payment_status == PaymentStatus.PAID and payment_method == PaymentMethod.NONE:
            raise ValidationError.single(
                "payment_method", "A payment method is required when paying at booking time"
            )

        worker = await self._lock_worker(data.worker_id)
        if worker.availability != WorkerAvailability.AVAILABLE:
            logger.warning(
                "Booking rejected, worker not available",
                extra={"worker_id": str(worker.id), "availability": worker.availability.value},
            )
            raise ConflictError("Worker is not currently available")

        if data.payment_amount is not None:
            payment_amount = data.payment_amount
        elif payment_status == PaymentStatus.PAID:
            payment_amount = data.estimated_price
        else:
            payment_amount = None

        status, rule = initial_state(payment_status)
        now = datetime.now(timezone.utc)
        booking = Booking(
            homeowner_id=homeowner.id,
            worker_id=worker.id,
            service_category=(
                ServiceCategory(data.service_category) if data.service_category else None
            ),
            description=data.description,
            booking_date=data.booking_date,
            address=data.address or DEFAULT_ADDRESS,
            latitude=data.latitude,
            longitude=data.longitude,
            payment_status=payment_status,
            payment_method=payment_method,
            estimated_hours=data.estimated_hours,
            estimated_price=data.estimated_price,
            payment_amount=payment_amount,
        )
        apply_rule(booking, worker, status, rule, now)
        if rule is not None and rule.completes:
            worker.total_jobs += 1
        self.db.add(booking)
        await self.db.flush()
        self._audit(booking, None, status, homeowner)

        booking = await fetch_booking_with_relations(self.db, booking.id)
        if booking.status == BookingStatus.COMPLETED:
            await self._notify_paid(booking)
        else:
            await self._notify(
                worker.user_id,
                "NEW_BOOKING",
                booking,
                homeowner_name=homeowner.name,
            )
            self._emit(worker.user_id, "new_booking", self._booking_payload(booking))

        await self.db.commit()
        logger.info(
            "Booking created",
            extra={
                "booking_id": str(booking.id),
                "worker_id": str(worker.id),
                "status": booking.status.value,
            },
        )
        return booking

    # ── Status ────────────────────────────────────────────────

    async def update_status(
        self,
        user: User,
        booking_id: uuid.UUID,
        target: BookingStatus,
        reason: Optional[str] = None,
    ) -> Booking:
        booking = await self._lock_booking(booking_id)
        actor = await self._actor_for(booking, user)
        try:
            rule = check_status_transition(booking.status, target, actor)
        except (AuthorizationError, ConflictError):
            logger.warning(
                "Status change rejected",
                extra={
                    "booking_id": str(booking.id),
                    "from": booking.status.value,
                    "to": target.value,
                    "actor": actor.value,
                },
            )
            raise

        worker = await self._lock_worker(booking.worker_id)
        if target == BookingStatus.ACCEPTED and worker.availability == WorkerAvailability.BUSY:
            raise ConflictError("Worker already has a job in progress")

        previous = booking.status
        now = datetime.now(timezone.utc)
        apply_rule(booking, worker, target, rule, now)
        if rule.completes:
            worker.total_jobs += 1
        if target == BookingStatus.CANCELLED:
            booking.cancelled_at = now
            booking.cancelled_by = actor.value
            booking.cancellation_reason = reason
        self._audit(booking, previous, target, user, reason)
        await self.db.flush()

        booking = await fetch_booking_with_relations(self.db, booking.id)
        worker_user_id = booking.worker.user_id
        homeowner_id = booking.homeowner_id
        service = booking.service_category.value if booking.service_category else "service"

        if target == BookingStatus.ACCEPTED:
            await self._notify(
                homeowner_id, "BOOKING_ACCEPTED", booking,
                worker_name=booking.worker.user.name, service=service,
            )
        elif target == BookingStatus.IN_PROGRESS:
            await self._notify(
                homeowner_id, "BOOKING_STARTED", booking,
                worker_name=booking.worker.user.name, service=service,
            )
        elif target == BookingStatus.COMPLETED:
            await self._notify(
                worker_user_id, "WORK_COMPLETED", booking,
                homeowner_name=booking.homeowner.name,
            )
            await self._notify(
                homeowner_id, "BOOKING_COMPLETED", booking,
                worker_name=booking.worker.user.name,
            )
            completed = self._booking_payload(booking)
            self._emit(worker_user_id, "booking_completed", completed)
            self._emit(homeowner_id, "booking_completed", completed)
        elif target == BookingStatus.CANCELLED:
            counterparty = worker_user_id if actor == Actor.HOMEOWNER else homeowner_id
            await self._notify(
                counterparty, "BOOKING_CANCELLED", booking,
                data={"reason": reason} if reason else None,
                actor_name=user.name, service=service,
            )

        updated = self._booking_payload(booking, status=target.value)
        self._emit(worker_user_id, "booking_status_updated", updated)
        self._emit(homeowner_id, "booking_status_updated", updated)

        await self.db.commit()
        logger.info(
            "Booking status changed",
            extra={
                "booking_id": str(booking.id),
                "from": previous.value,
                "to": target.value,
                "actor": actor.value,
            },
        )
        return booking

    # ── Payment ───────────────────────────────────────────────

    async def pay(
        self,
        user: User,
        booking_id: uuid.UUID,
        method: PaymentMethod,
        amount: Optional[Decimal] = None,
    ) -> Booking:
        """Accept a payment confirmation as fact: booking becomes paid and completed."""
        method = PaymentMethod(method)
        if method == PaymentMethod.NONE:
            raise ValidationError.single("method", "Valid payment method is required")

        booking = await self._lock_booking(booking_id)
        self._require_owner(booking, user)
        try:
            rule = check_payment_transition(booking.status, booking.payment_status, PaymentStatus.PAID)
        except ConflictError as exc:
            logger.warning(
                "Payment rejected",
                extra={"booking_id": str(booking.id), "reason": exc.detail},
            )
            raise
        worker = await self._lock_worker(booking.worker_id)

        if amount is None:
            amount = booking.payment_amount if booking.payment_amount is not None else booking.estimated_price
        if amount is not None:
            amount = max(amount, Decimal("0"))

        booking.payment_status = PaymentStatus.PAID
        booking.payment_method = method
        booking.payment_amount = amount

        if rule is not None:
            previous = booking.status
            apply_rule(booking, worker, BookingStatus.COMPLETED, rule, datetime.now(timezone.utc))
            worker.total_jobs += 1
            self._audit(booking, previous, BookingStatus.COMPLETED, user, "payment confirmed")
        await self.db.flush()

        booking = await fetch_booking_with_relations(self.db, booking.id)
        await self._notify_paid(booking)

        await self.db.commit()
        logger.info(
            "Booking paid",
            extra={"booking_id": str(booking.id), "method": method.value},
        )
        return booking

    async def record_payment_failure(
        self,
        user: User,
        booking_id: uuid.UUID,
        method: Optional[PaymentMethod] = None,
        reason: Optional[str] = None,
    ) -> Booking:
        booking = await self._lock_booking(booking_id)
        self._require_owner(booking, user)
        check_payment_transition(booking.status, booking.payment_status, PaymentStatus.PAYMENT_FAILED)

        booking.payment_status = PaymentStatus.PAYMENT_FAILED
        if method is not None and PaymentMethod(method) != PaymentMethod.NONE:
            booking.payment_method = PaymentMethod(method)
        await self.db.flush()

        booking = await fetch_booking_with_relations(self.db, booking.id)
        service = booking.service_category.value if booking.service_category else "service"
        await self._notify(
            booking.homeowner_id, "PAYMENT_FAILED", booking,
            data={"reason": reason} if reason else None,
            service=service,
        )
        updated = self._booking_payload(booking, status=booking.status.value)
        self._emit(booking.worker.user_id, "booking_status_updated", updated)
        self._emit(booking.homeowner_id, "booking_status_updated", updated)

        await self.db.commit()
        logger.info("Booking payment failed", extra={"booking_id": str(booking.id)})
        return booking

    # ── Review ────────────────────────────────────────────────

    async def submit_review(
        self,
        user: User,
        booking_id: uuid.UUID,
        rating: int,
        comment: Optional[str] = None,
    ) -> Tuple[Review, Booking, Decimal]:
        """Insert or overwrite the homeowner's review, then recompute the worker's rating."""
        result = await self.db.execute(select(Booking).where(Booking.id == booking_id))
        booking = result.scalar_one_or_none()
        if not booking:
            raise NotFoundError("Booking not found")
        self._require_owner(booking, user)
        if booking.status != BookingStatus.COMPLETED:
            raise ConflictError("You can only review completed bookings")

        worker = await self._lock_worker(booking.worker_id)

        result = await self.db.execute(
            select(Review).where(
                Review.booking_id == booking.id,
                Review.reviewer_id == user.id,
            )
        )
        review = result.scalar_one_or_none()
        if review:
            review.rating = rating
            review.comment = comment
            review.updated_at = datetime.now(timezone.utc)
        else:
            review = Review(
                booking_id=booking.id,
                reviewer_id=user.id,
                worker_id=worker.id,
                rating=rating,
                comment=comment,
            )
            self.db.add(review)
        await self.db.flush()

        average = await recompute_average_rating(self.db, worker.id)
        worker.average_rating = average
        await self.db.flush()

        booking = await fetch_booking_with_relations(self.db, booking.id)
        await self._notify(
            worker.user_id, "REVIEW_RECEIVED", booking,
            data={"rating": rating},
            reviewer_name=user.name or "A homeowner", rating=rating,
        )
        payload = self._booking_payload(booking, rating=rating, comment=comment)
        self._emit(worker.user_id, "review_added", payload)
        self._emit(booking.homeowner_id, "review_added", payload)

        await self.db.commit()
        logger.info(
            "Review submitted",
            extra={"booking_id": str(booking.id), "worker_id": str(worker.id), "rating": rating},
        )
        return review, booking, average
