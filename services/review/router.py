"""
services/review/router.py
Rating and review management.
"""

from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from config.database import get_db
from services.booking.coordinator import DispatchCoordinator, enrich_booking
from services.notification.fanout import RealtimeFanout, get_fanout
from shared.middleware.auth import require_homeowner
from shared.models.models import Review, User
from shared.schemas.schemas import ReviewCreateRequest, ReviewResponse, ReviewSubmitResponse

router = APIRouter(tags=["Reviews"])


def review_response(review: Review) -> ReviewResponse:
    out = ReviewResponse.model_validate(review)
    out.reviewer_name = review.reviewer.name if review.reviewer else None
    return out


@router.post("/bookings/{booking_id}/review", response_model=ReviewSubmitResponse)
async def submit_review(
    booking_id: UUID,
    data: ReviewCreateRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(require_homeowner),
    db: AsyncSession = Depends(get_db),
    fanout: RealtimeFanout = Depends(get_fanout),
):
    """
    Submit or update a review for a completed booking.
    - Only the homeowner who made the booking can review
    - One review per (booking, reviewer); resubmitting overwrites it
    - Worker average is recomputed from all reviews every time
    """
    coordinator = DispatchCoordinator(db)
    review, booking, average = await coordinator.submit_review(
        current_user, booking_id, data.rating, data.comment
    )
    if coordinator.outbox:
        background_tasks.add_task(fanout.deliver_all, list(coordinator.outbox))

    out = ReviewResponse.model_validate(review)
    out.reviewer_name = current_user.name
    return ReviewSubmitResponse(
        review=out,
        booking=enrich_booking(booking),
        worker_average_rating=average,
    )


@router.get("/reviews/worker/{worker_id}", response_model=list[ReviewResponse])
async def get_worker_reviews(
    worker_id: UUID,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
):
    """Public: reviews for a specific worker, newest first."""
    result = await db.execute(
        select(Review)
        .options(selectinload(Review.reviewer))
        .where(Review.worker_id == worker_id)
        .order_by(Review.updated_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return [review_response(r) for r in result.scalars()]
