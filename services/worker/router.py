"""
services/worker/router.py
Worker profile management, detail view and text search.
The availability toggle here is the only availability write outside the
booking flow, and it is refused while a job is in flight.
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from config.database import get_db
from config.settings import settings
from services.booking.state_machine import IN_FLIGHT_STATUSES
from services.review.router import review_response
from shared.middleware.auth import require_any_role, require_worker
from shared.models.models import (
    Booking,
    Review,
    ServiceCategory,
    User,
    WorkerAvailability,
    WorkerProfile,
)
from shared.schemas.schemas import (
    WorkerDetailResponse,
    WorkerLocationUpdate,
    WorkerProfileResponse,
    WorkerProfileUpdate,
    WorkerSearchResponse,
)
from shared.utils.exceptions import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workers", tags=["Workers"])

RECENT_REVIEWS = 20


# ── Helpers ───────────────────────────────────────────────────

def worker_response(
    profile: WorkerProfile, distance_km: Optional[float] = None
) -> WorkerProfileResponse:
    """Profile plus display fields from the owning User (must be loaded)."""
    out = WorkerProfileResponse.model_validate(profile)
    out.name = profile.user.name
    out.phone = profile.user.phone
    out.profile_image = profile.user.profile_image
    out.distance_km = round(distance_km, 2) if distance_km is not None else None
    return out


async def _get_worker_or_404(worker_id: UUID, db: AsyncSession) -> WorkerProfile:
    result = await db.execute(
        select(WorkerProfile)
        .options(selectinload(WorkerProfile.user))
        .where(WorkerProfile.id == worker_id)
    )
    profile = result.scalar_one_or_none()
    if not profile:
        raise NotFoundError("Worker not found")
    return profile


async def _lock_own_profile(user: User, db: AsyncSession) -> WorkerProfile:
    result = await db.execute(
        select(WorkerProfile)
        .options(selectinload(WorkerProfile.user))
        .where(WorkerProfile.user_id == user.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    profile = result.scalar_one_or_none()
    if not profile:
        raise NotFoundError("Worker profile not found")
    return profile


async def _has_job_in_flight(profile: WorkerProfile, db: AsyncSession) -> bool:
    count = await db.scalar(
        select(func.count(Booking.id)).where(
            Booking.worker_id == profile.id,
            Booking.status.in_(IN_FLIGHT_STATUSES),
        )
    )
    return bool(count)


# ── Search / Read ─────────────────────────────────────────────

@router.get("/search", response_model=WorkerSearchResponse)
async def search_workers(
    city: Optional[str] = Query(None, max_length=100),
    state: Optional[str] = Query(None, max_length=100),
    service_category: Optional[ServiceCategory] = Query(None),
    current_user: User = Depends(require_any_role),
    db: AsyncSession = Depends(get_db),
):
    """Available workers by city/state, busiest and best rated first. No GPS needed."""
    if not city and not state:
        raise ValidationError(
            [
                {"field": "city", "message": "city or state is required"},
                {"field": "state", "message": "city or state is required"},
            ]
        )

    query = (
        select(WorkerProfile)
        .options(selectinload(WorkerProfile.user))
        .where(WorkerProfile.availability == WorkerAvailability.AVAILABLE)
    )
    if city:
        query = query.where(func.lower(WorkerProfile.city).like(f"%{city.lower()}%"))
    if state:
        query = query.where(func.lower(WorkerProfile.state).like(f"%{state.lower()}%"))
    if service_category:
        query = query.where(WorkerProfile.service_category == service_category)

    query = query.order_by(
        WorkerProfile.total_jobs.desc(), WorkerProfile.average_rating.desc()
    ).limit(settings.NEARBY_RESULT_LIMIT)

    result = await db.execute(query)
    items = [worker_response(p) for p in result.scalars()]
    return WorkerSearchResponse(items=items, total=len(items))


@router.get("/{worker_id}", response_model=WorkerDetailResponse)
async def get_worker(
    worker_id: UUID,
    current_user: User = Depends(require_any_role),
    db: AsyncSession = Depends(get_db),
):
    """Worker detail with their most recent reviews."""
    profile = await _get_worker_or_404(worker_id, db)

    result = await db.execute(
        select(Review)
        .options(selectinload(Review.reviewer))
        .where(Review.worker_id == profile.id)
        .order_by(Review.updated_at.desc())
        .limit(RECENT_REVIEWS)
    )
    return WorkerDetailResponse(
        **worker_response(profile).model_dump(),
        reviews=[review_response(r) for r in result.scalars()],
    )


# ── Self-service ──────────────────────────────────────────────

@router.put("/profile", response_model=WorkerProfileResponse)
async def update_profile(
    data: WorkerProfileUpdate,
    current_user: User = Depends(require_worker),
    db: AsyncSession = Depends(get_db),
):
    """
    Update own profile. Availability may be toggled between available and
    offline only while no booking is accepted or in progress.
    """
    updates = data.model_dump(exclude_unset=True, exclude_none=True)
    if not updates:
        raise ValidationError.single("body", "No fields to update")

    profile = await _lock_own_profile(current_user, db)

    availability = updates.pop("availability", None)
    if availability is not None:
        availability = WorkerAvailability(availability)
        if availability != profile.availability:
            if await _has_job_in_flight(profile, db):
                logger.warning(
                    "Availability toggle refused, job in flight",
                    extra={"worker_id": str(profile.id)},
                )
                raise ConflictError("Cannot change availability while a job is in progress")
            profile.availability = availability

    if updates.get("service_category") is not None:
        updates["service_category"] = ServiceCategory(updates["service_category"])
    for field, value in updates.items():
        setattr(profile, field, value)

    await db.commit()
    logger.info("Worker profile updated", extra={"worker_id": str(profile.id)})
    return worker_response(profile)


@router.put("/location", response_model=WorkerProfileResponse)
async def update_location(
    data: WorkerLocationUpdate,
    current_user: User = Depends(require_worker),
    db: AsyncSession = Depends(get_db),
):
    """Update own GPS position (and optionally the address text)."""
    profile = await _lock_own_profile(current_user, db)
    profile.latitude = data.latitude
    profile.longitude = data.longitude
    if data.address is not None:
        profile.address = data.address

    await db.commit()
    return worker_response(profile)
