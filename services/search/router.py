"""
services/search/router.py
Geo-proximity discovery for both sides of the marketplace:
  - homeowners find available workers near a point
  - workers find pending requests near a point
Both go through shared.utils.geo.find_nearby. SQL only narrows the
candidate set with a lat/lng bounding box; the exact haversine cut,
ordering and limit happen in find_nearby.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from config.database import get_db
from config.settings import settings
from services.booking.coordinator import BOOKING_RELATIONS, enrich_booking
from services.worker.router import worker_response
from shared.middleware.auth import require_any_role, require_worker
from shared.models.models import (
    Booking,
    BookingStatus,
    ServiceCategory,
    User,
    WorkerAvailability,
    WorkerProfile,
)
from shared.schemas.schemas import NearbyRequestsResponse, NearbyWorkersResponse
from shared.utils.geo import bounding_box, find_nearby

router = APIRouter(prefix="/search", tags=["Search"])


def _within_box(model, lat: float, lng: float, radius_km: float) -> list:
    min_lat, max_lat, min_lng, max_lng = bounding_box((lat, lng), radius_km)
    return [
        model.latitude.is_not(None),
        model.longitude.is_not(None),
        model.latitude.between(min_lat, max_lat),
        model.longitude.between(min_lng, max_lng),
    ]


@router.get("/workers", response_model=NearbyWorkersResponse)
async def search_nearby_workers(
    lat: float = Query(..., ge=-90, le=90, description="Search origin latitude"),
    lng: float = Query(..., ge=-180, le=180, description="Search origin longitude"),
    radius_km: float = Query(
        default=settings.NEARBY_DEFAULT_RADIUS_KM, gt=0, le=settings.NEARBY_MAX_RADIUS_KM
    ),
    service_category: Optional[ServiceCategory] = Query(None),
    limit: int = Query(default=settings.NEARBY_RESULT_LIMIT, ge=1, le=settings.NEARBY_RESULT_LIMIT),
    current_user: User = Depends(require_any_role),
    db: AsyncSession = Depends(get_db),
):
    """Available workers within radius_km of (lat, lng), nearest first."""
    query = (
        select(WorkerProfile)
        .options(selectinload(WorkerProfile.user))
        .where(
            WorkerProfile.availability == WorkerAvailability.AVAILABLE,
            *_within_box(WorkerProfile, lat, lng, radius_km),
        )
    )
    if service_category:
        query = query.where(WorkerProfile.service_category == service_category)

    result = await db.execute(query)
    ranked = find_nearby(result.scalars().all(), (lat, lng), radius_km, limit)
    items = [worker_response(profile, distance) for profile, distance in ranked]
    return NearbyWorkersResponse(items=items, total=len(items), radius_km=radius_km)


@router.get("/requests", response_model=NearbyRequestsResponse)
async def search_nearby_requests(
    lat: float = Query(..., ge=-90, le=90, description="Worker latitude"),
    lng: float = Query(..., ge=-180, le=180, description="Worker longitude"),
    radius_km: float = Query(
        default=settings.NEARBY_DEFAULT_RADIUS_KM, gt=0, le=settings.NEARBY_MAX_RADIUS_KM
    ),
    service_category: Optional[ServiceCategory] = Query(None),
    limit: int = Query(default=settings.NEARBY_RESULT_LIMIT, ge=1, le=settings.NEARBY_RESULT_LIMIT),
    current_user: User = Depends(require_worker),
    db: AsyncSession = Depends(get_db),
):
    """Pending (not yet accepted) requests within radius_km, nearest first."""
    query = (
        select(Booking)
        .options(*BOOKING_RELATIONS)
        .where(
            Booking.status == BookingStatus.PENDING,
            *_within_box(Booking, lat, lng, radius_km),
        )
    )
    if service_category:
        query = query.where(Booking.service_category == service_category)

    result = await db.execute(query)
    ranked = find_nearby(result.scalars().all(), (lat, lng), radius_km, limit)
    items = [enrich_booking(booking, round(distance, 2)) for booking, distance in ranked]
    return NearbyRequestsResponse(items=items, total=len(items), radius_km=radius_km)
