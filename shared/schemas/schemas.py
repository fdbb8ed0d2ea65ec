"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the dispatch API.
Request models validate once at the boundary; FastAPI reports every
offending field together.
"""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from config.settings import settings
from shared.models.models import (
    BookingStatus,
    PaymentMethod,
    PaymentStatus,
    ServiceCategory,
    WorkerAvailability,
)


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class PaginatedResponse(BaseSchema):
    items: List[Any]
    total: int
    page: int
    page_size: int
    pages: int


# Largest values the Numeric(5,2) hours and Numeric(10,2) money columns hold.
MAX_HOURS = Decimal("999.99")
MAX_MONEY = Decimal("99999999.99")


def _clamp_non_negative(v: Optional[Decimal]) -> Optional[Decimal]:
    if v is None:
        return None
    return max(v, Decimal("0"))


def _blank_to_none(v: Optional[str]) -> Optional[str]:
    if v is None:
        return None
    v = v.strip()
    return v or None


# ── Worker ────────────────────────────────────────────────────

class WorkerProfileResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    service_category: str
    experience_years: int
    hourly_rate: Decimal
    min_charge: Decimal
    bio: Optional[str]
    skills: Optional[str]
    availability: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    verified: bool
    total_jobs: int
    average_rating: Decimal
    # Injected from User join
    name: Optional[str] = None
    phone: Optional[str] = None
    profile_image: Optional[str] = None
    distance_km: Optional[float] = None  # From geo ranking


class WorkerProfileUpdate(BaseSchema):
    service_category: Optional[ServiceCategory] = None
    experience_years: Optional[int] = Field(None, ge=0, le=70)
    hourly_rate: Optional[Decimal] = Field(None, ge=0, le=MAX_MONEY)
    min_charge: Optional[Decimal] = Field(None, ge=0, le=MAX_MONEY)
    bio: Optional[str] = Field(None, max_length=2000)
    skills: Optional[str] = Field(None, max_length=1000)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    address: Optional[str] = Field(None, max_length=500)
    city: Optional[str] = Field(None, max_length=100)
    state: Optional[str] = Field(None, max_length=100)
    zip_code: Optional[str] = Field(None, max_length=20)
    license_number: Optional[str] = Field(None, max_length=100)
    availability: Optional[WorkerAvailability] = None

    @field_validator("availability")
    @classmethod
    def validate_availability(cls, v):
        if v == WorkerAvailability.BUSY:
            raise ValueError("busy is set by the booking flow, not by hand")
        return v


class WorkerLocationUpdate(BaseSchema):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    address: Optional[str] = Field(None, max_length=500)


class WorkerSearchResponse(BaseSchema):
    items: List[WorkerProfileResponse]
    total: int


class WorkerDetailResponse(WorkerProfileResponse):
    reviews: List["ReviewResponse"] = []


# ── Booking ───────────────────────────────────────────────────

class BookingCreateRequest(BaseSchema):
    worker_id: uuid.UUID
    description: str = Field(..., min_length=1, max_length=2000)
    booking_date: datetime
    service_category: Optional[ServiceCategory] = None
    address: Optional[str] = Field(None, max_length=500)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    estimated_hours: Optional[Decimal] = Field(None, le=MAX_HOURS)
    estimated_price: Optional[Decimal] = Field(None, le=MAX_MONEY)
    payment_status: Optional[PaymentStatus] = None
    payment_method: Optional[PaymentMethod] = None
    payment_amount: Optional[Decimal] = Field(None, le=MAX_MONEY)

    @field_validator("description")
    @classmethod
    def validate_description(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Description is required")
        return v

    @field_validator("booking_date")
    @classmethod
    def validate_booking_date(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            v = v.replace(tzinfo=timezone.utc)
        grace = timedelta(minutes=settings.BOOKING_DATE_GRACE_MINUTES)
        if v < datetime.now(timezone.utc) - grace:
            raise ValueError("Booking date cannot be in the past")
        return v

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: Optional[str]) -> Optional[str]:
        return _blank_to_none(v)

    @field_validator("estimated_hours", "estimated_price", "payment_amount")
    @classmethod
    def clamp_amounts(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        return _clamp_non_negative(v)

    @field_validator("payment_status")
    @classmethod
    def validate_initial_payment_status(cls, v):
        if v == PaymentStatus.PAYMENT_FAILED:
            raise ValueError("A booking can only start as pending_payment or paid")
        return v


class BookingStatusUpdateRequest(BaseSchema):
    status: BookingStatus
    reason: Optional[str] = Field(None, max_length=500)


class BookingPayRequest(BaseSchema):
    method: PaymentMethod
    amount: Optional[Decimal] = Field(None, le=MAX_MONEY)

    @field_validator("method")
    @classmethod
    def validate_method(cls, v):
        if v == PaymentMethod.NONE:
            raise ValueError("Valid payment method is required")
        return v

    @field_validator("amount")
    @classmethod
    def clamp_amount(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        return _clamp_non_negative(v)


class BookingPaymentFailedRequest(BaseSchema):
    method: Optional[PaymentMethod] = None
    reason: Optional[str] = Field(None, max_length=500)


class BookingReviewSummary(BaseSchema):
    id: uuid.UUID
    rating: int
    comment: Optional[str]
    updated_at: datetime


class BookingResponse(BaseSchema):
    id: uuid.UUID
    homeowner_id: uuid.UUID
    worker_id: uuid.UUID
    service_category: Optional[str]
    description: str
    booking_date: datetime
    address: str
    latitude: Optional[float]
    longitude: Optional[float]
    status: str
    payment_status: str
    payment_method: str
    estimated_hours: Optional[Decimal]
    estimated_price: Optional[Decimal]
    payment_amount: Optional[Decimal]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    cancelled_by: Optional[str]
    cancellation_reason: Optional[str]
    created_at: datetime
    updated_at: datetime
    # Joined
    homeowner_name: Optional[str] = None
    homeowner_phone: Optional[str] = None
    homeowner_image: Optional[str] = None
    worker_user_id: Optional[uuid.UUID] = None
    worker_name: Optional[str] = None
    worker_phone: Optional[str] = None
    worker_image: Optional[str] = None
    worker_hourly_rate: Optional[Decimal] = None
    worker_average_rating: Optional[Decimal] = None
    review: Optional[BookingReviewSummary] = None
    distance_km: Optional[float] = None


class BookingListResponse(PaginatedResponse):
    items: List[BookingResponse]


# ── Search ────────────────────────────────────────────────────

class NearbyWorkersResponse(BaseSchema):
    items: List[WorkerProfileResponse]
    total: int
    radius_km: float


class NearbyRequestsResponse(BaseSchema):
    items: List[BookingResponse]
    total: int
    radius_km: float


# ── Review ────────────────────────────────────────────────────

class ReviewCreateRequest(BaseSchema):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=settings.REVIEW_COMMENT_MAX_LENGTH)

    @field_validator("comment")
    @classmethod
    def validate_comment(cls, v: Optional[str]) -> Optional[str]:
        return _blank_to_none(v)


class ReviewResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    reviewer_id: uuid.UUID
    worker_id: uuid.UUID
    rating: int
    comment: Optional[str]
    created_at: datetime
    updated_at: datetime
    reviewer_name: Optional[str] = None


class ReviewSubmitResponse(BaseSchema):
    review: ReviewResponse
    booking: BookingResponse
    worker_average_rating: Decimal


# ── Notification ──────────────────────────────────────────────

class NotificationResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    booking_id: Optional[uuid.UUID]
    category: str
    title: str
    message: str
    data: Optional[Dict[str, Any]] = None
    is_read: bool
    read_at: Optional[datetime]
    created_at: datetime


class UnreadCountResponse(BaseSchema):
    unread: int


# ── Generic ───────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True


WorkerDetailResponse.model_rebuild()
