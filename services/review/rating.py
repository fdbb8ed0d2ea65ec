"""
services/review/rating.py
Worker rating aggregate. Always a full recompute over every review of the
worker, rounded half-up to two decimals; 0.00 when there are none.
"""

import uuid
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import Review

TWO_PLACES = Decimal("0.01")
ZERO_RATING = Decimal("0.00")


def mean_rating(ratings: Iterable[int]) -> Decimal:
    ratings = list(ratings)
    if not ratings:
        return ZERO_RATING
    total = Decimal(sum(ratings))
    return (total / Decimal(len(ratings))).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


async def recompute_average_rating(db: AsyncSession, worker_id: uuid.UUID) -> Decimal:
    """
    Mean of all ratings for worker_id as seen by the current transaction.
    Call with the worker row locked so concurrent reviews serialize.
    """
    result = await db.scalars(select(Review.rating).where(Review.worker_id == worker_id))
    return mean_rating(result.all())
