"""
services/notification/journal.py
Durable, append-only record of user-facing notifications.
Rows are written inside the caller's transaction; live delivery is a
separate, best-effort step (see fanout.py).
"""

import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import Notification, NotificationCategory
from services.notification.fanout import RealtimeEvent


# ── Message templates ─────────────────────────────────────────

TEMPLATES = {
    "NEW_BOOKING": {
        "title": "New Booking Request",
        "message": "You have a new service request from {homeowner_name}.",
        "category": NotificationCategory.BOOKING,
    },
    "BOOKING_ACCEPTED": {
        "title": "Booking Accepted",
        "message": "{worker_name} accepted your {service} request.",
        "category": NotificationCategory.BOOKING,
    },
    "BOOKING_STARTED": {
        "title": "Work Started",
        "message": "{worker_name} has started work on your {service} request.",
        "category": NotificationCategory.BOOKING,
    },
    "WORK_COMPLETED": {
        "title": "Work Completed",
        "message": "Booking with {homeowner_name} is marked as completed.",
        "category": NotificationCategory.BOOKING,
    },
    "BOOKING_COMPLETED": {
        "title": "Booking Completed",
        "message": "Work by {worker_name} is marked as completed.",
        "category": NotificationCategory.BOOKING,
    },
    "BOOKING_CANCELLED": {
        "title": "Booking Cancelled",
        "message": "{actor_name} cancelled the {service} booking.",
        "category": NotificationCategory.BOOKING,
    },
    "PAYMENT_RECEIVED": {
        "title": "Work Completed",
        "message": "Payment of {currency}{amount} received via {method} for {service}.",
        "category": NotificationCategory.PAYMENT,
    },
    "PAYMENT_SUCCESS": {
        "title": "Payment Successful",
        "message": "Payment of {currency}{amount} to {worker_name} confirmed.",
        "category": NotificationCategory.PAYMENT,
    },
    "PAYMENT_FAILED": {
        "title": "Payment Failed",
        "message": "Payment for your {service} booking did not go through. You can try again.",
        "category": NotificationCategory.PAYMENT,
    },
    "REVIEW_RECEIVED": {
        "title": "New Review Received",
        "message": "{reviewer_name} left a {rating}-star review.",
        "category": NotificationCategory.BOOKING,
    },
}


class NotificationJournal:
    """Appends Notification rows on the caller's session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(
        self,
        user_id: uuid.UUID,
        template: str,
        booking_id: Optional[uuid.UUID] = None,
        data: Optional[dict] = None,
        **template_vars,
    ) -> Notification:
        template_def = TEMPLATES[template]
        notification = Notification(
            user_id=user_id,
            booking_id=booking_id,
            category=template_def["category"],
            title=template_def["title"].format(**template_vars),
            message=template_def["message"].format(**template_vars),
            data=data,
        )
        self.db.add(notification)
        await self.db.flush()
        return notification


def notification_event(notification: Notification) -> RealtimeEvent:
    """Live copy of a journal row, pushed as the `notification` event."""
    return RealtimeEvent(
        user_id=notification.user_id,
        kind="notification",
        payload={
            "id": str(notification.id),
            "title": notification.title,
            "message": notification.message,
            "category": notification.category.value,
            "booking_id": str(notification.booking_id) if notification.booking_id else None,
            **(notification.data or {}),
        },
    )
