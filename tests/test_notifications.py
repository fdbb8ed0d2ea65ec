"""
tests/test_notifications.py
Tests for the notification journal, read/unread handling and the live
WebSocket session.
"""

import uuid

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from services.notification.journal import NotificationJournal, notification_event
from shared.models.models import Notification, NotificationCategory, User
from tests.conftest import auth_headers, booking_payload, reload


@pytest.mark.asyncio
async def test_journal_formats_template(db_session: AsyncSession, homeowner: User):
    journal = NotificationJournal(db_session)

    notification = await journal.record(
        homeowner.id,
        "REVIEW_RECEIVED",
        data={"rating": 4},
        reviewer_name="Hannah",
        rating=4,
    )
    await db_session.commit()

    assert notification.title == "New Review Received"
    assert notification.message == "Hannah left a 4-star review."
    assert notification.category == NotificationCategory.BOOKING
    assert notification.is_read is False

    event = notification_event(notification)
    assert event.kind == "notification"
    assert event.user_id == homeowner.id
    assert event.payload["rating"] == 4
    assert event.payload["id"] == str(notification.id)


@pytest.mark.asyncio
async def test_notification_written_without_live_session(
    client: AsyncClient,
    homeowner: User,
    worker_user: User,
    worker_profile,
    registry,
):
    """The journal row exists even when nobody is connected."""
    assert registry.count(worker_user.id) == 0

    created = await client.post(
        "/bookings", headers=auth_headers(homeowner), json=booking_payload(worker_profile)
    )
    assert created.status_code == 201

    response = await client.get("/notifications", headers=auth_headers(worker_user))
    assert response.status_code == 200
    items = response.json()
    assert len(items) == 1
    assert items[0]["title"] == "New Booking Request"
    assert items[0]["message"] == "You have a new service request from Hannah Homeowner."
    assert items[0]["booking_id"] == created.json()["id"]
    assert items[0]["data"]["booking_id"] == created.json()["id"]


@pytest.mark.asyncio
async def test_unread_count_and_mark_read(
    client: AsyncClient,
    homeowner: User,
    db_session: AsyncSession,
):
    journal = NotificationJournal(db_session)
    first = await journal.record(homeowner.id, "PAYMENT_FAILED", service="plumber")
    await journal.record(homeowner.id, "PAYMENT_FAILED", service="painter")
    await db_session.commit()

    response = await client.get("/notifications/unread-count", headers=auth_headers(homeowner))
    assert response.json() == {"unread": 2}

    response = await client.post(f"/notifications/{first.id}/read", headers=auth_headers(homeowner))
    assert response.status_code == 200
    assert response.json()["is_read"] is True
    assert response.json()["read_at"] is not None

    response = await client.get(
        "/notifications", headers=auth_headers(homeowner), params={"unread_only": True}
    )
    assert len(response.json()) == 1

    response = await client.post("/notifications/read-all", headers=auth_headers(homeowner))
    assert response.status_code == 200
    response = await client.get("/notifications/unread-count", headers=auth_headers(homeowner))
    assert response.json() == {"unread": 0}


@pytest.mark.asyncio
async def test_cannot_read_someone_elses_notification(
    client: AsyncClient,
    homeowner: User,
    other_homeowner: User,
    db_session: AsyncSession,
):
    notification = await NotificationJournal(db_session).record(
        homeowner.id, "PAYMENT_FAILED", service="plumber"
    )
    await db_session.commit()

    response = await client.post(
        f"/notifications/{notification.id}/read", headers=auth_headers(other_homeowner)
    )

    assert response.status_code == 404
    stored = await reload(db_session, Notification, notification.id)
    assert stored.is_read is False


@pytest.mark.asyncio
async def test_mark_unknown_notification(client: AsyncClient, homeowner: User):
    response = await client.post(f"/notifications/{uuid.uuid4()}/read", headers=auth_headers(homeowner))
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_notifications_require_auth(client: AsyncClient):
    response = await client.get("/notifications")
    assert response.status_code == 401
