"""
services/notification/router.py
In-app notification journal (list / mark read) and the live WebSocket
session that receives realtime events for the connected user.
"""

import logging
from datetime import datetime, timezone
from uuid import UUID

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from jose import JWTError
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.notification.fanout import session_registry
from shared.middleware.auth import decode_token, require_any_role
from shared.models.models import Notification, User
from shared.schemas.schemas import (
    MessageResponse,
    NotificationResponse,
    UnreadCountResponse,
)
from shared.utils.exceptions import NotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["Notifications"])


# ── REST Endpoints ────────────────────────────────────────────

@router.get("", response_model=list[NotificationResponse])
async def get_my_notifications(
    unread_only: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    current_user: User = Depends(require_any_role),
    db: AsyncSession = Depends(get_db),
):
    """Get authenticated user's in-app notifications, newest first."""
    query = (
        select(Notification)
        .where(Notification.user_id == current_user.id)
        .order_by(Notification.created_at.desc(), Notification.id)
    )

    if unread_only:
        query = query.where(Notification.is_read == False)

    query = query.offset((page - 1) * page_size).limit(page_size)
    result = await db.execute(query)
    return [NotificationResponse.model_validate(n) for n in result.scalars()]


@router.get("/unread-count", response_model=UnreadCountResponse)
async def unread_count(
    current_user: User = Depends(require_any_role),
    db: AsyncSession = Depends(get_db),
):
    count = await db.scalar(
        select(func.count(Notification.id)).where(
            Notification.user_id == current_user.id,
            Notification.is_read == False,
        )
    )
    return UnreadCountResponse(unread=count or 0)


@router.post("/read-all", response_model=MessageResponse)
async def mark_all_read(
    current_user: User = Depends(require_any_role),
    db: AsyncSession = Depends(get_db),
):
    await db.execute(
        update(Notification)
        .where(Notification.user_id == current_user.id, Notification.is_read == False)
        .values(is_read=True, read_at=datetime.now(timezone.utc))
    )
    await db.commit()
    return MessageResponse(message="All notifications marked as read")


@router.post("/{notification_id}/read", response_model=NotificationResponse)
async def mark_read(
    notification_id: UUID,
    current_user: User = Depends(require_any_role),
    db: AsyncSession = Depends(get_db),
):
    """Mark one of the caller's notifications read. Other users' ids look missing."""
    notification = await db.get(Notification, notification_id)
    if not notification or notification.user_id != current_user.id:
        raise NotFoundError("Notification not found")

    if not notification.is_read:
        notification.is_read = True
        notification.read_at = datetime.now(timezone.utc)
        await db.commit()
    return NotificationResponse.model_validate(notification)


# ── Live session ──────────────────────────────────────────────

@router.websocket("/ws")
async def notifications_ws(websocket: WebSocket, token: str = Query(...)):
    """
    Live event stream for the token's user. Every connected device gets
    its own session; messages are `{"event": kind, "data": payload}`.
    Send "ping" to receive "pong".
    """
    try:
        principal = decode_token(token)
    except (JWTError, ValueError, KeyError):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    session_registry.add(principal.user_id, websocket)
    logger.info("Realtime session opened", extra={"user_id": str(principal.user_id)})
    try:
        while True:
            message = await websocket.receive_text()
            if message == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        pass
    finally:
        session_registry.remove(principal.user_id, websocket)
        logger.info("Realtime session closed", extra={"user_id": str(principal.user_id)})
