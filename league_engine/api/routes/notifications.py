"""Notification route handlers."""

import logging
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from league_engine.api.auth_dependencies import get_current_actor
from league_engine.database.db import get_db_session
from league_engine.models.schemas import Actor, NotificationResponse
from league_engine.services import notification_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/api/notifications", response_model=List[NotificationResponse])
async def get_notifications(
    limit: int = 50,
    unread_only: bool = False,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    """Get the caller's notifications, newest first."""
    return await notification_service.get_notifications(
        session, actor.id, unread_only=unread_only, limit=limit
    )


@router.put("/api/notifications/mark-all-read")
async def mark_all_as_read(
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    count = await notification_service.mark_all_as_read(session, actor.id)
    return {"updated": count}
