"""
Notification service.

Records notifications produced by engine transitions. Delivery is
fire-and-forget: a failure to store or push a notification is logged and
never fails, or rolls back, the transition that produced it.
"""

import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from league_engine.database.models import League, Match, Notification, NotificationType

logger = logging.getLogger(__name__)

DeliveryHook = Callable[[str, Dict], Awaitable[None]]

_delivery_hook: Optional[DeliveryHook] = None


def register_delivery_hook(hook: Optional[DeliveryHook]) -> None:
    """Register an async ``(recipient_id, notification_dict)`` sender, or None to clear it."""
    global _delivery_hook
    _delivery_hook = hook


def _notification_dict(notification: Notification) -> Dict:
    return {
        "id": notification.id,
        "recipient_id": notification.recipient_id,
        "league_id": notification.league_id,
        "match_id": notification.match_id,
        "type": notification.type,
        "title": notification.title,
        "message": notification.message,
        "data": notification.data,
        "is_read": notification.is_read,
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
    }


async def notify(
    session: AsyncSession,
    recipient_ids: Iterable[str],
    type: NotificationType,
    title: str,
    message: str,
    league_id: Optional[int] = None,
    match_id: Optional[int] = None,
    data: Optional[Dict] = None,
) -> List[Dict]:
    """
    Create notifications for each recipient.

    Rows are written inside a SAVEPOINT so a failure here leaves the
    caller's transaction untouched.

    Returns:
        Created notification dicts (empty if storing failed)
    """
    recipients = [r for r in dict.fromkeys(recipient_ids) if r]
    if not recipients:
        return []

    try:
        async with session.begin_nested():
            notifications = [
                Notification(
                    recipient_id=recipient_id,
                    league_id=league_id,
                    match_id=match_id,
                    type=type.value,
                    title=title,
                    message=message,
                    data=data,
                    is_read=False,
                )
                for recipient_id in recipients
            ]
            session.add_all(notifications)
            await session.flush()
        created = [_notification_dict(n) for n in notifications]
    except Exception as e:
        # Log error but don't fail the transition
        logger.warning(f"Failed to store {type.value} notification for {recipients}: {e}")
        return []

    if _delivery_hook is not None:
        for notification in created:
            try:
                await _delivery_hook(notification["recipient_id"], notification)
            except Exception as e:
                logger.warning(
                    f"Failed to deliver notification to {notification['recipient_id']}: {e}"
                )
    return created


async def notify_score_proposed(session: AsyncSession, match: Match, proposer_name: str) -> List[Dict]:
    return await notify(
        session,
        match.eligible_signer_ids,
        NotificationType.SCORE_PROPOSED,
        title="Score submitted",
        message=f"{proposer_name} submitted a score for {match.side_a_name} vs {match.side_b_name}. Please confirm or dispute.",
        league_id=match.league_id,
        match_id=match.id,
        data={"scores": match.proposed_scores},
    )


async def notify_score_disputed(session: AsyncSession, league: League, match: Match, reason: str) -> List[Dict]:
    return await notify(
        session,
        league.organizer_ids or [],
        NotificationType.SCORE_DISPUTED,
        title="Score disputed",
        message=f"The score for {match.side_a_name} vs {match.side_b_name} was disputed: {reason}",
        league_id=match.league_id,
        match_id=match.id,
        data={"reason": reason},
    )


async def notify_score_finalized(session: AsyncSession, match: Match) -> List[Dict]:
    return await notify(
        session,
        match.participant_ids,
        NotificationType.SCORE_FINALIZED,
        title="Result confirmed",
        message=f"The result of {match.side_a_name} vs {match.side_b_name} is now official.",
        league_id=match.league_id,
        match_id=match.id,
        data={"scores": match.scores, "winner_side": match.winner_side},
    )


async def get_notifications(
    session: AsyncSession,
    recipient_id: str,
    unread_only: bool = False,
    limit: int = 50,
) -> List[Dict]:
    """List a recipient's notifications, newest first."""
    query = select(Notification).where(Notification.recipient_id == recipient_id)
    if unread_only:
        query = query.where(Notification.is_read.is_(False))
    query = query.order_by(Notification.id.desc()).limit(limit)
    result = await session.execute(query)
    return [_notification_dict(n) for n in result.scalars().all()]


async def mark_all_as_read(session: AsyncSession, recipient_id: str) -> int:
    """Mark every notification of a recipient as read. Returns the number updated."""
    result = await session.execute(
        update(Notification)
        .where(Notification.recipient_id == recipient_id, Notification.is_read.is_(False))
        .values(is_read=True)
    )
    await session.commit()
    return result.rowcount
