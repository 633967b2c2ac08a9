"""
Match postponement.

A scheduled match can be postponed with a reason and a makeup deadline.
The PostponeRecord lives only while the match is postponed: rescheduling
or cancelling the match removes it.
"""

import logging
from datetime import date, timedelta
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from league_engine.database.models import Match, MatchStatus, NotificationType, PostponeRecord
from league_engine.models.schemas import Actor
from league_engine.services import notification_service
from league_engine.services.errors import StateConflictError, ValidationError
from league_engine.services.league_service import require_organizer
from league_engine.services.locking import commit_or_conflict, get_league, lock_match
from league_engine.utils.constants import DEFAULT_MAKEUP_DAYS, MAKEUP_DAYS_BY_REASON
from league_engine.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)


def default_makeup_days(reason: str) -> int:
    return MAKEUP_DAYS_BY_REASON.get(reason, DEFAULT_MAKEUP_DAYS)


async def get_postpone_record(session: AsyncSession, match_id: int) -> Optional[PostponeRecord]:
    result = await session.execute(
        select(PostponeRecord).where(PostponeRecord.match_id == match_id)
    )
    return result.scalar_one_or_none()


async def postpone_match(
    session: AsyncSession,
    match_id: int,
    actor: Actor,
    reason: str,
    notes: Optional[str] = None,
    makeup_deadline_days: Optional[int] = None,
) -> PostponeRecord:
    """
    Postpone a scheduled match.

    Raises:
        StateConflictError: The match is not in scheduled status
    """
    match = await lock_match(session, match_id)
    league = await get_league(session, match.league_id)
    require_organizer(league, actor)

    if match.status != MatchStatus.SCHEDULED:
        raise StateConflictError(f"Cannot postpone match with status: {match.status.value}")
    if not reason:
        raise ValidationError("A postponement needs a reason")

    days = makeup_deadline_days or default_makeup_days(reason)
    today = utcnow().date()
    record = PostponeRecord(
        match_id=match.id,
        reason=reason,
        notes=notes,
        original_date=match.scheduled_date,
        makeup_deadline=today + timedelta(days=days),
        postponed_by=actor.id,
        postponed_at=utcnow(),
    )
    session.add(record)
    match.status = MatchStatus.POSTPONED
    await commit_or_conflict(session, f"Match {match_id}")
    logger.info(f"Match {match_id} postponed by {actor.id} ({reason}), makeup by {record.makeup_deadline}")

    await notification_service.notify(
        session,
        match.participant_ids,
        NotificationType.MATCH_POSTPONED,
        title="Match postponed",
        message=f"{match.side_a_name} vs {match.side_b_name} was postponed. Makeup deadline: {record.makeup_deadline.isoformat()}",
        league_id=match.league_id,
        match_id=match.id,
        data={"reason": reason},
    )
    await session.commit()
    return record


async def _take_postponed(session: AsyncSession, match_id: int, actor: Actor):
    match = await lock_match(session, match_id)
    league = await get_league(session, match.league_id)
    require_organizer(league, actor)
    if match.status != MatchStatus.POSTPONED:
        raise StateConflictError(
            f"Only postponed matches can be changed here. Current status: {match.status.value}"
        )
    record = await get_postpone_record(session, match_id)
    if record is not None:
        await session.delete(record)
    return match


async def reschedule_match(
    session: AsyncSession,
    match_id: int,
    actor: Actor,
    scheduled_date: date,
    time_slot: Optional[str] = None,
    court_id: Optional[int] = None,
) -> Match:
    """Give a postponed match a new date; it returns to scheduled status."""
    match = await _take_postponed(session, match_id, actor)
    match.scheduled_date = scheduled_date
    if time_slot is not None:
        match.time_slot = time_slot
    if court_id is not None:
        match.court_id = court_id
    match.status = MatchStatus.SCHEDULED
    await commit_or_conflict(session, f"Match {match_id}")
    logger.info(f"Match {match_id} rescheduled to {scheduled_date} by {actor.id}")

    await notification_service.notify(
        session,
        match.participant_ids,
        NotificationType.MATCH_RESCHEDULED,
        title="Match rescheduled",
        message=f"{match.side_a_name} vs {match.side_b_name} is now on {scheduled_date.isoformat()}",
        league_id=match.league_id,
        match_id=match.id,
    )
    await session.commit()
    return match


async def cancel_postponed_match(
    session: AsyncSession,
    match_id: int,
    actor: Actor,
    reason: Optional[str] = None,
) -> Match:
    """Cancel a postponed match that could not be made up. Neither side is penalized."""
    match = await _take_postponed(session, match_id, actor)
    match.status = MatchStatus.CANCELLED
    match.cancel_reason = reason or "Postponed match could not be rescheduled"
    await commit_or_conflict(session, f"Match {match_id}")
    logger.info(f"Postponed match {match_id} cancelled by {actor.id}")
    return match


async def get_overdue_makeups(session: AsyncSession, league_id: int, today: Optional[date] = None) -> List[Dict]:
    """Postponed matches whose makeup deadline has passed."""
    today = today or utcnow().date()
    result = await session.execute(
        select(Match, PostponeRecord)
        .join(PostponeRecord, PostponeRecord.match_id == Match.id)
        .where(
            Match.league_id == league_id,
            Match.status == MatchStatus.POSTPONED,
            PostponeRecord.makeup_deadline < today,
        )
        .order_by(PostponeRecord.makeup_deadline.asc())
    )
    return [
        {
            "match_id": match.id,
            "side_a_name": match.side_a_name,
            "side_b_name": match.side_b_name,
            "reason": record.reason,
            "makeup_deadline": record.makeup_deadline,
            "days_overdue": (today - record.makeup_deadline).days,
        }
        for match, record in result.all()
    ]
