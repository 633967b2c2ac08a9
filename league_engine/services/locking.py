"""
Row locking and commit helpers shared by the engine transitions.

Each transition loads its row with SELECT ... FOR UPDATE (a no-op on SQLite)
and commits through ``commit_or_conflict``; the ``version_id`` column on
matches and weeks turns a lost concurrent update into a StateConflictError.
"""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from league_engine.database.models import BoxLeagueWeek, LadderChallenge, League, Match
from league_engine.services.errors import NotFoundError, StateConflictError

logger = logging.getLogger(__name__)


async def lock_match(session: AsyncSession, match_id: int) -> Match:
    result = await session.execute(
        select(Match)
        .where(Match.id == match_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    match = result.scalar_one_or_none()
    if match is None:
        raise NotFoundError(f"Match {match_id} not found")
    return match


async def lock_week(session: AsyncSession, league_id: int, week_number: int) -> BoxLeagueWeek:
    result = await session.execute(
        select(BoxLeagueWeek)
        .where(BoxLeagueWeek.league_id == league_id, BoxLeagueWeek.week_number == week_number)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    week = result.scalar_one_or_none()
    if week is None:
        raise NotFoundError(f"Week {week_number} not found in league {league_id}")
    return week


async def get_league(session: AsyncSession, league_id: int) -> League:
    league = await session.get(League, league_id)
    if league is None:
        raise NotFoundError(f"League {league_id} not found")
    return league


async def commit_or_conflict(session: AsyncSession, description: str) -> None:
    """
    Commit the current transaction.

    Raises:
        StateConflictError: If another request updated the same row first
    """
    try:
        await session.commit()
    except StaleDataError as e:
        await session.rollback()
        logger.info(f"Concurrent update lost on {description}: {e}")
        raise StateConflictError(f"{description} was changed by another request; reload and retry")


async def lock_challenge(session: AsyncSession, league_id: int, challenge_id: int) -> LadderChallenge:
    result = await session.execute(
        select(LadderChallenge)
        .where(LadderChallenge.id == challenge_id, LadderChallenge.league_id == league_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    challenge = result.scalar_one_or_none()
    if challenge is None:
        raise NotFoundError(f"Challenge {challenge_id} not found in league {league_id}")
    return challenge
