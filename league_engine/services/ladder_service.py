"""
Ladder challenges.

Ladder leagues have no generated schedule. A member challenges someone
ranked at most ``challenge_range`` places above them; an accepted challenge
becomes a match that goes through score verification like any other. Once
the result is official the standings recalculation moves the winner up.
"""

import logging
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from league_engine.database.models import (
    ChallengeStatus,
    LadderChallenge,
    League,
    LeagueFormat,
    Match,
    MatchStatus,
    Member,
    MemberStatus,
    NotificationType,
    RESULT_STATUSES,
    ScoreState,
)
from league_engine.models.schemas import Actor
from league_engine.services import notification_service
from league_engine.services.calculation_service import ladder_order
from league_engine.services.errors import StateConflictError, ValidationError
from league_engine.services.league_service import get_member, is_organizer
from league_engine.services.locking import commit_or_conflict, get_league, lock_challenge, lock_match
from league_engine.services.schedule_service import build_match
from league_engine.utils.constants import CHALLENGE_COMPLETION_DAYS
from league_engine.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

OPEN_CHALLENGE_STATUSES = (ChallengeStatus.PENDING, ChallengeStatus.ACCEPTED)


def _require_ladder(league: League) -> None:
    if league.format != LeagueFormat.LADDER:
        raise ValidationError(f"League {league.id} is not a ladder league")


def _acts_for(league: League, member: Member, actor: Actor) -> bool:
    return is_organizer(league, actor) or actor.id in (member.player_ids or [])


async def get_ladder(session: AsyncSession, league_id: int) -> List[int]:
    """
    Active member ids, top of the ladder first.

    Computed from the official results rather than stored ranks, so a
    challenge can be issued before the standings queue has caught up.
    """
    league = await get_league(session, league_id)
    _require_ladder(league)
    members = (await session.execute(select(Member).where(Member.league_id == league_id))).scalars().all()
    matches = (
        await session.execute(
            select(Match).where(Match.league_id == league_id, Match.status.in_(RESULT_STATUSES))
        )
    ).scalars().all()
    return ladder_order(members, matches)


async def _open_challenges(session: AsyncSession, league_id: int, member_ids: List[int]) -> List[LadderChallenge]:
    result = await session.execute(
        select(LadderChallenge).where(
            LadderChallenge.league_id == league_id,
            LadderChallenge.status.in_(OPEN_CHALLENGE_STATUSES),
            or_(
                LadderChallenge.challenger_member_id.in_(member_ids),
                LadderChallenge.challenged_member_id.in_(member_ids),
            ),
        )
    )
    return list(result.scalars().all())


async def create_challenge(
    session: AsyncSession,
    league_id: int,
    actor: Actor,
    challenger_member_id: int,
    challenged_member_id: int,
) -> LadderChallenge:
    """
    Challenge a member ranked above the challenger.

    Raises:
        ValidationError: Not a ladder league, inactive members, a target
            below the challenger or out of range, or an actor who is neither
            an organizer nor the challenger
        StateConflictError: Either member already has an open challenge
    """
    league = await get_league(session, league_id)
    _require_ladder(league)
    if challenger_member_id == challenged_member_id:
        raise ValidationError("A member cannot challenge themselves")
    challenger = await get_member(session, league_id, challenger_member_id)
    challenged = await get_member(session, league_id, challenged_member_id)
    if not _acts_for(league, challenger, actor):
        raise ValidationError("Only organizers or the challenger can issue a challenge")
    for member in (challenger, challenged):
        if member.status != MemberStatus.ACTIVE:
            raise ValidationError(f"Member {member.id} is not an active member of league {league_id}")

    ladder = await get_ladder(session, league_id)
    challenger_rank = ladder.index(challenger.id) + 1
    challenged_rank = ladder.index(challenged.id) + 1
    if challenged_rank >= challenger_rank:
        raise ValidationError(f"{challenged.display_name} is not ranked above {challenger.display_name}")
    if challenger_rank - challenged_rank > league.challenge_range:
        raise ValidationError(
            f"Challenges reach at most {league.challenge_range} places up; "
            f"{challenged.display_name} is {challenger_rank - challenged_rank} places above"
        )

    busy = await _open_challenges(session, league_id, [challenger.id, challenged.id])
    if busy:
        raise StateConflictError(f"Challenge {busy[0].id} is still open for one of these members")

    challenge = LadderChallenge(
        league_id=league_id,
        challenger_member_id=challenger.id,
        challenged_member_id=challenged.id,
        status=ChallengeStatus.PENDING,
        challenger_rank=challenger_rank,
        challenged_rank=challenged_rank,
        created_by=actor.id,
    )
    session.add(challenge)
    await session.commit()
    await session.refresh(challenge)
    logger.info(
        f"Challenge {challenge.id} in league {league_id}: #{challenger_rank} {challenger.display_name} "
        f"vs #{challenged_rank} {challenged.display_name}"
    )

    await notification_service.notify(
        session,
        challenged.player_ids or [],
        NotificationType.CHALLENGE_RECEIVED,
        title="New challenge",
        message=f"{challenger.display_name} (#{challenger_rank}) challenged you for #{challenged_rank}.",
        league_id=league_id,
        data={"challenge_id": challenge.id},
    )
    await session.commit()
    return challenge


async def respond_to_challenge(
    session: AsyncSession,
    league_id: int,
    challenge_id: int,
    actor: Actor,
    accept: bool,
) -> LadderChallenge:
    """
    Accept or decline a pending challenge.

    Accepting creates the match (challenger on side A) and starts the
    completion deadline.

    Raises:
        ValidationError: The actor is neither an organizer nor the challenged member
        StateConflictError: The challenge is no longer pending
    """
    league = await get_league(session, league_id)
    challenge = await lock_challenge(session, league_id, challenge_id)
    challenger = await get_member(session, league_id, challenge.challenger_member_id)
    challenged = await get_member(session, league_id, challenge.challenged_member_id)
    if not _acts_for(league, challenged, actor):
        raise ValidationError("Only organizers or the challenged member can respond")
    if challenge.status != ChallengeStatus.PENDING:
        raise StateConflictError(f"Challenge {challenge_id} is {challenge.status.value}")

    now = utcnow()
    challenge.responded_by = actor.id
    challenge.responded_at = now
    if accept:
        if challenger.status != MemberStatus.ACTIVE or challenged.status != MemberStatus.ACTIVE:
            raise StateConflictError(f"A member of challenge {challenge_id} has withdrawn")
        match = build_match(
            league, (1, [challenger.id], [challenged.id]), {challenger.id: challenger, challenged.id: challenged}
        )
        session.add(match)
        await session.flush()
        challenge.match_id = match.id
        challenge.status = ChallengeStatus.ACCEPTED
        challenge.completion_deadline = now + timedelta(days=CHALLENGE_COMPLETION_DAYS)
    else:
        challenge.status = ChallengeStatus.DECLINED
    await session.commit()
    logger.info(f"Challenge {challenge_id} in league {league_id} {challenge.status.value} by {actor.id}")

    await notification_service.notify(
        session,
        challenger.player_ids or [],
        NotificationType.CHALLENGE_ACCEPTED if accept else NotificationType.CHALLENGE_DECLINED,
        title="Challenge accepted" if accept else "Challenge declined",
        message=f"{challenged.display_name} {challenge.status.value} your challenge.",
        league_id=league_id,
        match_id=challenge.match_id,
        data={"challenge_id": challenge.id},
    )
    await session.commit()
    return challenge


async def cancel_challenge(session: AsyncSession, league_id: int, challenge_id: int, actor: Actor) -> LadderChallenge:
    """
    Withdraw an open challenge. An accepted challenge's match is cancelled with it.

    Raises:
        StateConflictError: The challenge is closed or its match already has an official result
    """
    league = await get_league(session, league_id)
    challenge = await lock_challenge(session, league_id, challenge_id)
    challenger = await get_member(session, league_id, challenge.challenger_member_id)
    if not _acts_for(league, challenger, actor):
        raise ValidationError("Only organizers or the challenger can cancel a challenge")
    if challenge.status not in OPEN_CHALLENGE_STATUSES:
        raise StateConflictError(f"Challenge {challenge_id} is {challenge.status.value}")

    if challenge.match_id is not None:
        match = await lock_match(session, challenge.match_id)
        if match.score_state == ScoreState.OFFICIAL:
            raise StateConflictError(f"Match {match.id} of challenge {challenge_id} already has an official result")
        match.status = MatchStatus.CANCELLED
        match.cancel_reason = "Challenge cancelled"
    challenge.status = ChallengeStatus.CANCELLED
    await commit_or_conflict(session, f"Challenge {challenge_id}")
    logger.info(f"Challenge {challenge_id} in league {league_id} cancelled by {actor.id}")
    return challenge


async def get_pending_challenges(
    session: AsyncSession,
    league_id: int,
    member_id: Optional[int] = None,
) -> List[LadderChallenge]:
    """Challenges awaiting a response, optionally only those involving one member."""
    query = select(LadderChallenge).where(
        LadderChallenge.league_id == league_id,
        LadderChallenge.status == ChallengeStatus.PENDING,
    )
    if member_id is not None:
        query = query.where(
            or_(
                LadderChallenge.challenger_member_id == member_id,
                LadderChallenge.challenged_member_id == member_id,
            )
        )
    result = await session.execute(query.order_by(LadderChallenge.id))
    return list(result.scalars().all())


async def list_challenges(
    session: AsyncSession,
    league_id: int,
    status: Optional[ChallengeStatus] = None,
) -> List[LadderChallenge]:
    query = select(LadderChallenge).where(LadderChallenge.league_id == league_id)
    if status is not None:
        query = query.where(LadderChallenge.status == status)
    result = await session.execute(query.order_by(LadderChallenge.id))
    return list(result.scalars().all())

