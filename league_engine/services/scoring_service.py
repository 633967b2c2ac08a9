"""
Score verification state machine.

A match score moves unscored -> proposed -> signed -> official, with
disputed reachable from proposed or signed. Official is terminal except for
an organizer correction. Every transition locks the match row, checks the
acting identity against the league policy, commits, then fires
notifications and a standings recalculation that can never undo it.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from league_engine.database.models import League, Match, MatchStatus, ScoreState
from league_engine.models.schemas import Actor
from league_engine.services import notification_service, stats_queue
from league_engine.services.errors import NotFoundError, StateConflictError, ValidationError
from league_engine.services.league_service import is_organizer, require_organizer
from league_engine.services.locking import commit_or_conflict, get_league, lock_match
from league_engine.services.score_rules import GameRules, match_winner, validate_match_scores
from league_engine.utils.datetime_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

SYSTEM_ACTOR_ID = "system"

# Score states from which a result can still be recorded
PRE_OFFICIAL_STATES = (ScoreState.UNSCORED, ScoreState.PROPOSED, ScoreState.SIGNED, ScoreState.DISPUTED)

# Match statuses that cannot take a score
CLOSED_STATUSES = (MatchStatus.CANCELLED, MatchStatus.POSTPONED)


async def get_match(session: AsyncSession, match_id: int) -> Match:
    match = await session.get(Match, match_id)
    if match is None:
        raise NotFoundError(f"Match {match_id} not found")
    return match


def _apply_result(
    match: Match,
    league: League,
    scores: List[List[int]],
    finalized_by: str,
    winner_side: Optional[str] = None,
    rating_eligible: Optional[bool] = None,
    auto_finalized: bool = False,
) -> None:
    """Write the official record. The only place scores are set from games."""
    rules = GameRules.from_league(league)
    derived = match_winner(scores, rules)
    if winner_side is not None and winner_side != derived:
        raise ValidationError(f"winner_side '{winner_side}' does not match the scores (side '{derived}' won)")

    match.scores = [list(game) for game in scores]
    match.winner_side = derived
    match.status = MatchStatus.COMPLETED
    match.score_state = ScoreState.OFFICIAL
    match.finalized_by = finalized_by
    match.finalized_at = utcnow()
    match.auto_finalized = auto_finalized
    match.rating_eligible = league.rating_governed if rating_eligible is None else bool(rating_eligible)


async def _after_official(session: AsyncSession, match: Match) -> None:
    await notification_service.notify_score_finalized(session, match)
    await session.commit()
    await stats_queue.request_recalculation(session, match.league_id)


async def propose_score(session: AsyncSession, match_id: int, scores: Sequence, actor: Actor) -> Match:
    """
    Propose a score for a match.

    Legal from unscored, or from disputed when an organizer re-proposes (the
    new proposal replaces the old one). Participants may propose; organizers
    may propose unless the league is rating governed, where an organizer
    playing in the match is barred and the opposing side must initiate.

    Returns:
        The updated match (already official if the league auto-confirms)

    Raises:
        StateConflictError: Wrong state for a proposal
        ValidationError: Ineligible proposer or illegal scores
    """
    match = await lock_match(session, match_id)
    league = await get_league(session, match.league_id)
    organizer = is_organizer(league, actor)
    side = match.side_of(actor.id)

    if match.status in CLOSED_STATUSES:
        raise StateConflictError(f"Match {match_id} is {match.status.value}; it cannot take a score")
    if match.score_state == ScoreState.DISPUTED:
        if not organizer:
            raise StateConflictError("Only an organizer can re-propose a disputed score")
    elif match.score_state != ScoreState.UNSCORED:
        raise StateConflictError(
            f"Cannot propose a score for match {match_id} in state {match.score_state.value}"
        )

    if league.rating_governed and league.is_organizer(actor.id) and side is not None:
        raise ValidationError(
            "In rating-governed leagues an organizer playing in the match cannot propose; "
            "the opposing side must submit the score"
        )
    if side is None and not (organizer and not league.rating_governed):
        raise ValidationError(f"{actor.name} is not allowed to propose a score for match {match_id}")

    games = validate_match_scores(scores, GameRules.from_league(league))

    match.proposed_by = actor.id
    match.proposed_side = side
    match.proposed_scores = games
    match.proposed_at = utcnow()
    match.confirmations = []
    match.required_confirmations = min(league.required_confirmations, len(match.eligible_signer_ids))
    match.disputed_by = None
    match.dispute_reason = None
    match.dispute_notes = None
    match.disputed_at = None
    match.score_state = ScoreState.PROPOSED
    match.status = MatchStatus.PENDING_CONFIRMATION

    auto = league.auto_confirm or match.required_confirmations == 0
    if auto:
        _apply_result(match, league, games, finalized_by=actor.id, auto_finalized=True)
    await commit_or_conflict(session, f"Match {match_id}")
    logger.info(f"Score {games} proposed for match {match_id} by {actor.id}")

    if auto:
        logger.info(f"Match {match_id} auto-confirmed")
        await _after_official(session, match)
    else:
        await notification_service.notify_score_proposed(session, match, actor.name)
        await session.commit()
    return match


async def sign_score(session: AsyncSession, match_id: int, actor: Actor) -> Match:
    """
    Confirm a proposed score.

    The signer must play on the side that did not propose. Once the match's
    required confirmations are reached the score is signed.

    Raises:
        StateConflictError: The score is not in proposed state (including a repeat sign
            after it became signed)
        ValidationError: The signer is not an eligible participant
    """
    match = await lock_match(session, match_id)

    if match.score_state != ScoreState.PROPOSED:
        raise StateConflictError(f"Cannot sign match {match_id} in state {match.score_state.value}")
    if actor.id in (match.confirmations or []):
        raise StateConflictError(f"{actor.name} has already signed match {match_id}")
    side = match.side_of(actor.id)
    if side is None:
        raise ValidationError(f"{actor.name} is not a participant in match {match_id}")
    if actor.id == match.proposed_by or (match.proposed_side is not None and side == match.proposed_side):
        raise ValidationError("Scores must be confirmed by the opposing side")

    match.confirmations = list(match.confirmations or []) + [actor.id]
    if len(match.confirmations) >= match.required_confirmations:
        match.score_state = ScoreState.SIGNED
    await commit_or_conflict(session, f"Match {match_id}")
    logger.info(
        f"Match {match_id} signed by {actor.id} "
        f"({len(match.confirmations)}/{match.required_confirmations})"
    )
    return match


async def dispute_score(
    session: AsyncSession,
    match_id: int,
    actor: Actor,
    reason: str,
    notes: Optional[str] = None,
) -> Match:
    """
    Dispute a proposed or signed score. Organizers are notified.

    Raises:
        ValidationError: Disputes are disabled, or the actor does not play in the match
        StateConflictError: Nothing to dispute in the current state
    """
    match = await lock_match(session, match_id)
    league = await get_league(session, match.league_id)

    if not league.allow_disputes:
        raise ValidationError(f"League {league.id} does not allow disputes")
    if match.score_state not in (ScoreState.PROPOSED, ScoreState.SIGNED):
        raise StateConflictError(f"Cannot dispute match {match_id} in state {match.score_state.value}")
    if match.side_of(actor.id) is None:
        raise ValidationError(f"{actor.name} is not a participant in match {match_id}")
    if not reason:
        raise ValidationError("A dispute needs a reason")

    match.disputed_by = actor.id
    match.dispute_reason = reason
    match.dispute_notes = notes
    match.disputed_at = utcnow()
    match.score_state = ScoreState.DISPUTED
    match.status = MatchStatus.DISPUTED
    await commit_or_conflict(session, f"Match {match_id}")
    logger.info(f"Match {match_id} disputed by {actor.id}: {reason}")

    await notification_service.notify_score_disputed(session, league, match, reason)
    await session.commit()
    return match


async def finalize_score(
    session: AsyncSession,
    match_id: int,
    actor: Actor,
    scores: Optional[Sequence] = None,
    winner_side: Optional[str] = None,
    rating_eligible: Optional[bool] = None,
) -> Match:
    """
    Make a match result official.

    Three paths:
    - signed: an organizer or participant finalizes the signed proposal
    - organizer shortcut: an organizer who does not play in the match
      finalizes from any earlier state (scores default to the proposal)
    - correction: an organizer replaces an official result

    Standings are recomputed afterwards.

    Raises:
        StateConflictError: Wrong state for the actor
        ValidationError: Ineligible actor, missing or illegal scores, winner mismatch
    """
    match = await lock_match(session, match_id)
    league = await get_league(session, match.league_id)
    organizer = is_organizer(league, actor)
    participant = match.side_of(actor.id) is not None
    state = match.score_state

    if match.status in CLOSED_STATUSES:
        raise StateConflictError(f"Match {match_id} is {match.status.value}; it cannot be finalized")

    if state == ScoreState.OFFICIAL:
        if not organizer:
            raise StateConflictError(f"Match {match_id} is already official")
        if scores is None:
            raise ValidationError("A correction needs the corrected scores")
        path = "correction"
    elif state == ScoreState.SIGNED and (organizer or participant):
        if scores is not None and not organizer:
            raise ValidationError("Participants finalize the signed proposal as submitted")
        path = "signed"
    elif organizer and not participant:
        path = "organizer"
    elif organizer:
        raise ValidationError("An organizer playing in the match can only finalize a signed score")
    elif participant:
        raise StateConflictError(f"Cannot finalize match {match_id} in state {state.value}")
    else:
        raise ValidationError(f"{actor.name} is not allowed to finalize match {match_id}")

    submitted = scores if scores is not None else match.proposed_scores
    if not submitted:
        raise ValidationError(f"No scores to finalize for match {match_id}")
    games = validate_match_scores(submitted, GameRules.from_league(league))

    _apply_result(
        match,
        league,
        games,
        finalized_by=actor.id,
        winner_side=winner_side,
        rating_eligible=rating_eligible,
    )
    await commit_or_conflict(session, f"Match {match_id}")
    logger.info(f"Match {match_id} finalized by {actor.id} ({path}): {games}")

    await _after_official(session, match)
    return match


async def reset_score(session: AsyncSession, match_id: int, actor: Actor) -> Match:
    """Organizer void of a pending or disputed score back to unscored."""
    match = await lock_match(session, match_id)
    league = await get_league(session, match.league_id)
    require_organizer(league, actor)

    if match.score_state not in (ScoreState.PROPOSED, ScoreState.SIGNED, ScoreState.DISPUTED):
        raise StateConflictError(f"Cannot reset match {match_id} in state {match.score_state.value}")

    match.proposed_by = None
    match.proposed_side = None
    match.proposed_scores = None
    match.proposed_at = None
    match.confirmations = []
    match.disputed_by = None
    match.dispute_reason = None
    match.dispute_notes = None
    match.disputed_at = None
    match.score_state = ScoreState.UNSCORED
    match.status = MatchStatus.SCHEDULED
    await commit_or_conflict(session, f"Match {match_id}")
    logger.info(f"Score for match {match_id} reset by {actor.id}")
    return match


async def record_forfeit(
    session: AsyncSession,
    match_id: int,
    actor: Actor,
    forfeiting_side: str,
    no_show: bool = False,
) -> Match:
    """
    Organizer records a forfeit or no-show; the other side wins with no games.

    Raises:
        StateConflictError: The match already has an official result or is closed
    """
    match = await lock_match(session, match_id)
    league = await get_league(session, match.league_id)
    require_organizer(league, actor)

    if forfeiting_side not in ("a", "b"):
        raise ValidationError("forfeiting_side must be 'a' or 'b'")
    if match.score_state == ScoreState.OFFICIAL or match.status in CLOSED_STATUSES:
        raise StateConflictError(f"Match {match_id} cannot be forfeited in its current state")

    match.status = MatchStatus.NO_SHOW if no_show else MatchStatus.FORFEIT
    match.score_state = ScoreState.OFFICIAL
    match.scores = []
    match.winner_side = "b" if forfeiting_side == "a" else "a"
    match.finalized_by = actor.id
    match.finalized_at = utcnow()
    match.auto_finalized = False
    match.rating_eligible = False
    await commit_or_conflict(session, f"Match {match_id}")
    logger.info(f"Match {match_id}: side {forfeiting_side} {match.status.value} recorded by {actor.id}")

    await _after_official(session, match)
    return match


async def auto_finalize_expired(
    session: AsyncSession,
    league_id: int,
    now: Optional[datetime] = None,
) -> List[int]:
    """
    Finalize proposals left unanswered longer than the league's auto_finalize_hours.

    Disputed matches are never auto-finalized.

    Returns:
        IDs of the matches finalized
    """
    league = await get_league(session, league_id)
    if not league.auto_finalize_hours:
        return []
    cutoff = (now or utcnow()) - timedelta(hours=league.auto_finalize_hours)

    result = await session.execute(
        select(Match)
        .where(
            Match.league_id == league_id,
            Match.score_state.in_((ScoreState.PROPOSED, ScoreState.SIGNED)),
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    expired = [
        m for m in result.scalars().all()
        if m.proposed_at is not None and ensure_utc(m.proposed_at) <= cutoff
    ]
    finalized = []
    for match in expired:
        try:
            games = validate_match_scores(match.proposed_scores, GameRules.from_league(league))
        except ValidationError as e:
            logger.warning(f"Skipping auto-finalize of match {match.id}: {e}")
            continue
        _apply_result(match, league, games, finalized_by=SYSTEM_ACTOR_ID, auto_finalized=True)
        finalized.append(match.id)

    if not finalized:
        return []
    await commit_or_conflict(session, f"Auto-finalize for league {league_id}")
    logger.info(f"Auto-finalized {len(finalized)} matches in league {league_id}")

    for match in expired:
        if match.id in finalized:
            await notification_service.notify_score_finalized(session, match)
    await session.commit()
    await stats_queue.request_recalculation(session, league_id)
    return finalized
