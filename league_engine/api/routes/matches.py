"""Match score verification and postponement route handlers."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from league_engine.api.auth_dependencies import get_current_actor
from league_engine.database.db import get_db_session
from league_engine.models.schemas import (
    Actor,
    CancelPostponedMatchRequest,
    DisputeScoreRequest,
    FinalizeScoreRequest,
    ForfeitRequest,
    MatchResponse,
    PostponeMatchRequest,
    PostponeRecordResponse,
    ProposeScoreRequest,
    RescheduleMatchRequest,
)
from league_engine.services import league_service, postpone_service, scoring_service
from league_engine.services.errors import NotFoundError
from league_engine.services.locking import get_league

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/api/matches/{match_id}", response_model=MatchResponse)
async def get_match(match_id: int, session: AsyncSession = Depends(get_db_session)):
    return await scoring_service.get_match(session, match_id)


@router.post("/api/matches/{match_id}/propose", response_model=MatchResponse)
async def propose_score(
    match_id: int,
    payload: ProposeScoreRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    """
    Propose a score. The opposing side is notified and must sign unless the
    league auto-confirms.
    """
    return await scoring_service.propose_score(session, match_id, payload.scores, actor)


@router.post("/api/matches/{match_id}/sign", response_model=MatchResponse)
async def sign_score(
    match_id: int,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    return await scoring_service.sign_score(session, match_id, actor)


@router.post("/api/matches/{match_id}/dispute", response_model=MatchResponse)
async def dispute_score(
    match_id: int,
    payload: DisputeScoreRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    return await scoring_service.dispute_score(session, match_id, actor, payload.reason, payload.notes)


@router.post("/api/matches/{match_id}/finalize", response_model=MatchResponse)
async def finalize_score(
    match_id: int,
    payload: FinalizeScoreRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    """
    Make a score official.

    Without scores the signed proposal is finalized. Organizers may pass
    scores to finalize directly or to correct an official result.
    """
    return await scoring_service.finalize_score(
        session,
        match_id,
        actor,
        scores=payload.scores,
        winner_side=payload.winner_side,
        rating_eligible=payload.rating_eligible,
    )


@router.post("/api/matches/{match_id}/reset", response_model=MatchResponse)
async def reset_score(
    match_id: int,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    return await scoring_service.reset_score(session, match_id, actor)


@router.post("/api/matches/{match_id}/forfeit", response_model=MatchResponse)
async def record_forfeit(
    match_id: int,
    payload: ForfeitRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    return await scoring_service.record_forfeit(
        session, match_id, actor, payload.forfeiting_side, no_show=payload.no_show
    )


# ---------------------------------------------------------------------------
# Postponement
# ---------------------------------------------------------------------------


@router.post("/api/matches/{match_id}/postpone", response_model=PostponeRecordResponse)
async def postpone_match(
    match_id: int,
    payload: PostponeMatchRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    return await postpone_service.postpone_match(
        session,
        match_id,
        actor,
        payload.reason,
        notes=payload.notes,
        makeup_deadline_days=payload.makeup_deadline_days,
    )


@router.get("/api/matches/{match_id}/postpone", response_model=PostponeRecordResponse)
async def get_postpone_record(match_id: int, session: AsyncSession = Depends(get_db_session)):
    record = await postpone_service.get_postpone_record(session, match_id)
    if record is None:
        raise NotFoundError(f"Match {match_id} is not postponed")
    return record


@router.post("/api/matches/{match_id}/reschedule", response_model=MatchResponse)
async def reschedule_match(
    match_id: int,
    payload: RescheduleMatchRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    return await postpone_service.reschedule_match(
        session,
        match_id,
        actor,
        payload.scheduled_date,
        time_slot=payload.time_slot,
        court_id=payload.court_id,
    )


@router.post("/api/matches/{match_id}/cancel", response_model=MatchResponse)
async def cancel_postponed_match(
    match_id: int,
    payload: CancelPostponedMatchRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    return await postpone_service.cancel_postponed_match(session, match_id, actor, reason=payload.reason)


@router.post("/api/leagues/{league_id}/matches/auto-finalize")
async def auto_finalize_expired(
    league_id: int,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    """Finalize proposals left unanswered past the league's auto-finalize window."""
    league = await get_league(session, league_id)
    league_service.require_organizer(league, actor)
    finalized = await scoring_service.auto_finalize_expired(session, league_id)
    return {"finalized_match_ids": finalized}
