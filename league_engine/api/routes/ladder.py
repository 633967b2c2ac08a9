"""Ladder and challenge route handlers."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from league_engine.api.auth_dependencies import get_current_actor
from league_engine.database.db import get_db_session
from league_engine.database.models import ChallengeStatus
from league_engine.models.schemas import (
    Actor,
    ChallengeResponse,
    CreateChallengeRequest,
    RespondChallengeRequest,
)
from league_engine.services import ladder_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/api/leagues/{league_id}/ladder", response_model=List[int])
async def get_ladder(league_id: int, session: AsyncSession = Depends(get_db_session)):
    """Active member ids, top of the ladder first."""
    return await ladder_service.get_ladder(session, league_id)


@router.get("/api/leagues/{league_id}/challenges", response_model=List[ChallengeResponse])
async def list_challenges(
    league_id: int,
    status: Optional[ChallengeStatus] = None,
    session: AsyncSession = Depends(get_db_session),
):
    return await ladder_service.list_challenges(session, league_id, status=status)


@router.get("/api/leagues/{league_id}/challenges/pending", response_model=List[ChallengeResponse])
async def get_pending_challenges(
    league_id: int,
    member_id: Optional[int] = None,
    session: AsyncSession = Depends(get_db_session),
):
    return await ladder_service.get_pending_challenges(session, league_id, member_id=member_id)


@router.post("/api/leagues/{league_id}/challenges", response_model=ChallengeResponse)
async def create_challenge(
    league_id: int,
    payload: CreateChallengeRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    return await ladder_service.create_challenge(
        session, league_id, actor, payload.challenger_member_id, payload.challenged_member_id
    )


@router.post("/api/leagues/{league_id}/challenges/{challenge_id}/respond", response_model=ChallengeResponse)
async def respond_to_challenge(
    league_id: int,
    challenge_id: int,
    payload: RespondChallengeRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    """Accepting creates the challenge match and starts its completion deadline."""
    return await ladder_service.respond_to_challenge(session, league_id, challenge_id, actor, payload.accept)


@router.post("/api/leagues/{league_id}/challenges/{challenge_id}/cancel", response_model=ChallengeResponse)
async def cancel_challenge(
    league_id: int,
    challenge_id: int,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    return await ladder_service.cancel_challenge(session, league_id, challenge_id, actor)
