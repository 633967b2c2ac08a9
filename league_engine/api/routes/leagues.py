"""League, member, court, standings and schedule route handlers."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from league_engine.api.auth_dependencies import get_current_actor
from league_engine.database.db import get_db_session
from league_engine.database.models import MatchStatus
from league_engine.models.schemas import (
    Actor,
    AddCourtRequest,
    AddMemberRequest,
    AssignCourtsRequest,
    AssignCourtsResponse,
    CourtResponse,
    CreateLeagueRequest,
    GenerateScheduleRequest,
    LeagueResponse,
    MatchResponse,
    MemberResponse,
    UpdateCourtRequest,
    UpdateLeagueSettingsRequest,
)
from league_engine.services import court_service, league_service, postpone_service, schedule_service
from league_engine.services.locking import get_league as load_league

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/api/leagues", response_model=LeagueResponse)
async def create_league(
    payload: CreateLeagueRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    """
    Create a new league. The caller must act as organizer.
    """
    settings = payload.model_dump(exclude={"name", "format"}, exclude_none=True)
    return await league_service.create_league(session, actor, payload.name, payload.format, **settings)


@router.get("/api/leagues/{league_id}", response_model=LeagueResponse)
async def get_league(league_id: int, session: AsyncSession = Depends(get_db_session)):
    return await load_league(session, league_id)


@router.patch("/api/leagues/{league_id}", response_model=LeagueResponse)
async def update_league_settings(
    league_id: int,
    payload: UpdateLeagueSettingsRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    """
    Update league settings. Game, points and format settings are locked once
    matches exist; tiebreakers and the verification policy are always editable.
    """
    changes = payload.model_dump(exclude_unset=True)
    return await league_service.update_league_settings(session, league_id, actor, **changes)


# ---------------------------------------------------------------------------
# Members
# ---------------------------------------------------------------------------


@router.get("/api/leagues/{league_id}/members", response_model=List[MemberResponse])
async def list_members(
    league_id: int,
    include_withdrawn: bool = False,
    session: AsyncSession = Depends(get_db_session),
):
    return await league_service.list_members(session, league_id, include_withdrawn=include_withdrawn)


@router.post("/api/leagues/{league_id}/members", response_model=MemberResponse)
async def add_member(
    league_id: int,
    payload: AddMemberRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    """Register a player or team. Organizers can add anyone; players can add themselves."""
    return await league_service.add_member(
        session,
        league_id,
        actor,
        display_name=payload.display_name,
        player_ids=payload.player_ids,
        rating=payload.rating,
    )


@router.delete("/api/leagues/{league_id}/members/{member_id}", response_model=MemberResponse)
async def withdraw_member(
    league_id: int,
    member_id: int,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    """Withdraw a member. Their match history is kept."""
    return await league_service.withdraw_member(session, league_id, member_id, actor)


@router.get("/api/leagues/{league_id}/standings", response_model=List[MemberResponse])
async def get_standings(league_id: int, session: AsyncSession = Depends(get_db_session)):
    """Active members in rank order, as of the last standings recalculation."""
    return await league_service.get_standings(session, league_id)


# ---------------------------------------------------------------------------
# Courts
# ---------------------------------------------------------------------------


@router.get("/api/leagues/{league_id}/courts", response_model=List[CourtResponse])
async def list_courts(
    league_id: int,
    active_only: bool = False,
    session: AsyncSession = Depends(get_db_session),
):
    return await league_service.list_courts(session, league_id, active_only=active_only)


@router.post("/api/leagues/{league_id}/courts", response_model=CourtResponse)
async def add_court(
    league_id: int,
    payload: AddCourtRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    return await league_service.add_court(session, league_id, actor, payload.name, payload.sort_order)


@router.patch("/api/leagues/{league_id}/courts/{court_id}", response_model=CourtResponse)
async def update_court(
    league_id: int,
    court_id: int,
    payload: UpdateCourtRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    return await league_service.set_court_active(session, league_id, court_id, actor, payload.is_active)


# ---------------------------------------------------------------------------
# Schedule
# ---------------------------------------------------------------------------


@router.get("/api/leagues/{league_id}/matches", response_model=List[MatchResponse])
async def list_matches(
    league_id: int,
    round_number: Optional[int] = None,
    week_number: Optional[int] = None,
    status: Optional[MatchStatus] = None,
    session: AsyncSession = Depends(get_db_session),
):
    return await schedule_service.list_matches(
        session, league_id, round_number=round_number, week_number=week_number, status=status
    )


@router.post("/api/leagues/{league_id}/schedule", response_model=List[MatchResponse])
async def generate_schedule(
    league_id: int,
    payload: GenerateScheduleRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    """
    Generate fixtures. Round robin leagues get the full schedule, Swiss
    leagues one round per call.
    """
    return await schedule_service.generate_schedule(
        session,
        league_id,
        actor,
        round_number=payload.round_number,
        start_date=payload.start_date,
        days_between_rounds=payload.days_between_rounds,
    )


@router.delete("/api/leagues/{league_id}/schedule")
async def clear_schedule(
    league_id: int,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    """Delete matches that are still in scheduled status."""
    deleted = await schedule_service.clear_schedule(session, league_id, actor)
    return {"deleted": deleted}


@router.post("/api/leagues/{league_id}/schedule/courts", response_model=AssignCourtsResponse)
async def assign_courts(
    league_id: int,
    payload: AssignCourtsRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    return await court_service.assign_courts(
        session,
        league_id,
        actor,
        strategy=payload.strategy,
        round_number=payload.round_number,
        week_number=payload.week_number,
    )


@router.get("/api/leagues/{league_id}/postponed/overdue")
async def get_overdue_makeups(league_id: int, session: AsyncSession = Depends(get_db_session)):
    """Postponed matches past their makeup deadline."""
    return await postpone_service.get_overdue_makeups(session, league_id)
