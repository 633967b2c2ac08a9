"""Box league week route handlers."""

import logging
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from league_engine.api.auth_dependencies import get_current_actor
from league_engine.database.db import get_db_session
from league_engine.models.schemas import (
    Actor,
    AssignSubstituteRequest,
    BoxWeekResponse,
    CreateDraftRequest,
    DeclareAbsenceRequest,
    FreezeBoxRequest,
    UpdateBoxAssignmentsRequest,
)
from league_engine.services import box_week_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/api/leagues/{league_id}/box-weeks", response_model=List[BoxWeekResponse])
async def list_weeks(league_id: int, session: AsyncSession = Depends(get_db_session)):
    return await box_week_service.list_weeks(session, league_id)


@router.get("/api/leagues/{league_id}/box-weeks/{week_number}", response_model=BoxWeekResponse)
async def get_week(league_id: int, week_number: int, session: AsyncSession = Depends(get_db_session)):
    """Read a week. Repair problems are reported in ``warnings``."""
    return await box_week_service.get_week(session, league_id, week_number)


@router.post("/api/leagues/{league_id}/box-weeks/seed", response_model=BoxWeekResponse)
async def seed_first_week(
    league_id: int,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    """Create week 1 from active members in rating order."""
    return await box_week_service.seed_first_week(session, league_id, actor)


@router.post("/api/leagues/{league_id}/box-weeks", response_model=BoxWeekResponse)
async def create_draft(
    league_id: int,
    payload: CreateDraftRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    return await box_week_service.create_draft(
        session, league_id, payload.week_number, payload.box_assignments, actor
    )


@router.put("/api/leagues/{league_id}/box-weeks/{week_number}/boxes", response_model=BoxWeekResponse)
async def update_box_assignments(
    league_id: int,
    week_number: int,
    payload: UpdateBoxAssignmentsRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    return await box_week_service.update_box_assignments(
        session, league_id, week_number, actor, payload.box_assignments
    )


@router.post("/api/leagues/{league_id}/box-weeks/{week_number}/recalculate", response_model=BoxWeekResponse)
async def recalculate_draft(
    league_id: int,
    week_number: int,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    """Rebuild a draft's boxes from the previous week's results."""
    return await box_week_service.recalculate_draft(session, league_id, week_number, actor)


@router.post("/api/leagues/{league_id}/box-weeks/{week_number}/activate", response_model=BoxWeekResponse)
async def activate_week(
    league_id: int,
    week_number: int,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    return await box_week_service.activate_week(session, league_id, week_number, actor)


@router.post("/api/leagues/{league_id}/box-weeks/{week_number}/close", response_model=BoxWeekResponse)
async def start_closing(
    league_id: int,
    week_number: int,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    return await box_week_service.start_closing(session, league_id, week_number, actor)


@router.post("/api/leagues/{league_id}/box-weeks/{week_number}/finalize", response_model=BoxWeekResponse)
async def finalize_week(
    league_id: int,
    week_number: int,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    return await box_week_service.finalize_week(session, league_id, week_number, actor)


@router.post("/api/leagues/{league_id}/box-weeks/{week_number}/deactivate", response_model=BoxWeekResponse)
async def deactivate_week(
    league_id: int,
    week_number: int,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    """Roll an active week back to draft. Rejected once any result is official."""
    return await box_week_service.deactivate_week(session, league_id, week_number, actor)


@router.post("/api/leagues/{league_id}/box-weeks/{week_number}/freeze", response_model=BoxWeekResponse)
async def freeze_box_movement(
    league_id: int,
    week_number: int,
    payload: FreezeBoxRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    return await box_week_service.freeze_box_movement(
        session, league_id, week_number, actor, payload.box_number, frozen=payload.frozen
    )


@router.post("/api/leagues/{league_id}/box-weeks/{week_number}/absences", response_model=BoxWeekResponse)
async def declare_absence(
    league_id: int,
    week_number: int,
    payload: DeclareAbsenceRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    """Take a member out of a draft week. Organizers or the member themselves."""
    return await box_week_service.declare_absence(
        session, league_id, week_number, actor, payload.member_id, reason=payload.reason
    )


@router.delete(
    "/api/leagues/{league_id}/box-weeks/{week_number}/absences/{member_id}", response_model=BoxWeekResponse
)
async def cancel_absence(
    league_id: int,
    week_number: int,
    member_id: int,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    return await box_week_service.cancel_absence(session, league_id, week_number, actor, member_id)


@router.put(
    "/api/leagues/{league_id}/box-weeks/{week_number}/absences/{member_id}/substitute",
    response_model=BoxWeekResponse,
)
async def assign_substitute(
    league_id: int,
    week_number: int,
    member_id: int,
    payload: AssignSubstituteRequest,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    return await box_week_service.assign_substitute(
        session,
        league_id,
        week_number,
        actor,
        member_id,
        payload.display_name,
        payload.player_ids,
        rating=payload.rating,
    )


@router.delete(
    "/api/leagues/{league_id}/box-weeks/{week_number}/absences/{member_id}/substitute",
    response_model=BoxWeekResponse,
)
async def remove_substitute(
    league_id: int,
    week_number: int,
    member_id: int,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    return await box_week_service.remove_substitute(session, league_id, week_number, actor, member_id)
