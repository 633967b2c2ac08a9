"""Standings queue and health check route handlers."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from league_engine.api.auth_dependencies import get_current_actor
from league_engine.database.db import get_db_session
from league_engine.models.schemas import Actor
from league_engine.services.league_service import require_organizer
from league_engine.services.locking import get_league
from league_engine.services.stats_queue import get_stats_queue

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/api/leagues/{league_id}/standings/recalculate")
async def recalculate_standings(
    league_id: int,
    actor: Actor = Depends(get_current_actor),
    session: AsyncSession = Depends(get_db_session),
):
    """
    Queue a standings recalculation for a league.

    Returns:
        dict: Job ID and status
    """
    league = await get_league(session, league_id)
    require_organizer(league, actor)
    job_id = await get_stats_queue().enqueue_recalculation(session, league_id)
    return {"job_id": job_id, "status": "queued", "league_id": league_id}


@router.get("/api/admin/standings-queue")
async def get_queue_status(session: AsyncSession = Depends(get_db_session)):
    """
    Get current queue status and recent failures.

    Returns:
        dict: Running, pending and recently failed jobs
    """
    try:
        return await get_stats_queue().get_queue_status(session)
    except Exception as e:
        logger.error(f"Error getting queue status: {e}")
        raise HTTPException(status_code=500, detail=f"Error getting queue status: {str(e)}")


@router.get("/api/admin/standings-queue/{job_id}")
async def get_job_status(job_id: int, session: AsyncSession = Depends(get_db_session)):
    job_status = await get_stats_queue().get_job_status(session, job_id)
    if not job_status:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return job_status


@router.get("/api/health")
async def health_check(session: AsyncSession = Depends(get_db_session)):
    """Health check with a database round trip."""
    try:
        await session.execute(text("SELECT 1"))
        return {"status": "healthy", "database": "connected"}
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        raise HTTPException(status_code=503, detail="Database unavailable")
