"""
Standings recalculation queue with deduplication.

Handles deferred standings recomputation with a database-backed queue that:
- Deduplicates requests per league
- Runs at most one recomputation per league at a time
- Persists across server restarts
- Tracks job status so a failed run is retried on the next trigger
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from league_engine.database import db
from league_engine.database.models import RecalcJobStatus, StandingsRecalcJob
from league_engine.utils.constants import STANDINGS_QUEUE_POLL_SECONDS
from league_engine.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

RecalcCallback = Callable[[AsyncSession, int], Awaitable[Dict]]


class StandingsRecalcQueue:
    """Database-backed queue for standings recalculation jobs."""

    def __init__(self, poll_seconds: float = STANDINGS_QUEUE_POLL_SECONDS):
        self._worker_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._recalc_callback: Optional[RecalcCallback] = None
        self._league_locks: Dict[int, asyncio.Lock] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._poll_seconds = poll_seconds

    async def enqueue_recalculation(self, session: AsyncSession, league_id: int) -> int:
        """
        Enqueue a standings recalculation for a league.

        Deduplication logic:
        - If a job for the league is already pending, return it
        - If a job for the league is running, queue exactly one pending follow-up
        - Otherwise start a job immediately

        Args:
            session: Database session (committed by this call)
            league_id: League to recompute

        Returns:
            Job ID
        """
        pending = await self._find_job(session, league_id, RecalcJobStatus.PENDING)
        if pending:
            return pending.id

        running = await self._find_job(session, league_id, RecalcJobStatus.RUNNING)
        if running:
            job = StandingsRecalcJob(league_id=league_id, status=RecalcJobStatus.PENDING)
            session.add(job)
            await session.commit()
            await session.refresh(job)
            logger.debug(f"Queued follow-up standings job {job.id} for league {league_id}")
            return job.id

        job = StandingsRecalcJob(
            league_id=league_id,
            status=RecalcJobStatus.RUNNING,
            started_at=utcnow(),
        )
        session.add(job)
        await session.commit()
        await session.refresh(job)

        task = asyncio.create_task(self._run_calculation(job.id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job.id

    async def _find_job(
        self,
        session: AsyncSession,
        league_id: int,
        status: RecalcJobStatus,
    ) -> Optional[StandingsRecalcJob]:
        """Find the oldest job for a league in the given status."""
        result = await session.execute(
            select(StandingsRecalcJob)
            .where(
                StandingsRecalcJob.league_id == league_id,
                StandingsRecalcJob.status == status,
            )
            .order_by(StandingsRecalcJob.id.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _get_first_queued_job(self, session: AsyncSession) -> Optional[StandingsRecalcJob]:
        """Get the oldest pending job whose league has nothing running."""
        result = await session.execute(
            select(StandingsRecalcJob)
            .where(StandingsRecalcJob.status == RecalcJobStatus.PENDING)
            .order_by(StandingsRecalcJob.id.asc())
        )
        for job in result.scalars().all():
            running = await self._find_job(session, job.league_id, RecalcJobStatus.RUNNING)
            if running is None:
                return job
        return None

    def register_recalc_callback(self, callback: RecalcCallback) -> None:
        """
        Register the function that recomputes a league's standings.

        Must be called before any job runs, typically during application startup.

        Raises:
            TypeError: If callback is not callable
        """
        if not callable(callback):
            raise TypeError("callback must be callable")

        # Allow re-registration (useful for testing), but log a warning
        if self._recalc_callback is not None:
            logger.warning("Re-registering standings callback (previous callback will be replaced)")

        self._recalc_callback = callback
        logger.info("Standings recalculation callback registered successfully")

    def _lock_for(self, league_id: int) -> asyncio.Lock:
        if league_id not in self._league_locks:
            self._league_locks[league_id] = asyncio.Lock()
        return self._league_locks[league_id]

    async def _run_calculation(self, job_id: int) -> None:
        """Run a job. Failures are recorded on the job and logged, never raised."""
        session = db.AsyncSessionLocal()
        try:
            result = await session.execute(
                select(StandingsRecalcJob).where(StandingsRecalcJob.id == job_id)
            )
            job = result.scalar_one_or_none()
            if not job:
                return
            league_id = job.league_id

            async with self._lock_for(league_id):
                try:
                    if self._recalc_callback is None:
                        raise RuntimeError(
                            "Standings callback not registered. "
                            "Call register_recalc_callback() before running jobs."
                        )
                    await self._recalc_callback(session, league_id)

                    await session.execute(
                        update(StandingsRecalcJob)
                        .where(StandingsRecalcJob.id == job_id)
                        .values(status=RecalcJobStatus.COMPLETED, completed_at=utcnow())
                    )
                    await session.commit()
                    logger.info(f"Standings job {job_id} for league {league_id} completed")
                except Exception as e:
                    await session.rollback()
                    await session.execute(
                        update(StandingsRecalcJob)
                        .where(StandingsRecalcJob.id == job_id)
                        .values(
                            status=RecalcJobStatus.FAILED,
                            completed_at=utcnow(),
                            error_message=str(e),
                        )
                    )
                    await session.commit()
                    logger.error(
                        f"Standings job {job_id} for league {league_id} failed: {e}",
                        exc_info=True,
                    )
        finally:
            await session.close()

    async def run_pending_once(self) -> bool:
        """
        Claim and run one pending job.

        Returns:
            True if a job was run
        """
        session = db.AsyncSessionLocal()
        try:
            job = await self._get_first_queued_job(session)
            if job is None:
                return False
            await session.execute(
                update(StandingsRecalcJob)
                .where(StandingsRecalcJob.id == job.id)
                .values(status=RecalcJobStatus.RUNNING, started_at=utcnow())
            )
            await session.commit()
            job_id = job.id
        finally:
            await session.close()

        # Run calculation (it will create its own session)
        await self._run_calculation(job_id)
        return True

    async def drain(self) -> None:
        """Wait for in-flight jobs, then run pending jobs until none remain."""
        while True:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
                continue
            if not await self.run_pending_once():
                return

    async def _process_queue_worker(self) -> None:
        """Background worker that processes pending jobs."""
        while not self._stop_event.is_set():
            try:
                ran = await self.run_pending_once()
                if not ran:
                    await asyncio.sleep(self._poll_seconds)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Log error and continue
                logger.error(f"Error in standings queue worker: {e}", exc_info=True)
                await asyncio.sleep(5)

    async def get_queue_status(self, session: AsyncSession) -> Dict:
        """Get current queue status."""
        running = await self._jobs_with_status(session, RecalcJobStatus.RUNNING)
        pending = await self._jobs_with_status(session, RecalcJobStatus.PENDING)
        recent_failed = await self._jobs_with_status(session, RecalcJobStatus.FAILED, limit=10)

        return {
            "running": [self._job_dict(j) for j in running],
            "pending": [self._job_dict(j) for j in pending],
            "recent_failed": [self._job_dict(j) for j in recent_failed],
        }

    async def _jobs_with_status(
        self,
        session: AsyncSession,
        status: RecalcJobStatus,
        limit: Optional[int] = None,
    ) -> List[StandingsRecalcJob]:
        query = select(StandingsRecalcJob).where(StandingsRecalcJob.status == status)
        if status == RecalcJobStatus.FAILED:
            query = query.order_by(StandingsRecalcJob.id.desc())
        else:
            query = query.order_by(StandingsRecalcJob.id.asc())
        if limit:
            query = query.limit(limit)
        result = await session.execute(query)
        return list(result.scalars().all())

    async def get_job_status(self, session: AsyncSession, job_id: int) -> Optional[Dict]:
        """Get status of a specific job."""
        job = await session.get(StandingsRecalcJob, job_id)
        if not job:
            return None
        return self._job_dict(job)

    @staticmethod
    def _job_dict(job: StandingsRecalcJob) -> Dict:
        return {
            "id": job.id,
            "league_id": job.league_id,
            "status": job.status.value,
            "created_at": job.created_at.isoformat() if job.created_at else None,
            "started_at": job.started_at.isoformat() if job.started_at else None,
            "completed_at": job.completed_at.isoformat() if job.completed_at else None,
            "error_message": job.error_message,
        }

    def start_background_worker(self) -> None:
        """Start the background worker."""
        if self._worker_task is None or self._worker_task.done():
            self._stop_event.clear()
            self._worker_task = asyncio.create_task(self._process_queue_worker())

    def stop_background_worker(self) -> None:
        """Stop the background worker."""
        self._stop_event.set()
        if self._worker_task and not self._worker_task.done():
            self._worker_task.cancel()


# Global queue instance
_stats_queue = StandingsRecalcQueue()


def get_stats_queue() -> StandingsRecalcQueue:
    """Get the global standings queue instance."""
    return _stats_queue


async def request_recalculation(session: AsyncSession, league_id: int) -> Optional[int]:
    """
    Enqueue a standings recalculation after a committed transition.

    Enqueue failures are logged and never fail the caller; the next trigger
    for the league retries.
    """
    try:
        return await get_stats_queue().enqueue_recalculation(session, league_id)
    except Exception as e:
        logger.error(f"Failed to enqueue standings recalculation for league {league_id}: {e}", exc_info=True)
        await session.rollback()
        return None
