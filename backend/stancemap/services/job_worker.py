"""Background job worker.

Scoring jobs run as asyncio tasks inside the FastAPI process. The registry
keeps a reference to every in-flight task so it is not garbage collected
mid-run and can be cancelled on shutdown. Nothing is queued durably: a
restart loses in-flight work, and recover_stale_jobs() marks it failed.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Coroutine, Dict

from sqlalchemy import and_, select

from stancemap.database import async_session
from stancemap.models.job import ScoringJob

logger = logging.getLogger(__name__)


async def recover_stale_jobs(stale_minutes: int = 15):
    """Mark jobs stuck in 'running' for longer than `stale_minutes` as failed.

    Call on startup to recover from process crashes that left jobs stranded.
    """
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=stale_minutes)
    async with async_session() as db:
        result = await db.execute(
            select(ScoringJob).where(
                and_(
                    ScoringJob.status == "running",
                    ScoringJob.started_at < cutoff,
                )
            )
        )
        stale_jobs = result.scalars().all()
        for job in stale_jobs:
            job.status = "failed"
            job.error = f"Recovered on startup: job was running for >{stale_minutes} minutes"
            job.completed_at = datetime.now(timezone.utc)
            logger.warning(f"Recovered stale job {job.id} (started at {job.started_at})")
        if stale_jobs:
            await db.commit()
            logger.info(f"Recovered {len(stale_jobs)} stale job(s)")


def safe_error_message(e: Exception, fallback: str = "Scoring interrupted") -> str:
    """Extract a meaningful error message from an exception.

    Some exceptions (especially from third-party libraries or cancellation races)
    produce an empty str(e). This helper falls back to the exception class name.
    """
    msg = str(e).strip()
    if not msg:
        msg = f"{type(e).__name__}: {fallback}"
    return msg


class JobRegistry:
    """In-flight job tasks keyed by job id."""

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}

    def spawn(self, job_id: uuid.UUID, coro: Coroutine) -> asyncio.Task:
        key = str(job_id)
        task = asyncio.create_task(coro, name=f"scoring-job-{key}")
        self._tasks[key] = task
        task.add_done_callback(lambda t: self._on_done(key, t))
        logger.info(f"Spawned job {key}")
        return task

    def _on_done(self, key: str, task: asyncio.Task) -> None:
        self._tasks.pop(key, None)
        if task.cancelled():
            logger.warning(f"Job {key} was cancelled")
        elif task.exception() is not None:
            logger.error(f"Job {key} crashed: {safe_error_message(task.exception())}")

    async def wait_all(self) -> None:
        while True:
            pending = [t for t in self._tasks.values() if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} running job(s)")
