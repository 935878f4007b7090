"""Job progress tracking.

All batch-completion events go through one asyncio.Lock, so concurrent
callbacks never lose an increment, and each update is written through to
the job store.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from stancemap.services.scoring.models import JobStatus

logger = logging.getLogger(__name__)


def failure_summary(failed_batches: int) -> Optional[str]:
    if failed_batches <= 0:
        return None
    noun = "batch" if failed_batches == 1 else "batches"
    return f"{failed_batches} {noun} failed"


class ProgressTracker:

    def __init__(
        self,
        job_store,
        job_id: uuid.UUID,
        total_batches: int,
        total_countries: int,
        total_runs: int = 1,
    ):
        self.job_store = job_store
        self.job_id = job_id
        self.total_batches = total_batches
        self.total_countries = total_countries
        self.total_runs = total_runs
        self.completed_batches = 0
        self.failed_batches = 0
        self.completed_countries = 0
        self.status = JobStatus.RUNNING
        self.error: Optional[str] = None
        self._lock = asyncio.Lock()

    @property
    def progress(self) -> int:
        if self.total_batches <= 0:
            return 100 if self.status is JobStatus.COMPLETED else 0
        return round(100 * self.completed_batches / self.total_batches)

    async def _apply(self, changes: Dict[str, Any]) -> None:
        await self.job_store.update_job(self.job_id, changes)

    async def record_batch(self, countries_scored: int, failed: bool = False) -> None:
        async with self._lock:
            if self.status.is_terminal:
                logger.warning("Ignoring batch update for finished job %s", self.job_id)
                return
            self.completed_batches = min(self.completed_batches + 1, self.total_batches)
            if failed:
                self.failed_batches += 1
            self.completed_countries = min(
                self.completed_countries + max(countries_scored, 0), self.total_countries,
            )
            await self._apply({
                "completed_batches": self.completed_batches,
                "failed_batches": self.failed_batches,
                "completed_countries": self.completed_countries,
                "progress": self.progress,
            })

    async def complete(self, failed_batches: Optional[int] = None) -> None:
        async with self._lock:
            if self.status.is_terminal:
                return
            if failed_batches is not None:
                self.failed_batches = max(self.failed_batches, failed_batches)
            self.status = JobStatus.COMPLETED
            self.completed_batches = self.total_batches
            self.error = failure_summary(self.failed_batches)
            await self._apply({
                "status": JobStatus.COMPLETED.value,
                "completed_batches": self.completed_batches,
                "failed_batches": self.failed_batches,
                "progress": self.progress,
                "error": self.error,
                "completed_at": datetime.now(timezone.utc),
            })
            logger.info(
                "Job %s completed (%d/%d batches failed)",
                self.job_id, self.failed_batches, self.total_batches,
            )

    async def fail(self, message: str) -> None:
        async with self._lock:
            if self.status.is_terminal:
                return
            self.status = JobStatus.FAILED
            self.error = message
            await self._apply({
                "status": JobStatus.FAILED.value,
                "error": message,
                "completed_at": datetime.now(timezone.utc),
            })
            logger.info("Job %s failed: %s", self.job_id, message)
