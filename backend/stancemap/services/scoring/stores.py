"""PostgreSQL-backed collaborators for the scoring service.

Each store opens its own short-lived session per call, so concurrent batch
callbacks never share a session.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, update, func
from sqlalchemy.dialects.postgresql import insert as pg_insert

from stancemap.database import async_session
from stancemap.models import AiLog, CountryScore, MapVersion, Scenario, ScoringJob
from stancemap.services.scoring.models import (
    CountryScoreResult, JobSnapshot, JobStatus, LogRecord, ScenarioContext, Side,
)

logger = logging.getLogger(__name__)


def job_to_snapshot(job: ScoringJob) -> JobSnapshot:
    return JobSnapshot(
        id=job.id,
        scenario_id=job.scenario_id,
        status=JobStatus(job.status),
        progress=job.progress or 0,
        total_batches=job.total_batches or 0,
        completed_batches=job.completed_batches or 0,
        failed_batches=job.failed_batches or 0,
        total_countries=job.total_countries or 0,
        completed_countries=job.completed_countries or 0,
        total_runs=job.total_runs or 1,
        job_type=job.job_type,
        error=job.error,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
    )


class SqlReferenceStore:
    """Scenarios and the canonical country lists they are scored against."""

    def __init__(self, session_factory=async_session):
        self._session_factory = session_factory

    async def get_active_map_version(self) -> Optional[MapVersion]:
        """Newest map version flagged active, or None."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(MapVersion).where(MapVersion.is_active == True)  # noqa: E712
                .order_by(MapVersion.created_at.desc()).limit(1)
            )
            return result.scalar_one_or_none()

    async def get_active_country_list(self) -> List[str]:
        version = await self.get_active_map_version()
        return list(version.countries or []) if version else []

    async def list_scenarios(
        self, active: Optional[bool] = True, source: Optional[str] = None, limit: int = 50,
    ) -> List[Scenario]:
        query = select(Scenario)
        if active is not None:
            query = query.where(Scenario.is_active == active)
        if source:
            query = query.where(Scenario.source == source)
        query = query.order_by(Scenario.created_at.desc()).limit(limit)
        async with self._session_factory() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def get_scenario(self, scenario_id: uuid.UUID) -> Optional[ScenarioContext]:
        async with self._session_factory() as db:
            scenario = await db.get(Scenario, scenario_id)
            if not scenario:
                return None
            version = await db.get(MapVersion, scenario.map_version_id)
            return ScenarioContext(
                id=scenario.id,
                title=scenario.title,
                description=scenario.description or "",
                side_a=Side.from_dict(scenario.side_a or {}),
                side_b=Side.from_dict(scenario.side_b or {}),
                countries=list(version.countries or []) if version else [],
            )


class SqlScoreStore:

    def __init__(self, session_factory=async_session):
        self._session_factory = session_factory

    async def upsert_scores(self, scenario_id: uuid.UUID, scores: Sequence[CountryScoreResult]) -> None:
        """Idempotent upsert keyed by (scenario, country)."""
        if not scores:
            return
        rows = [
            {
                "id": uuid.uuid4(),
                "scenario_id": scenario_id,
                "country_name": s.country_name,
                "score": s.score,
                "reasoning": s.reasoning,
            }
            for s in scores
        ]
        stmt = pg_insert(CountryScore).values(rows)
        stmt = stmt.on_conflict_do_update(
            constraint="uq_country_scores_scenario_country",
            set_={
                "score": stmt.excluded.score,
                "reasoning": stmt.excluded.reasoning,
                "updated_at": func.now(),
            },
        )
        async with self._session_factory() as db:
            await db.execute(stmt)
            await db.commit()

    async def get_scores(self, scenario_id: uuid.UUID) -> List[CountryScoreResult]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(CountryScore).where(CountryScore.scenario_id == scenario_id)
                .order_by(CountryScore.country_name)
            )
            return [
                CountryScoreResult(country_name=r.country_name, score=r.score, reasoning=r.reasoning)
                for r in result.scalars().all()
            ]

    async def save_map_summary(
        self, scenario_id: uuid.UUID, map_scores: List[dict], score_counts: Dict[str, int],
    ) -> None:
        async with self._session_factory() as db:
            await db.execute(
                update(Scenario).where(Scenario.id == scenario_id).values(
                    map_scores=map_scores, score_counts=score_counts,
                )
            )
            await db.commit()

    async def set_scenario_active(self, scenario_id: uuid.UUID, active: bool = True) -> None:
        """Publish (or archive) a scenario in the active list."""
        async with self._session_factory() as db:
            await db.execute(
                update(Scenario).where(Scenario.id == scenario_id).values(is_active=active)
            )
            await db.commit()


class SqlJobStore:

    def __init__(self, session_factory=async_session):
        self._session_factory = session_factory

    async def create_job(
        self,
        scenario_id: uuid.UUID,
        *,
        job_type: str = "score",
        params: Optional[Dict[str, Any]] = None,
        total_batches: int = 0,
        total_countries: int = 0,
        total_runs: int = 1,
    ) -> uuid.UUID:
        job = ScoringJob(
            scenario_id=scenario_id,
            job_type=job_type,
            status=JobStatus.RUNNING.value,
            params=params or {},
            total_batches=total_batches,
            total_countries=total_countries,
            total_runs=total_runs,
            started_at=datetime.now(timezone.utc),
        )
        async with self._session_factory() as db:
            db.add(job)
            await db.commit()
            await db.refresh(job)
            return job.id

    async def update_job(self, job_id: uuid.UUID, changes: Dict[str, Any]) -> None:
        async with self._session_factory() as db:
            await db.execute(update(ScoringJob).where(ScoringJob.id == job_id).values(**changes))
            await db.commit()

    async def get_job(self, job_id: uuid.UUID) -> Optional[JobSnapshot]:
        async with self._session_factory() as db:
            job = await db.get(ScoringJob, job_id)
            return job_to_snapshot(job) if job else None

    async def list_jobs(
        self, scenario_id: Optional[uuid.UUID] = None, status: Optional[str] = None, limit: int = 50,
    ) -> List[JobSnapshot]:
        query = select(ScoringJob).order_by(ScoringJob.created_at.desc()).limit(limit)
        if scenario_id:
            query = query.where(ScoringJob.scenario_id == scenario_id)
        if status:
            query = query.where(ScoringJob.status == status)
        async with self._session_factory() as db:
            result = await db.execute(query)
            return [job_to_snapshot(j) for j in result.scalars().all()]


class AiLogSink:
    """Best-effort sink for AI request logs.

    ``append`` schedules the insert and returns at once. It never raises:
    write failures are reported through the module logger only.
    """

    def __init__(self, session_factory=async_session):
        self._session_factory = session_factory
        self._pending: set = set()

    def append(self, record: LogRecord) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self._save(record))
        except RuntimeError:
            logger.warning("No running event loop, dropping AI log for %s", record.action)
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _save(self, record: LogRecord) -> None:
        try:
            async with self._session_factory() as db:
                db.add(AiLog(
                    timestamp=record.timestamp,
                    action=record.action,
                    provider=record.provider,
                    model=record.model,
                    system_prompt=record.system_prompt,
                    user_prompt=record.user_prompt,
                    response_status=record.status,
                    response_body=record.response,
                    error=record.error,
                    duration_ms=record.duration_ms,
                ))
                await db.commit()
        except Exception as e:
            logger.warning(f"Failed to save AI log: {e}")

    async def drain(self) -> None:
        """Wait for in-flight log writes (used on shutdown)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
