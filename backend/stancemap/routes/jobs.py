"""Jobs API - poll scoring job progress."""
from uuid import UUID
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query

from stancemap.schemas.job import JobResponse
from stancemap.services.scoring.orchestrator import ScoringService, get_scoring_service

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


@router.get("", response_model=list[JobResponse])
async def list_jobs(
    scenario_id: Optional[UUID] = Query(None, alias="scenarioId"),
    limit: int = Query(20, ge=1, le=100),
    service: ScoringService = Depends(get_scoring_service),
):
    """List recent jobs, optionally for one scenario."""
    return await service.list_jobs(scenario_id=scenario_id, limit=limit)


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: UUID, service: ScoringService = Depends(get_scoring_service)):
    """Get job status and progress. Safe to poll while the job runs."""
    job = await service.get_job_status(job_id)
    if not job:
        raise HTTPException(404, "Job not found")
    return job
