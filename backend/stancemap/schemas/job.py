"""Scoring job response schemas."""
import uuid
from typing import Optional
from datetime import datetime
from stancemap.schemas.base import CamelORMModel
from stancemap.services.scoring.models import JobStatus


class JobResponse(CamelORMModel):
    id: uuid.UUID
    scenario_id: uuid.UUID
    job_type: str = "score"
    status: JobStatus
    progress: int = 0
    total_batches: int = 0
    completed_batches: int = 0
    failed_batches: int = 0
    total_countries: int = 0
    completed_countries: int = 0
    total_runs: int = 1
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
