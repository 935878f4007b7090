"""In-memory data models for the scoring pipeline.

These dataclasses travel between the planner, scorer, aggregator and
tracker. Final values get persisted to PostgreSQL via the ORM models.
"""
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Any, Dict, List
import uuid


class JobStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.RUNNING


@dataclass(frozen=True)
class Side:
    label: str
    description: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Side":
        return cls(label=data.get("label", ""), description=data.get("description", ""))


@dataclass(frozen=True)
class ScenarioContext:
    """Everything the prompt builder needs to know about a scenario."""
    id: uuid.UUID
    title: str
    description: str
    side_a: Side
    side_b: Side
    countries: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class BatchScore:
    """One country's judgment from one batch call."""
    score: float
    reasoning: Optional[str] = None


@dataclass(frozen=True)
class CountryScoreResult:
    country_name: str
    score: float
    reasoning: Optional[str] = None


@dataclass
class JobSnapshot:
    """Point-in-time view of a scoring job, as returned to polling clients."""
    id: uuid.UUID
    scenario_id: uuid.UUID
    status: JobStatus = JobStatus.RUNNING
    progress: int = 0
    total_batches: int = 0
    completed_batches: int = 0
    failed_batches: int = 0
    total_countries: int = 0
    completed_countries: int = 0
    total_runs: int = 1
    job_type: str = "score"
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


@dataclass
class CallOptions:
    temperature: float = 0.5
    max_tokens: Optional[int] = None
    json_response: bool = True
    timeout: Optional[float] = None
    grounding: bool = False


@dataclass
class ProviderResponse:
    content: str
    raw: Dict[str, Any] = field(default_factory=dict)

    def json(self) -> Any:
        return json.loads(self.content)


@dataclass
class LogRecord:
    timestamp: datetime
    action: str
    provider: str
    model: str
    system_prompt: str
    user_prompt: str
    status: Optional[int] = None
    response: Optional[str] = None
    error: Optional[str] = None
    duration_ms: Optional[float] = None


@dataclass(frozen=True)
class StartResult:
    job_id: uuid.UUID
    scenario_id: uuid.UUID


@dataclass(frozen=True)
class RerunResult:
    rerun_count: int
    job_id: Optional[uuid.UUID] = None


@dataclass(frozen=True)
class ScenarioDraft:
    """A free-text prompt parsed into a two-sided scenario."""
    title: str
    description: str
    side_a: Side
    side_b: Side
    primary_actor: Optional[str] = None
