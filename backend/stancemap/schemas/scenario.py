"""Scenario, map version and scoring request/response schemas."""
import uuid
from typing import Optional, List
from datetime import datetime
from pydantic import Field, field_validator
from stancemap.schemas.base import CamelModel, CamelORMModel


class SideSchema(CamelModel):
    label: str = Field(min_length=1, max_length=100)
    description: str = ""


class MapVersionCreate(CamelModel):
    version: str = Field(min_length=1, max_length=50)
    countries: List[str]
    activate: bool = True

    @field_validator("countries")
    @classmethod
    def dedupe_countries(cls, v: List[str]) -> List[str]:
        seen = []
        for name in (c.strip() for c in v):
            if name and name not in seen:
                seen.append(name)
        if not seen:
            raise ValueError("countries must contain at least one name")
        return seen


class MapVersionResponse(CamelORMModel):
    id: uuid.UUID
    version: str
    countries: List[str]
    is_active: bool
    created_at: Optional[datetime] = None


class ScoringOptions(CamelModel):
    """Options shared by every endpoint that starts a scoring job."""
    num_runs: Optional[int] = None
    batch_size: Optional[int] = None
    grounding: bool = False
    model_choice: Optional[str] = None


class RerunMissingRequest(CamelModel):
    batch_size: Optional[int] = None
    grounding: bool = False
    model_choice: Optional[str] = None


class ParsePromptRequest(CamelModel):
    prompt: str = Field(min_length=1, max_length=2000)


class ScenarioDraftResponse(CamelModel):
    title: str
    description: str
    primary_actor: Optional[str] = None
    side_a: SideSchema
    side_b: SideSchema


class ScenarioCreate(ScoringOptions):
    title: str = Field(min_length=1, max_length=200)
    description: str = ""
    primary_actor: Optional[str] = None
    side_a: SideSchema
    side_b: SideSchema
    source: str = "custom"
    start_scoring: bool = True


class ScenarioResponse(CamelORMModel):
    id: uuid.UUID
    title: str
    description: str
    primary_actor: Optional[str] = None
    side_a: dict
    side_b: dict
    map_version_id: uuid.UUID
    source: str
    is_active: bool
    map_scores: Optional[list] = None
    score_counts: Optional[dict] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CountryScoreResponse(CamelORMModel):
    country_name: str
    score: float
    reasoning: Optional[str] = None


class StartScoringResponse(CamelModel):
    job_id: Optional[uuid.UUID] = None
    scenario_id: uuid.UUID


class RerunMissingResponse(CamelModel):
    rerun_count: int
    job_id: Optional[uuid.UUID] = None
