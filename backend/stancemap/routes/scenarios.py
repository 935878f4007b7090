"""Scenarios API - parse prompts, create scenarios, start and inspect scoring."""
import logging
from typing import Optional
from uuid import UUID
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from stancemap.database import get_db
from stancemap.models.scenario import CountryScore, Scenario
from stancemap.schemas.scenario import (
    CountryScoreResponse, ParsePromptRequest, RerunMissingRequest, RerunMissingResponse,
    ScenarioCreate, ScenarioDraftResponse, ScenarioResponse, ScoringOptions, StartScoringResponse,
)
from stancemap.services.scoring.errors import ConfigurationError, ProviderError, ScenarioNotFoundError
from stancemap.services.scoring.orchestrator import ScoringService, get_scoring_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/scenarios", tags=["scenarios"])


@router.post("/parse", response_model=ScenarioDraftResponse)
async def parse_prompt(body: ParsePromptRequest, service: ScoringService = Depends(get_scoring_service)):
    """Turn a free-text prompt into a title, description and two sides."""
    try:
        draft = await service.parse_prompt(body.prompt)
    except ValueError as e:
        raise HTTPException(400, str(e))
    except ConfigurationError as e:
        raise HTTPException(503, str(e))
    except ProviderError as e:
        logger.error(f"Prompt parsing failed: {e.message}")
        raise HTTPException(502, f"Failed to parse prompt: {e.message}")
    return ScenarioDraftResponse(
        title=draft.title,
        description=draft.description,
        primary_actor=draft.primary_actor,
        side_a={"label": draft.side_a.label, "description": draft.side_a.description},
        side_b={"label": draft.side_b.label, "description": draft.side_b.description},
    )


@router.post("", response_model=StartScoringResponse, status_code=201)
async def create_scenario(
    body: ScenarioCreate,
    db: AsyncSession = Depends(get_db),
    service: ScoringService = Depends(get_scoring_service),
):
    """Create a scenario on the active map version and start scoring it."""
    if body.start_scoring:
        try:
            service.resolve_params(body.num_runs, body.batch_size, body.model_choice)
        except ValueError as e:
            raise HTTPException(400, str(e))

    version = await service.get_active_map_version()
    if not version:
        raise HTTPException(400, "No active map version; create one first")

    scenario = Scenario(
        title=body.title,
        description=body.description,
        primary_actor=body.primary_actor,
        side_a=body.side_a.model_dump(),
        side_b=body.side_b.model_dump(),
        map_version_id=version.id,
        source=body.source,
    )
    db.add(scenario)
    await db.commit()
    await db.refresh(scenario)

    if not body.start_scoring:
        return StartScoringResponse(scenario_id=scenario.id)
    started = await service.start_scoring(
        scenario.id, body.num_runs, body.batch_size, body.grounding, body.model_choice,
    )
    return StartScoringResponse(job_id=started.job_id, scenario_id=started.scenario_id)


@router.post("/{scenario_id}/score", response_model=StartScoringResponse, status_code=202)
async def score_scenario(
    scenario_id: UUID,
    body: ScoringOptions,
    service: ScoringService = Depends(get_scoring_service),
):
    """Start (or restart) scoring an existing scenario."""
    try:
        started = await service.start_scoring(
            scenario_id, body.num_runs, body.batch_size, body.grounding, body.model_choice,
        )
    except ValueError as e:
        raise HTTPException(400, str(e))
    except ScenarioNotFoundError:
        raise HTTPException(404, "Scenario not found")
    return StartScoringResponse(job_id=started.job_id, scenario_id=started.scenario_id)


@router.post("/{scenario_id}/rerun-missing", response_model=RerunMissingResponse)
async def rerun_missing(
    scenario_id: UUID,
    body: RerunMissingRequest,
    service: ScoringService = Depends(get_scoring_service),
):
    """Score only the countries that have no stored score yet."""
    try:
        result = await service.rerun_missing(
            scenario_id, body.grounding, body.model_choice, body.batch_size,
        )
    except ValueError as e:
        raise HTTPException(400, str(e))
    except ScenarioNotFoundError:
        raise HTTPException(404, "Scenario not found")
    return RerunMissingResponse(rerun_count=result.rerun_count, job_id=result.job_id)


@router.get("", response_model=list[ScenarioResponse])
async def list_scenarios(
    active: Optional[bool] = Query(True),
    source: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    service: ScoringService = Depends(get_scoring_service),
):
    """Published scenarios, newest first. Pass active=false for archived ones."""
    return await service.list_scenarios(active=active, source=source, limit=limit)


@router.get("/{scenario_id}", response_model=ScenarioResponse)
async def get_scenario(scenario_id: UUID, db: AsyncSession = Depends(get_db)):
    scenario = await db.get(Scenario, scenario_id)
    if not scenario:
        raise HTTPException(404, "Scenario not found")
    return scenario


@router.get("/{scenario_id}/scores", response_model=list[CountryScoreResponse])
async def get_scenario_scores(scenario_id: UUID, db: AsyncSession = Depends(get_db)):
    """Stored per-country scores. Partial while a job is still running."""
    scenario = await db.get(Scenario, scenario_id)
    if not scenario:
        raise HTTPException(404, "Scenario not found")
    result = await db.execute(
        select(CountryScore).where(CountryScore.scenario_id == scenario_id)
        .order_by(CountryScore.country_name)
    )
    return result.scalars().all()
