"""Map versions API - canonical country lists."""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from stancemap.database import get_db
from stancemap.models.scenario import MapVersion
from stancemap.schemas.scenario import MapVersionCreate, MapVersionResponse
from stancemap.services.scoring.orchestrator import ScoringService, get_scoring_service

router = APIRouter(prefix="/api/map-versions", tags=["map-versions"])


@router.post("", response_model=MapVersionResponse, status_code=201)
async def create_map_version(body: MapVersionCreate, db: AsyncSession = Depends(get_db)):
    """Store a country list. With ``activate`` it replaces the active list."""
    if body.activate:
        await db.execute(update(MapVersion).where(MapVersion.is_active == True).values(is_active=False))  # noqa: E712
    version = MapVersion(version=body.version, countries=body.countries, is_active=body.activate)
    db.add(version)
    await db.commit()
    await db.refresh(version)
    return version


@router.get("/active", response_model=MapVersionResponse)
async def get_active_map_version(service: ScoringService = Depends(get_scoring_service)):
    version = await service.get_active_map_version()
    if not version:
        raise HTTPException(404, "No active map version")
    return version
