"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from stancemap.config import settings
from stancemap.database import engine, get_db
from stancemap.models import Base

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, recover stranded jobs and build the scoring service."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # Jobs left "running" by a previous process will never finish
    from stancemap.services.job_worker import recover_stale_jobs
    await recover_stale_jobs(settings.STALE_JOB_MINUTES)

    from stancemap.services.scoring import ScoringService
    service = ScoringService.from_settings(settings)
    app.state.scoring_service = service
    logger.info("Scoring service ready (default model choice: %s)", service.default_model_choice)

    yield

    # Cleanup
    await service.registry.cancel_all()
    if service.log_sink is not None:
        await service.log_sink.drain()
    await engine.dispose()


app = FastAPI(
    title="Stance Map API",
    version="1.0.0",
    description="Scores how every country would side on a two-sided geopolitical scenario.",
    lifespan=lifespan,
)

# CORS
origins = [o.strip() for o in settings.CORS_ORIGINS.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/api/health")
async def health_check():
    """Verify API and database connectivity."""
    try:
        async for db in get_db():
            await db.execute(text("SELECT 1"))
            return {"status": "ok", "database": "connected"}
    except Exception as e:
        return {"status": "error", "database": str(e)}


# Register routers
from stancemap.routes.scenarios import router as scenarios_router
from stancemap.routes.jobs import router as jobs_router
from stancemap.routes.map_versions import router as map_versions_router
app.include_router(scenarios_router)
app.include_router(jobs_router)
app.include_router(map_versions_router)
