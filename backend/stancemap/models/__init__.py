"""Import all models so SQLAlchemy metadata knows about them."""
from stancemap.models.base import Base
from stancemap.models.scenario import MapVersion, Scenario, CountryScore
from stancemap.models.job import ScoringJob
from stancemap.models.ai_log import AiLog

__all__ = [
    "Base",
    "MapVersion", "Scenario", "CountryScore",
    "ScoringJob", "AiLog",
]
