"""Country stance scoring pipeline: batch LLM scoring with multi-run aggregation."""
from stancemap.services.scoring.batch_scorer import BatchScorer
from stancemap.services.scoring.errors import (
    ConfigurationError, ErrorKind, ProviderError, ReferenceDataError, ScenarioNotFoundError,
)
from stancemap.services.scoring.orchestrator import ScoringService
from stancemap.services.scoring.rate_limiter import RateLimiter, RateLimiterRegistry

__all__ = [
    "BatchScorer",
    "ConfigurationError",
    "ErrorKind",
    "ProviderError",
    "RateLimiter",
    "RateLimiterRegistry",
    "ReferenceDataError",
    "ScenarioNotFoundError",
    "ScoringService",
]
