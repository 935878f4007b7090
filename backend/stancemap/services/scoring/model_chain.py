"""Ordered model-fallback chain.

Each candidate is a (model, capability flags) pair. The chain walks the list
one candidate at a time: a success ends it, a failure (fatal, or retryable
with retries exhausted) moves the cursor on, and running off the end raises
the last error.
"""
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

from stancemap.services.scoring.errors import ConfigurationError, ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ModelCandidate:
    model: str
    grounding: bool = False


class ModelFallbackChain:

    def __init__(self, candidates: Sequence[ModelCandidate]):
        if not candidates:
            raise ConfigurationError("Model fallback chain has no candidates")
        self.candidates: List[ModelCandidate] = list(candidates)

    @property
    def models(self) -> List[str]:
        return [c.model for c in self.candidates]

    @classmethod
    def from_models(cls, models: Sequence[str], grounding: bool = False) -> "ModelFallbackChain":
        return cls([ModelCandidate(model=m, grounding=grounding) for m in models if m])

    async def run(self, attempt: Callable[[ModelCandidate], Awaitable[T]]) -> T:
        """Call ``attempt(candidate)`` for each candidate until one succeeds."""
        cursor = 0
        last_error: Optional[ProviderError] = None
        while cursor < len(self.candidates):
            candidate = self.candidates[cursor]
            try:
                result = await attempt(candidate)
            except ProviderError as e:
                last_error = e
                cursor += 1
                if cursor < len(self.candidates):
                    logger.warning(
                        "Model %s failed (%s), falling back to %s",
                        candidate.model, e.message, self.candidates[cursor].model,
                    )
                continue
            if cursor > 0:
                logger.info("Model fallback succeeded on %s", candidate.model)
            return result

        logger.error("All %d models in fallback chain failed", len(self.candidates))
        raise last_error
