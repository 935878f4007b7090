"""Batch scorer: one LLM call rates a batch of countries for a scenario."""
import logging
import math
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from stancemap.services.scoring.errors import ConfigurationError, ProviderError
from stancemap.services.scoring.llm_base import (
    BaseLLMProvider, LoggingProvider, create_llm_provider,
)
from stancemap.services.scoring.model_chain import ModelCandidate, ModelFallbackChain
from stancemap.services.scoring.models import BatchScore, CallOptions, ScenarioContext
from stancemap.services.scoring.prompts import build_system_prompt, build_user_prompt
from stancemap.services.scoring.retry import with_retry

logger = logging.getLogger(__name__)

MODEL_CHOICES = ("openai", "gemini")

SCORE_MIN = -1.0
SCORE_MAX = 1.0


def clamp_score(value: float) -> float:
    return max(SCORE_MIN, min(SCORE_MAX, value))


def _valid_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def parse_scores(data: Any) -> Dict[str, BatchScore]:
    """Extract the ``scores`` map from a reply.

    Entries whose score is not a finite number are dropped, never coerced
    to 0. A bare number is accepted in place of the ``{score, reasoning}``
    object. Raises a retryable ProviderError when ``scores`` is missing.
    """
    scores = data.get("scores") if isinstance(data, dict) else None
    if not isinstance(scores, dict):
        raise ProviderError.retryable_error("Response has no 'scores' object")

    result: Dict[str, BatchScore] = {}
    for country, entry in scores.items():
        if isinstance(entry, dict):
            raw_score = entry.get("score")
            reasoning = entry.get("reasoning")
        else:
            raw_score, reasoning = entry, None

        if not _valid_number(raw_score):
            logger.debug(f"Dropping invalid score for {country}: {raw_score!r}")
            continue

        if isinstance(reasoning, str):
            reasoning = reasoning.strip() or None
        else:
            reasoning = None
        result[str(country).strip()] = BatchScore(score=clamp_score(float(raw_score)), reasoning=reasoning)
    return result


def filter_to_known(scores: Dict[str, BatchScore], countries: Sequence[str]) -> Dict[str, BatchScore]:
    """Keep only names on the canonical country list."""
    known = set(countries)
    kept = {name: s for name, s in scores.items() if name in known}
    dropped = len(scores) - len(kept)
    if dropped:
        logger.warning("Discarded %d scores for unknown country names", dropped)
    return kept


class BatchScorer:
    """Routes a batch to the right provider/model and parses the reply.

    Grounded batches go through the Gemini fallback chain; ungrounded ones
    use a single fixed model for the chosen provider.
    """

    def __init__(
        self,
        *,
        openai_api_key: str = "",
        openai_model: str = "",
        gemini_api_key: str = "",
        gemini_model: str = "",
        grounded_models: Sequence[str] = (),
        temperature: float = 0.5,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
        max_attempts: int = 3,
        log_sink=None,
        provider_factory: Callable[..., BaseLLMProvider] = create_llm_provider,
    ):
        self.api_keys = {"openai": openai_api_key, "gemini": gemini_api_key}
        self.models = {"openai": openai_model, "gemini": gemini_model}
        self.grounded_models = [m for m in grounded_models if m]
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.log_sink = log_sink
        self._provider_factory = provider_factory
        self._providers: Dict[Tuple[str, str], BaseLLMProvider] = {}

    def route(self, use_grounding: bool, model_choice: str) -> Tuple[str, str]:
        """(provider, quota tier) a batch will be sent to."""
        if model_choice not in MODEL_CHOICES:
            raise ValueError(f"Unknown model choice: {model_choice}")
        if use_grounding:
            return "gemini", "grounded"
        return model_choice, "standard"

    def check_configured(self, use_grounding: bool, model_choice: str) -> None:
        provider, tier = self.route(use_grounding, model_choice)
        if not self.api_keys.get(provider):
            raise ConfigurationError(f"{provider.upper()}_API_KEY is not configured")
        if tier == "grounded" and not self.grounded_models:
            raise ConfigurationError("No grounded Gemini models configured")
        if tier == "standard" and not self.models.get(provider):
            raise ConfigurationError(f"No {provider} model configured")

    def get_provider(self, provider: str, model: str) -> BaseLLMProvider:
        key = (provider, model)
        if key not in self._providers:
            inner = self._provider_factory(
                provider=provider, api_key=self.api_keys.get(provider, ""), model_name=model,
            )
            self._providers[key] = LoggingProvider(inner, log_sink=self.log_sink)
        return self._providers[key]

    async def _score_with(
        self, provider_id: str, model: str, grounding: bool,
        system_prompt: str, user_prompt: str,
    ) -> Dict[str, BatchScore]:
        provider = self.get_provider(provider_id, model)
        options = CallOptions(
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            json_response=True,
            timeout=self.timeout,
            grounding=grounding,
        )

        async def attempt(label: str) -> Dict[str, BatchScore]:
            response = await provider.call(system_prompt, user_prompt, options, action=label)
            return parse_scores(response.json())

        return await with_retry(attempt, self.max_attempts, action=f"scoreBatch:{model}")

    async def score_batch(
        self,
        scenario: ScenarioContext,
        countries: Sequence[str],
        use_grounding: bool = False,
        model_choice: str = "openai",
    ) -> Dict[str, BatchScore]:
        if not countries:
            return {}
        provider_id, tier = self.route(use_grounding, model_choice)
        system_prompt = build_system_prompt(scenario, use_grounding)
        user_prompt = build_user_prompt(countries)

        if tier == "grounded":
            chain = ModelFallbackChain(
                [ModelCandidate(model=m, grounding=True) for m in self.grounded_models]
            )
            scores = await chain.run(
                lambda candidate: self._score_with(
                    provider_id, candidate.model, candidate.grounding, system_prompt, user_prompt,
                )
            )
        else:
            scores = await self._score_with(
                provider_id, self.models[provider_id], False, system_prompt, user_prompt,
            )

        logger.debug(f"Batch of {len(countries)} countries returned {len(scores)} scores")
        return scores
