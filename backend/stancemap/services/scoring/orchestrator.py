"""Scoring service: the entry point routes call.

start_scoring / rerun_missing create the job row synchronously and hand the
pipeline to the job registry as a background task. The pipeline plans runs,
dispatches every batch, saves scores as batches settle, then writes the
final aggregate and the scenario's map summary.
"""
import logging
import random
import uuid
from typing import Dict, List, Optional, Sequence, Tuple

from fastapi import Request

from stancemap.services.job_worker import JobRegistry, safe_error_message
from stancemap.services.scoring.aggregator import RunAccumulator, build_map_scores, count_sides
from stancemap.services.scoring.batch_scorer import MODEL_CHOICES, BatchScorer, filter_to_known
from stancemap.services.scoring.dispatcher import dispatch_all
from stancemap.services.scoring.errors import (
    ConfigurationError, ProviderError, ReferenceDataError, ScenarioNotFoundError,
)
from stancemap.services.scoring.models import (
    BatchScore, CallOptions, CountryScoreResult, JobSnapshot, RerunResult,
    ScenarioDraft, Side, StartResult,
)
from stancemap.services.scoring.planner import count_batches, plan_runs
from stancemap.services.scoring.progress import ProgressTracker
from stancemap.services.scoring.prompts import PARSE_PROMPT_SYSTEM
from stancemap.services.scoring.rate_limiter import RateLimiterRegistry
from stancemap.services.scoring.retry import with_retry

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 100


def _to_results(scores: Dict[str, BatchScore]) -> List[CountryScoreResult]:
    return [
        CountryScoreResult(country_name=name, score=s.score, reasoning=s.reasoning)
        for name, s in scores.items()
    ]


class ScoringService:

    def __init__(
        self,
        *,
        reference_store,
        score_store,
        job_store,
        scorer: BatchScorer,
        registry: Optional[JobRegistry] = None,
        limiters: Optional[RateLimiterRegistry] = None,
        rpm_limits: Optional[Dict[Tuple[str, str], int]] = None,
        default_num_runs: int = 2,
        default_batch_size: int = 10,
        max_runs: int = 3,
        max_batch_size: int = 25,
        default_model_choice: str = "openai",
        warm_cache: bool = True,
        parse_model: str = "",
        log_sink=None,
        rng: Optional[random.Random] = None,
    ):
        self.reference_store = reference_store
        self.score_store = score_store
        self.job_store = job_store
        self.scorer = scorer
        self.registry = registry or JobRegistry()
        self.limiters = limiters or RateLimiterRegistry()
        self.rpm_limits = rpm_limits or {}
        self.default_num_runs = default_num_runs
        self.default_batch_size = default_batch_size
        self.max_runs = max_runs
        self.max_batch_size = max_batch_size
        self.default_model_choice = default_model_choice
        self.warm_cache = warm_cache
        self.parse_model = parse_model
        self.log_sink = log_sink
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(cls, settings, **overrides) -> "ScoringService":
        """Wire the SQL stores, AI log sink and providers from app settings."""
        from stancemap.services.scoring.stores import (
            AiLogSink, SqlJobStore, SqlReferenceStore, SqlScoreStore,
        )

        log_sink = overrides.pop("log_sink", None) or AiLogSink()
        scorer = BatchScorer(
            openai_api_key=settings.OPENAI_API_KEY,
            openai_model=settings.OPENAI_MODEL,
            gemini_api_key=settings.GEMINI_API_KEY,
            gemini_model=settings.GEMINI_MODEL,
            grounded_models=settings.grounded_models,
            temperature=settings.SCORING_TEMPERATURE,
            max_tokens=settings.SCORING_MAX_TOKENS or None,
            timeout=settings.SCORING_REQUEST_TIMEOUT or None,
            max_attempts=settings.SCORING_MAX_ATTEMPTS,
            log_sink=log_sink,
        )
        kwargs = dict(
            reference_store=SqlReferenceStore(),
            score_store=SqlScoreStore(),
            job_store=SqlJobStore(),
            scorer=scorer,
            limiters=RateLimiterRegistry(buffer=settings.RATE_LIMIT_BUFFER_MS / 1000),
            rpm_limits={
                ("openai", "standard"): settings.OPENAI_RPM,
                ("gemini", "standard"): settings.GEMINI_RPM,
                ("gemini", "grounded"): settings.GEMINI_GROUNDED_RPM,
            },
            default_num_runs=settings.SCORING_NUM_RUNS,
            default_batch_size=settings.SCORING_BATCH_SIZE,
            max_runs=settings.SCORING_MAX_RUNS,
            max_batch_size=settings.SCORING_MAX_BATCH_SIZE,
            default_model_choice=settings.DEFAULT_MODEL_CHOICE,
            warm_cache=settings.SCORING_WARM_CACHE,
            parse_model=settings.OPENAI_PARSE_MODEL or settings.OPENAI_MODEL,
            log_sink=log_sink,
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    # ── Argument handling ──────────────────────────────────────────

    def resolve_params(
        self,
        num_runs: Optional[int] = None,
        batch_size: Optional[int] = None,
        model_choice: Optional[str] = None,
    ) -> Tuple[int, int, str]:
        """Fill defaults and validate. Raises ValueError on bad arguments."""
        num_runs = self.default_num_runs if num_runs is None else num_runs
        batch_size = self.default_batch_size if batch_size is None else batch_size
        model_choice = model_choice or self.default_model_choice
        if not 1 <= num_runs <= self.max_runs:
            raise ValueError(f"numRuns must be between 1 and {self.max_runs}")
        if not 1 <= batch_size <= self.max_batch_size:
            raise ValueError(f"batchSize must be between 1 and {self.max_batch_size}")
        if model_choice not in MODEL_CHOICES:
            raise ValueError(f"modelChoice must be one of {', '.join(MODEL_CHOICES)}")
        return num_runs, batch_size, model_choice

    # ── Exposed operations ─────────────────────────────────────────

    async def start_scoring(
        self,
        scenario_id: uuid.UUID,
        num_runs: Optional[int] = None,
        batch_size: Optional[int] = None,
        grounding: bool = False,
        model_choice: Optional[str] = None,
    ) -> StartResult:
        """Create a scoring job and start it in the background."""
        num_runs, batch_size, model_choice = self.resolve_params(num_runs, batch_size, model_choice)
        scenario = await self.reference_store.get_scenario(scenario_id)
        if scenario is None:
            raise ScenarioNotFoundError(f"Scenario {scenario_id} not found")

        country_count = len(await self._countries_for(scenario))
        total_batches = count_batches(country_count, batch_size, num_runs)
        job_id = await self.job_store.create_job(
            scenario_id,
            job_type="score",
            params={
                "num_runs": num_runs, "batch_size": batch_size,
                "grounding": grounding, "model_choice": model_choice,
            },
            total_batches=total_batches,
            total_countries=country_count,
            total_runs=num_runs,
        )
        logger.info(
            "Job %s: scoring scenario %s (%d countries, %d runs, %d batches, %s%s)",
            job_id, scenario_id, country_count, num_runs, total_batches,
            model_choice, ", grounded" if grounding else "",
        )
        self.registry.spawn(job_id, self._run_pipeline(
            job_id, scenario_id, None, num_runs, batch_size, grounding, model_choice,
            total_batches, country_count,
        ))
        return StartResult(job_id=job_id, scenario_id=scenario_id)

    async def _countries_for(self, scenario) -> List[str]:
        """The scenario's own map version, else the currently active country list."""
        if scenario.countries:
            return list(scenario.countries)
        return await self.reference_store.get_active_country_list()

    async def get_job_status(self, job_id: uuid.UUID) -> Optional[JobSnapshot]:
        return await self.job_store.get_job(job_id)

    async def list_jobs(self, scenario_id: Optional[uuid.UUID] = None, limit: int = 50) -> List[JobSnapshot]:
        return await self.job_store.list_jobs(scenario_id=scenario_id, limit=limit)

    async def rerun_missing(
        self,
        scenario_id: uuid.UUID,
        grounding: bool = False,
        model_choice: Optional[str] = None,
        batch_size: Optional[int] = None,
    ) -> RerunResult:
        """Score only the countries that have no stored score yet (single run)."""
        _, batch_size, model_choice = self.resolve_params(1, batch_size, model_choice)
        scenario = await self.reference_store.get_scenario(scenario_id)
        if scenario is None:
            raise ScenarioNotFoundError(f"Scenario {scenario_id} not found")

        existing = {s.country_name for s in await self.score_store.get_scores(scenario_id)}
        missing = [c for c in await self._countries_for(scenario) if c not in existing]
        if not missing:
            logger.info("Scenario %s has no missing countries", scenario_id)
            return RerunResult(rerun_count=0)

        total_batches = count_batches(len(missing), batch_size, 1)
        job_id = await self.job_store.create_job(
            scenario_id,
            job_type="rerun-missing",
            params={"batch_size": batch_size, "grounding": grounding, "model_choice": model_choice},
            total_batches=total_batches,
            total_countries=len(missing),
            total_runs=1,
        )
        logger.info("Job %s: re-scoring %d missing countries for %s", job_id, len(missing), scenario_id)
        self.registry.spawn(job_id, self._run_pipeline(
            job_id, scenario_id, missing, 1, batch_size, grounding, model_choice,
            total_batches, len(missing),
        ))
        return RerunResult(rerun_count=len(missing), job_id=job_id)

    async def parse_prompt(self, prompt: str) -> ScenarioDraft:
        """Turn a free-text prompt into a titled, two-sided scenario draft."""
        if not prompt or not prompt.strip():
            raise ValueError("prompt must be non-empty")
        if not self.scorer.api_keys.get("openai"):
            raise ConfigurationError("OPENAI_API_KEY is not configured")
        provider = self.scorer.get_provider("openai", self.parse_model)
        options = CallOptions(temperature=0.3, json_response=True, timeout=self.scorer.timeout)

        async def attempt(label: str) -> ScenarioDraft:
            response = await provider.call(PARSE_PROMPT_SYSTEM, prompt.strip(), options, action=label)
            return self._draft_from_reply(response.json())

        return await with_retry(attempt, self.scorer.max_attempts, action="parsePromptToSides")

    @staticmethod
    def _draft_from_reply(data) -> ScenarioDraft:
        if not isinstance(data, dict):
            raise ProviderError.retryable_error("Parse reply is not a JSON object")
        side_a, side_b = data.get("sideA"), data.get("sideB")
        title = data.get("title")
        if not isinstance(title, str) or not title.strip():
            raise ProviderError.retryable_error("Parse reply has no title")
        if not isinstance(side_a, dict) or not isinstance(side_b, dict):
            raise ProviderError.retryable_error("Parse reply is missing sideA/sideB")
        actor = data.get("primaryActor")
        return ScenarioDraft(
            title=title.strip()[:TITLE_MAX_LENGTH],
            description=str(data.get("description") or "").strip(),
            side_a=Side.from_dict(side_a),
            side_b=Side.from_dict(side_b),
            primary_actor=actor.strip() if isinstance(actor, str) and actor.strip() else None,
        )

    async def list_scenarios(
        self, active: Optional[bool] = True, source: Optional[str] = None, limit: int = 50,
    ) -> list:
        """Scenarios for the list view; a scenario turns active once a job has scored it."""
        return await self.reference_store.list_scenarios(active=active, source=source, limit=limit)

    async def get_active_map_version(self):
        return await self.reference_store.get_active_map_version()

    async def refresh_map_summary(self, scenario_id: uuid.UUID) -> None:
        scores = await self.score_store.get_scores(scenario_id)
        await self.score_store.save_map_summary(
            scenario_id, build_map_scores(scores), count_sides(scores),
        )

    # ── Pipeline ───────────────────────────────────────────────────

    async def _run_pipeline(
        self,
        job_id: uuid.UUID,
        scenario_id: uuid.UUID,
        countries: Optional[Sequence[str]],
        num_runs: int,
        batch_size: int,
        grounding: bool,
        model_choice: str,
        total_batches: int,
        total_countries: int,
    ) -> None:
        tracker = ProgressTracker(self.job_store, job_id, total_batches, total_countries, num_runs)

        try:
            self.scorer.check_configured(grounding, model_choice)
            scenario = await self.reference_store.get_scenario(scenario_id)
            if scenario is None:
                raise ScenarioNotFoundError(f"Scenario {scenario_id} not found")
            canonical = await self._countries_for(scenario)
            if not canonical:
                raise ReferenceDataError(f"No country list found for scenario {scenario_id}")
            targets = list(countries) if countries is not None else canonical
            runs = plan_runs(targets, num_runs, batch_size, self._rng)
            batches = [batch for run in runs for batch in run]
        except Exception as e:
            logger.error(f"Job {job_id} failed before dispatch: {safe_error_message(e)}")
            await tracker.fail(safe_error_message(e))
            return

        if len(batches) != tracker.total_batches or len(targets) != tracker.total_countries:
            # Country list changed between job creation and start.
            tracker.total_batches = len(batches)
            tracker.total_countries = len(targets)
            await self.job_store.update_job(job_id, {
                "total_batches": len(batches), "total_countries": len(targets),
            })

        provider, tier = self.scorer.route(grounding, model_choice)
        limiter = self.limiters.get(provider, tier, self.rpm_limits.get((provider, tier), 0))
        warm_first = self.warm_cache and provider == "gemini"
        accumulator = RunAccumulator()
        single_run = num_runs == 1

        async def process(batch: List[str]) -> Dict[str, BatchScore]:
            scores = await self.scorer.score_batch(scenario, batch, grounding, model_choice)
            return filter_to_known(scores, canonical)

        async def on_settled(index: int, outcome) -> None:
            if isinstance(outcome, Exception):
                await tracker.record_batch(0, failed=True)
                return
            newly_scored = sum(1 for c in outcome if not accumulator.runs_for(c))
            accumulator.add(outcome)
            if single_run:
                to_save = _to_results(outcome)
            else:
                to_save = _to_results(accumulator.aggregate_for(outcome.keys()))
            try:
                await self.score_store.upsert_scores(scenario_id, to_save)
            except Exception as e:
                # The final upsert writes these again.
                logger.error(f"Job {job_id}: incremental save failed: {safe_error_message(e)}")
            await tracker.record_batch(newly_scored)

        try:
            results = await dispatch_all(
                batches, process,
                rate_limiter=limiter, warm_first=warm_first, on_settled=on_settled,
            )
            failed = sum(1 for r in results if isinstance(r, Exception))

            final = accumulator.aggregate_for(accumulator.countries)
            await self.score_store.upsert_scores(scenario_id, _to_results(final))
            never_scored = [c for c in targets if c not in final]
            if never_scored:
                logger.warning(
                    "Job %s: %d countries have no successful run: %s",
                    job_id, len(never_scored), ", ".join(never_scored[:10]),
                )
            await self.refresh_map_summary(scenario_id)
            if final:
                await self.score_store.set_scenario_active(scenario_id, True)
        except Exception as e:
            logger.exception(f"Job {job_id} failed while saving results")
            await tracker.fail(safe_error_message(e))
            return

        await tracker.complete(failed)


def get_scoring_service(request: Request) -> ScoringService:
    """FastAPI dependency: the app-wide service built in the lifespan hook."""
    return request.app.state.scoring_service
