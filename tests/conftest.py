"""
Shared fakes and helpers for the scoring pipeline tests.

The fakes stand in for the SQL stores and the LLM SDKs so the whole
pipeline (planner, dispatcher, scorer, aggregator, tracker) runs in-process
with no network and no database. Async code is driven with asyncio.run.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import re
import uuid
from types import SimpleNamespace
from typing import Callable, Optional

import pytest

from stancemap.services.job_worker import JobRegistry
from stancemap.services.scoring.batch_scorer import BatchScorer
from stancemap.services.scoring.errors import ProviderError
from stancemap.services.scoring.llm_base import BaseLLMProvider
from stancemap.services.scoring.models import (
    JobSnapshot, JobStatus, ScenarioContext, Side,
)
from stancemap.services.scoring.orchestrator import ScoringService
from stancemap.services.scoring.rate_limiter import RateLimiterRegistry


_COUNTRY_LINE_RE = re.compile(r"Rate these countries: (.*)")


def countries_in(user_prompt: str) -> list[str]:
    """Recover the country list from a scoring user prompt."""
    match = _COUNTRY_LINE_RE.search(user_prompt)
    return [c.strip() for c in match.group(1).split(",")] if match else []


def score_reply(countries, score: float = 0.5, reasoning: str = "Aligned with side A.") -> str:
    return json.dumps({
        "scores": {c: {"score": score, "reasoning": f"{c}: {reasoning}"} for c in countries}
    })


def make_scenario(countries, title: str = "US Annexation of Greenland") -> ScenarioContext:
    return ScenarioContext(
        id=uuid.uuid4(),
        title=title,
        description="The potential acquisition of Greenland by the United States.",
        side_a=Side("Supports", "Countries that would support the annexation"),
        side_b=Side("Opposes", "Countries that would oppose the annexation"),
        countries=list(countries),
    )


# ---------------------------------------------------------------------------
# Provider fakes
# ---------------------------------------------------------------------------

class FakeProvider(BaseLLMProvider):
    """Provider whose blocking call is a scripted handler.

    ``handler(model, system_prompt, user_prompt, options)`` returns the raw
    reply text or raises. Every call is recorded on the shared ``calls`` list.
    """

    def __init__(self, provider: str, model_name: str, handler: Callable, calls: list):
        super().__init__(api_key="test-key", model_name=model_name)
        self.provider_id = provider
        self._handler = handler
        self._calls = calls

    def _sync_call(self, system_prompt, user_prompt, options):
        self._calls.append({
            "provider": self.provider_id,
            "model": self.model_name,
            "system_prompt": system_prompt,
            "user_prompt": user_prompt,
            "options": options,
        })
        text = self._handler(self.model_name, system_prompt, user_prompt, options)
        return text, {"status": 200}


class FakeProviderFactory:
    """Drop-in for create_llm_provider that builds FakeProviders."""

    def __init__(self, handler: Optional[Callable] = None):
        self.handler = handler or (lambda model, system, user, options: score_reply(countries_in(user)))
        self.calls: list = []
        self.built: list = []

    def __call__(self, provider: str, api_key: str = "", model_name: str = ""):
        self.built.append((provider, model_name))
        return FakeProvider(provider, model_name, lambda *a: self.handler(*a), self.calls)


class RecordingSink:
    def __init__(self):
        self.records = []

    def append(self, record) -> None:
        self.records.append(record)


# ---------------------------------------------------------------------------
# Store fakes
# ---------------------------------------------------------------------------

class FakeReferenceStore:

    def __init__(self, *scenarios: ScenarioContext, active_countries=None):
        self.scenarios = {s.id: s for s in scenarios}
        self.active_countries = list(active_countries or [])
        self.map_version_id = uuid.uuid4()
        # Rows served by list_scenarios: anything with ScenarioResponse attributes
        self.rows: list = []

    async def get_active_map_version(self):
        if not self.active_countries:
            return None
        return SimpleNamespace(
            id=self.map_version_id, version="v1", countries=list(self.active_countries),
            is_active=True, created_at=None,
        )

    async def get_active_country_list(self):
        return list(self.active_countries)

    async def list_scenarios(self, active=True, source=None, limit=50):
        rows = [
            r for r in self.rows
            if (active is None or r.is_active == active) and (not source or r.source == source)
        ]
        return rows[:limit]

    async def get_scenario(self, scenario_id):
        return self.scenarios.get(scenario_id)


class FakeScoreStore:

    def __init__(self):
        self.scores: dict = {}
        self.upserts: list = []
        self.summaries: dict = {}
        self.active: dict = {}

    def seed(self, scenario_id, results):
        for r in results:
            self.scores.setdefault(scenario_id, {})[r.country_name] = r

    async def upsert_scores(self, scenario_id, scores):
        self.upserts.append(list(scores))
        for s in scores:
            assert -1.0 <= s.score <= 1.0
            self.scores.setdefault(scenario_id, {})[s.country_name] = s

    async def get_scores(self, scenario_id):
        rows = self.scores.get(scenario_id, {})
        return [rows[name] for name in sorted(rows)]

    async def save_map_summary(self, scenario_id, map_scores, score_counts):
        self.summaries[scenario_id] = (map_scores, score_counts)

    async def set_scenario_active(self, scenario_id, active=True):
        self.active[scenario_id] = active


class FakeJobStore:

    def __init__(self):
        self.jobs: dict = {}
        self.updates: list = []

    async def create_job(self, scenario_id, *, job_type="score", params=None,
                         total_batches=0, total_countries=0, total_runs=1):
        job_id = uuid.uuid4()
        self.jobs[job_id] = JobSnapshot(
            id=job_id,
            scenario_id=scenario_id,
            job_type=job_type,
            total_batches=total_batches,
            total_countries=total_countries,
            total_runs=total_runs,
        )
        return job_id

    async def update_job(self, job_id, changes):
        self.updates.append((job_id, dict(changes)))
        job = self.jobs[job_id]
        for key, value in changes.items():
            if key == "status":
                value = JobStatus(value)
            setattr(job, key, value)

    async def get_job(self, job_id):
        job = self.jobs.get(job_id)
        return dataclasses.replace(job) if job else None

    async def list_jobs(self, scenario_id=None, status=None, limit=50):
        jobs = [j for j in self.jobs.values() if scenario_id is None or j.scenario_id == scenario_id]
        return jobs[:limit]


# ---------------------------------------------------------------------------
# Service builder
# ---------------------------------------------------------------------------

def build_service(
    *scenarios: ScenarioContext,
    factory: Optional[FakeProviderFactory] = None,
    openai_api_key: str = "sk-test",
    gemini_api_key: str = "gm-test",
    rpm_limits=None,
    max_attempts: int = 3,
    warm_cache: bool = False,
) -> ScoringService:
    factory = factory or FakeProviderFactory()
    sink = RecordingSink()
    scorer = BatchScorer(
        openai_api_key=openai_api_key,
        openai_model="gpt-4o-mini",
        gemini_api_key=gemini_api_key,
        gemini_model="gemini-2.5-flash-lite",
        grounded_models=["gemini-2.5-pro", "gemini-2.5-flash"],
        max_attempts=max_attempts,
        log_sink=sink,
        provider_factory=factory,
    )
    service = ScoringService(
        reference_store=FakeReferenceStore(*scenarios),
        score_store=FakeScoreStore(),
        job_store=FakeJobStore(),
        scorer=scorer,
        registry=JobRegistry(),
        limiters=RateLimiterRegistry(),
        rpm_limits=rpm_limits or {},
        warm_cache=warm_cache,
        parse_model="gpt-4o-mini",
        log_sink=sink,
    )
    service.factory = factory
    return service


def run(coro):
    return asyncio.run(coro)


def fatal_for(failing: set, score: float = 0.5):
    """Handler that fails fatally for batches containing any of ``failing``."""
    def handler(model, system, user, options):
        batch = countries_in(user)
        if failing.intersection(batch):
            raise ProviderError.fatal("HTTP 500: upstream error", status_code=500)
        return score_reply(batch, score)
    return handler


@pytest.fixture
def five_countries():
    return ["Canada", "Denmark", "France", "Japan", "Mexico"]
