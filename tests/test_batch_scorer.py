"""
Unit tests for services/scoring/batch_scorer.py and prompts.py.

Covers score-map parsing (invalid entries dropped, not zeroed), routing
between providers and the grounded fallback chain, and prompt layout.
"""

from __future__ import annotations

import asyncio
import json

import pytest

from stancemap.services.scoring.batch_scorer import BatchScorer, filter_to_known, parse_scores
from stancemap.services.scoring.errors import ConfigurationError, ProviderError
from stancemap.services.scoring.models import BatchScore
from stancemap.services.scoring.prompts import (
    SCORING_INSTRUCTIONS,
    WEB_SEARCH_INSTRUCTIONS,
    build_system_prompt,
    build_user_prompt,
)

from .conftest import FakeProviderFactory, RecordingSink, countries_in, make_scenario, score_reply


def _scorer(factory, **overrides) -> BatchScorer:
    kwargs = dict(
        openai_api_key="sk-test",
        openai_model="gpt-4o-mini",
        gemini_api_key="gm-test",
        gemini_model="gemini-2.5-flash-lite",
        grounded_models=["gemini-2.5-pro", "gemini-2.5-flash"],
        log_sink=RecordingSink(),
        provider_factory=factory,
    )
    kwargs.update(overrides)
    return BatchScorer(**kwargs)


class TestParseScores:

    def test_non_numeric_score_is_dropped_not_zeroed(self):
        data = json.loads('{"scores":{"Xanadu":{"score":"n/a"},"Legit":{"score":0.5}}}')
        assert parse_scores(data) == {"Legit": BatchScore(0.5, None)}

    def test_nan_infinite_and_bool_scores_are_dropped(self):
        data = json.loads('{"scores":{"A":{"score":NaN},"B":{"score":Infinity},"C":{"score":true},"D":{"score":null},"E":{"score":-0.25}}}')
        assert list(parse_scores(data)) == ["E"]

    def test_out_of_range_scores_are_clamped(self):
        data = {"scores": {"Hi": {"score": 1.7}, "Lo": {"score": -3}}}
        result = parse_scores(data)
        assert result["Hi"].score == 1.0
        assert result["Lo"].score == -1.0

    def test_reasoning_is_stripped_and_bare_numbers_accepted(self):
        data = {"scores": {"Chile": {"score": 0, "reasoning": "  Neutral.  "}, "Peru": -0.2}}
        result = parse_scores(data)
        assert result["Chile"] == BatchScore(0.0, "Neutral.")
        assert result["Peru"] == BatchScore(-0.2, None)

    def test_missing_scores_object_is_retryable(self):
        with pytest.raises(ProviderError) as exc_info:
            parse_scores({"ratings": {}})
        assert exc_info.value.retryable

    def test_filter_to_known_drops_unknown_names(self):
        scores = {"France": BatchScore(0.1), "Frankreich": BatchScore(0.2)}
        assert set(filter_to_known(scores, ["France", "Spain"])) == {"France"}


class TestPrompts:

    def test_static_block_first_scenario_last(self):
        scenario = make_scenario(["Canada"])
        prompt = build_system_prompt(scenario, use_grounding=True)
        assert prompt.startswith(SCORING_INSTRUCTIONS)
        assert prompt.index(WEB_SEARCH_INSTRUCTIONS) < prompt.index("SCENARIO: US Annexation of Greenland")
        assert "SIDE A (Supports)" in prompt
        assert "SIDE B (Opposes)" in prompt

    def test_web_search_block_only_when_grounded(self):
        assert WEB_SEARCH_INSTRUCTIONS not in build_system_prompt(make_scenario(["Canada"]))

    def test_static_prefix_is_identical_across_scenarios(self):
        a = build_system_prompt(make_scenario(["Canada"], title="One"))
        b = build_system_prompt(make_scenario(["Canada"], title="Two"))
        assert a.split("SCENARIO:")[0] == b.split("SCENARIO:")[0]

    def test_user_prompt_lists_countries_with_recent_context(self):
        prompt = build_user_prompt(["Canada", "Sweden"])
        assert prompt.startswith("Rate these countries: Canada, Sweden")
        assert "Sweden joined NATO" in prompt
        assert countries_in(prompt) == ["Canada", "Sweden"]

    def test_user_prompt_without_context(self):
        assert build_user_prompt(["Canada"]) == "Rate these countries: Canada"


class TestBatchScorer:

    def test_invalid_scores_from_reply_are_excluded(self):
        factory = FakeProviderFactory(
            lambda model, system, user, options: '{"scores":{"Xanadu":{"score":"n/a"},"Legit":{"score":0.5}}}'
        )
        result = asyncio.run(_scorer(factory).score_batch(make_scenario(["Legit"]), ["Xanadu", "Legit"]))
        assert result == {"Legit": BatchScore(0.5, None)}

    def test_openai_choice_uses_openai_model(self):
        factory = FakeProviderFactory()
        asyncio.run(_scorer(factory).score_batch(make_scenario(["Peru"]), ["Peru"], False, "openai"))
        assert factory.built == [("openai", "gpt-4o-mini")]
        assert factory.calls[0]["options"].grounding is False
        assert factory.calls[0]["options"].json_response is True

    def test_gemini_choice_uses_lightweight_model(self):
        factory = FakeProviderFactory()
        asyncio.run(_scorer(factory).score_batch(make_scenario(["Peru"]), ["Peru"], False, "gemini"))
        assert factory.built == [("gemini", "gemini-2.5-flash-lite")]

    def test_grounding_falls_back_to_next_model_on_fatal_error(self):
        def handler(model, system, user, options):
            if model == "gemini-2.5-pro":
                raise ProviderError.fatal("HTTP 429: quota exhausted", status_code=429)
            return score_reply(countries_in(user), 0.25)

        factory = FakeProviderFactory(handler)
        result = asyncio.run(_scorer(factory).score_batch(make_scenario(["Peru"]), ["Peru"], True, "openai"))
        assert result["Peru"].score == 0.25
        assert [c["model"] for c in factory.calls] == ["gemini-2.5-pro", "gemini-2.5-flash"]
        assert all(c["options"].grounding for c in factory.calls)

    def test_retryable_reply_is_retried_on_same_model(self):
        replies = iter(["", "not json at all", score_reply(["Peru"])])
        factory = FakeProviderFactory(lambda model, system, user, options: next(replies))
        result = asyncio.run(_scorer(factory).score_batch(make_scenario(["Peru"]), ["Peru"]))
        assert "Peru" in result
        assert len(factory.calls) == 3
        assert {c["model"] for c in factory.calls} == {"gpt-4o-mini"}

    def test_each_attempt_is_logged_with_attempt_label(self):
        replies = iter(["{}", score_reply(["Peru"])])
        factory = FakeProviderFactory(lambda model, system, user, options: next(replies))
        sink = RecordingSink()
        asyncio.run(_scorer(factory, log_sink=sink).score_batch(make_scenario(["Peru"]), ["Peru"]))
        assert [r.action for r in sink.records] == [
            "scoreBatch:gpt-4o-mini (attempt 1/3)",
            "scoreBatch:gpt-4o-mini (attempt 2/3)",
        ]
        assert sink.records[0].error is not None
        assert sink.records[1].error is None

    def test_unknown_model_choice(self):
        with pytest.raises(ValueError):
            _scorer(FakeProviderFactory()).route(False, "claude")

    def test_missing_key_is_a_configuration_error(self):
        scorer = _scorer(FakeProviderFactory(), gemini_api_key="")
        scorer.check_configured(False, "openai")
        with pytest.raises(ConfigurationError, match="GEMINI_API_KEY"):
            scorer.check_configured(True, "openai")
