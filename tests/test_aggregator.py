"""
Unit tests for services/scoring/aggregator.py.

Covers mean-then-clamp scoring, median reasoning selection (including the
tie-break), zero-run countries, and the compact map summary.
"""

from __future__ import annotations

import pytest

from stancemap.services.scoring.aggregator import (
    RunAccumulator,
    aggregate_country,
    aggregate_runs,
    build_map_scores,
    count_sides,
    reasoning_preview,
)
from stancemap.services.scoring.models import BatchScore, CountryScoreResult


class TestAggregateRuns:

    def test_median_reasoning_and_mean_score(self):
        runs = [BatchScore(0.2, "a"), BatchScore(0.5, "b"), BatchScore(-0.1, "c")]
        result = aggregate_country(runs)
        assert result.reasoning == "a"
        assert result.score == pytest.approx(0.2)

    def test_even_count_uses_index_n_over_two(self):
        runs = [BatchScore(0.4, "w"), BatchScore(-0.2, "x"), BatchScore(0.1, "y"), BatchScore(0.9, "z")]
        # sorted: x(-0.2), y(0.1), w(0.4), z(0.9) -> index 2
        assert aggregate_country(runs).reasoning == "w"

    def test_tied_scores_keep_arrival_order(self):
        runs = [BatchScore(0.5, "first"), BatchScore(0.5, "second"), BatchScore(0.5, "third")]
        assert aggregate_country(runs).reasoning == "second"

    def test_single_run_passes_through(self):
        assert aggregate_country([BatchScore(-0.7, "only")]) == BatchScore(-0.7, "only")

    def test_mean_is_clamped(self):
        assert aggregate_country([BatchScore(1.4), BatchScore(1.2)]).score == 1.0

    def test_zero_run_countries_are_reported_neutral_without_reasoning(self):
        result = aggregate_runs({"Canada": [BatchScore(0.3, "ally")]}, countries=["Canada", "Chad"])
        assert result["Canada"] == BatchScore(0.3, "ally")
        assert result["Chad"] == BatchScore(0.0, None)


class TestRunAccumulator:

    def test_collects_runs_in_arrival_order(self):
        acc = RunAccumulator()
        acc.add({"Japan": BatchScore(0.1, "run1")})
        acc.add({"Japan": BatchScore(0.3, "run2"), "Peru": BatchScore(-0.4, "p")})
        assert [r.reasoning for r in acc.runs_for("Japan")] == ["run1", "run2"]
        assert acc.countries == ["Japan", "Peru"]
        assert len(acc) == 2

    def test_aggregate_for_skips_countries_without_runs(self):
        acc = RunAccumulator()
        acc.add({"Japan": BatchScore(0.1), "Peru": BatchScore(0.5)})
        assert set(acc.aggregate_for(["Japan", "Chile"])) == {"Japan"}

    def test_aggregate_includes_requested_missing_countries(self):
        acc = RunAccumulator()
        acc.add({"Japan": BatchScore(0.2, "j")})
        assert acc.aggregate(["Japan", "Chile"])["Chile"] == BatchScore(0.0, None)


SENTENCE = (
    "Denmark opposes the move because Greenland is part of the Kingdom "
    "and its sovereignty is not negotiable."
)


class TestMapSummary:

    def test_short_reasoning_is_unchanged(self):
        assert reasoning_preview("Close NATO ally.") == "Close NATO ally."
        assert reasoning_preview(None) is None

    def test_long_reasoning_is_cut_at_sentence_end(self):
        text = SENTENCE + " It would raise the issue with EU partners and push for a strong collective response in every forum"
        assert len(text) > 160
        assert reasoning_preview(text) == SENTENCE

    def test_long_reasoning_without_sentences_is_cut_at_space(self):
        preview = reasoning_preview("word " * 50)
        assert preview.endswith("...")
        assert len(preview) <= 163
        assert set(preview[:-3].split()) == {"word"}

    def test_build_map_scores_is_compact_and_sorted(self):
        scores = [
            CountryScoreResult("Mexico", -0.12345, "Opposes."),
            CountryScoreResult("Canada", 0.5, None),
        ]
        assert build_map_scores(scores) == [
            {"c": "Canada", "s": 0.5, "r": None},
            {"c": "Mexico", "s": -0.123, "r": "Opposes."},
        ]

    def test_count_sides_thresholds(self):
        scores = [
            CountryScoreResult("A", 0.11), CountryScoreResult("B", 0.1),
            CountryScoreResult("C", 0.0), CountryScoreResult("D", -0.1),
            CountryScoreResult("E", -0.5), CountryScoreResult("F", 1.0),
        ]
        assert count_sides(scores) == {"a": 2, "b": 1, "n": 3}
