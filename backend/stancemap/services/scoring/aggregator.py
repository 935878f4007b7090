"""Score aggregation across runs, plus the compact map summary."""
import re
from collections import defaultdict
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from stancemap.services.scoring.batch_scorer import clamp_score
from stancemap.services.scoring.models import BatchScore, CountryScoreResult

PREVIEW_LENGTH = 160
SIDE_THRESHOLD = 0.1

_SENTENCE_END_RE = re.compile(r"[.!?](?=\s|$)")


def aggregate_country(runs: Sequence[BatchScore]) -> BatchScore:
    """Mean score (clamped) with the median run's reasoning.

    The median is index ``n // 2`` of the runs sorted ascending by score,
    which is the upper-middle one for even counts. sorted() is stable, so tied
    scores keep the order the runs arrived in.
    """
    if not runs:
        return BatchScore(score=0.0, reasoning=None)
    mean = sum(r.score for r in runs) / len(runs)
    ordered = sorted(runs, key=lambda r: r.score)
    return BatchScore(score=clamp_score(mean), reasoning=ordered[len(ordered) // 2].reasoning)


def aggregate_runs(
    per_country_runs: Mapping[str, Sequence[BatchScore]],
    countries: Optional[Iterable[str]] = None,
) -> Dict[str, BatchScore]:
    """Aggregate every country. Names in ``countries`` with no runs get score 0, no reasoning."""
    names: List[str] = list(per_country_runs.keys())
    if countries is not None:
        names += [c for c in countries if c not in per_country_runs]
    return {name: aggregate_country(per_country_runs.get(name, ())) for name in names}


class RunAccumulator:
    """Collects per-country runs as batches settle, in arrival order."""

    def __init__(self):
        self._runs: Dict[str, List[BatchScore]] = defaultdict(list)

    def add(self, scores: Mapping[str, BatchScore]) -> None:
        for country, score in scores.items():
            self._runs[country].append(score)

    def runs_for(self, country: str) -> List[BatchScore]:
        return list(self._runs.get(country, ()))

    @property
    def countries(self) -> List[str]:
        return list(self._runs.keys())

    def aggregate(self, countries: Optional[Iterable[str]] = None) -> Dict[str, BatchScore]:
        return aggregate_runs(self._runs, countries)

    def aggregate_for(self, countries: Iterable[str]) -> Dict[str, BatchScore]:
        """Current aggregate for just these countries (those with at least one run)."""
        return {c: aggregate_country(self._runs[c]) for c in countries if self._runs.get(c)}

    def __len__(self) -> int:
        return len(self._runs)


def reasoning_preview(reasoning: Optional[str], limit: int = PREVIEW_LENGTH) -> Optional[str]:
    """Shorten reasoning for map tooltips, cutting at a sentence end or a space."""
    if not reasoning:
        return None
    text = " ".join(reasoning.split())
    if len(text) <= limit:
        return text
    head = text[:limit]
    ends = [m.end() for m in _SENTENCE_END_RE.finditer(head)]
    if ends and ends[-1] >= limit // 2:
        return head[:ends[-1]]
    space = head.rfind(" ")
    if space > 0:
        return head[:space].rstrip(",;:") + "..."
    return head + "..."


def build_map_scores(scores: Iterable[CountryScoreResult]) -> List[dict]:
    """Compact per-country entries stored on the scenario for the map view."""
    return [
        {"c": s.country_name, "s": round(s.score, 3), "r": reasoning_preview(s.reasoning)}
        for s in sorted(scores, key=lambda s: s.country_name)
    ]


def count_sides(scores: Iterable[CountryScoreResult]) -> Dict[str, int]:
    counts = {"a": 0, "b": 0, "n": 0}
    for s in scores:
        if s.score > SIDE_THRESHOLD:
            counts["a"] += 1
        elif s.score < -SIDE_THRESHOLD:
            counts["b"] += 1
        else:
            counts["n"] += 1
    return counts
