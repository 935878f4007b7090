"""Run planner: independent shuffled partitions of the country list."""
import math
import random
from typing import List, Optional, Sequence, TypeVar

T = TypeVar("T")


def chunk(items: Sequence[T], size: int) -> List[List[T]]:
    if size < 1:
        raise ValueError(f"batch_size must be >= 1, got {size}")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def shuffled(items: Sequence[T], rng: random.Random) -> List[T]:
    """Fisher-Yates shuffle into a new list."""
    result = list(items)
    for i in range(len(result) - 1, 0, -1):
        j = rng.randint(0, i)
        result[i], result[j] = result[j], result[i]
    return result


def count_batches(country_count: int, batch_size: int, num_runs: int) -> int:
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    return math.ceil(country_count / batch_size) * num_runs


def plan_runs(
    countries: Sequence[str],
    num_runs: int,
    batch_size: int,
    rng: Optional[random.Random] = None,
) -> List[List[List[str]]]:
    """One list of batches per run; each run is a fresh permutation."""
    if num_runs < 1:
        raise ValueError(f"num_runs must be >= 1, got {num_runs}")
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    rng = rng or random.Random()
    return [chunk(shuffled(countries, rng), batch_size) for _ in range(num_runs)]
