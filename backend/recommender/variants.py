from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional
import hashlib

from backend.recommender import tuning
from backend.recommender.entities import DIMENSIONS, Candidate, RecContext, TimeOfDay
from backend.recommender.errors import ValidationError


# repeats already placed in the list -> novelty in [0, 1]
DiversityDecay = Callable[[int], float]

# (candidate, serving context) -> multiplier on the weighted score
ContextAdjust = Callable[[Candidate, Optional[RecContext]], float]


def no_context_adjust(c: Candidate, context: Optional[RecContext]) -> float:
    return 1.0


def short_reads_in_morning(
    max_pages: int = tuning.MORNING_SHORT_BOOK_PAGES,
    boost: float = tuning.MORNING_SHORT_BOOK_BOOST,
) -> ContextAdjust:
    def adjust(c: Candidate, context: Optional[RecContext]) -> float:
        if context is None or context.time_of_day is not TimeOfDay.MORNING:
            return 1.0
        if c.page_count and c.page_count < max_pages:
            return boost
        return 1.0

    return adjust


def exponential_decay(rate: float = 0.5) -> DiversityDecay:
    def decay(repeats: int) -> float:
        return rate ** max(0, repeats)

    return decay


def linear_decay(step: float = 0.25) -> DiversityDecay:
    def decay(repeats: int) -> float:
        return max(0.0, 1.0 - step * max(0, repeats))

    return decay


def no_decay() -> DiversityDecay:
    return lambda repeats: 1.0


@dataclass(frozen=True)
class AlgorithmVariant:
    name: str
    weights: Dict[str, float]
    decay: DiversityDecay
    traffic_share: int = 0  # percent of users when A/B testing is on
    context_adjust: ContextAdjust = no_context_adjust

    def weight(self, dimension: str) -> float:
        return self.weights.get(dimension, 0.0)


def _weights(**w: float) -> Dict[str, float]:
    missing = [d for d in DIMENSIONS if d not in w]
    if missing:
        raise ValueError(f"variant weights missing {missing}")
    return w


VARIANTS: Dict[str, AlgorithmVariant] = {
    "hybrid": AlgorithmVariant(
        name="hybrid",
        weights=_weights(
            genre=0.38, author=0.18, quality=0.14, friends=0.10,
            trending=0.08, recency=0.05, diversity=0.07,
        ),
        decay=exponential_decay(0.5),
        traffic_share=50,
        context_adjust=short_reads_in_morning(),
    ),
    "high_friend_weight": AlgorithmVariant(
        name="high_friend_weight",
        weights=_weights(
            genre=0.28, author=0.18, quality=0.14, friends=0.20,
            trending=0.08, recency=0.05, diversity=0.07,
        ),
        decay=exponential_decay(0.5),
        traffic_share=25,
        context_adjust=short_reads_in_morning(),
    ),
    "high_diversity": AlgorithmVariant(
        name="high_diversity",
        weights=_weights(
            genre=0.34, author=0.15, quality=0.12, friends=0.09,
            trending=0.07, recency=0.05, diversity=0.18,
        ),
        decay=exponential_decay(0.3),
        traffic_share=25,
        context_adjust=short_reads_in_morning(),
    ),
}


def variant_names() -> List[str]:
    return sorted(VARIANTS)


def get_variant(name: str) -> AlgorithmVariant:
    try:
        return VARIANTS[name]
    except KeyError:
        raise ValidationError("algorithm", f"unknown algorithm '{name}'") from None


def _bucket(user_id: str) -> int:
    d = hashlib.sha256(user_id.encode("utf-8")).digest()
    return int.from_bytes(d[:8], "big") % 100


def variant_for_user(user_id: str, ab_enabled: bool, default: str = "hybrid") -> AlgorithmVariant:
    """Stable assignment: the same user always lands in the same bucket."""
    if not ab_enabled:
        return get_variant(default)

    bucket = _bucket(user_id)
    cumulative = 0
    for name in sorted(VARIANTS, key=lambda n: (-VARIANTS[n].traffic_share, n)):
        cumulative += VARIANTS[name].traffic_share
        if bucket < cumulative:
            return VARIANTS[name]
    return get_variant(default)
