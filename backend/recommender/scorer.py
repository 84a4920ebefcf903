from __future__ import annotations

from collections import Counter
from typing import Dict, List, Optional, Sequence, Tuple

from backend.recommender import tuning
from backend.recommender.entities import (
    DIMENSIONS,
    Candidate,
    PreferenceProfile,
    RecContext,
    RecItem,
    ScoreBreakdown,
)
from backend.recommender.variants import AlgorithmVariant


def genre_score(c: Candidate, profile: Optional[PreferenceProfile]) -> float:
    if profile is None or not c.genres:
        return 0.0

    best = 0.0
    matches = 0
    for g in c.genres:
        w = profile.genre_weights.get(g, 0.0)
        if w > 0:
            best = max(best, w)
            matches += 1

    bonus = tuning.MULTI_GENRE_BONUS if matches > 1 else 0.0
    return min(1.0, best / tuning.GENRE_WEIGHT_SCALE + bonus)


def author_score(c: Candidate, profile: Optional[PreferenceProfile]) -> float:
    if profile is None or not profile.favored_authors:
        return 0.0
    favored = {a.casefold() for a in profile.favored_authors}
    return 1.0 if any(a.casefold() in favored for a in c.authors) else 0.0


def quality_score(c: Candidate) -> float:
    if c.avg_rating <= 0:
        return tuning.NEUTRAL_QUALITY
    confidence = min(c.ratings_count / tuning.RATING_CONFIDENCE_COUNT, 1.0)
    normalized = min(c.avg_rating / 5.0, 1.0)
    floor = tuning.RATING_FLOOR_SHARE
    return normalized * (floor + (1.0 - floor) * confidence)


def friends_score(c: Candidate, profile: Optional[PreferenceProfile]) -> float:
    # social boost is personal signal, so cold-start users get none
    if profile is None:
        return 0.0
    return min(1.0, c.friend_engagements / tuning.FRIENDS_SATURATION)


def trending_score(c: Candidate) -> float:
    velocity = (
        tuning.TRENDING_READ_WEIGHT * c.recent_reads
        + tuning.TRENDING_LIKE_WEIGHT * c.recent_likes
        + tuning.TRENDING_TBR_WEIGHT * c.recent_tbr
    )
    return max(0.0, min(velocity / tuning.TRENDING_SCALE, 1.0))


def recency_score(c: Candidate, now: float) -> float:
    ts = c.freshness_ts
    if ts <= 0:
        return 0.0
    months = (now - ts) / tuning.SECONDS_PER_MONTH
    if months < 0 or months > tuning.RECENCY_WINDOW_MONTHS:
        return 0.0
    return 1.0 - months / tuning.RECENCY_WINDOW_MONTHS


def breakdown_for(
    c: Candidate,
    profile: Optional[PreferenceProfile],
    now: float,
) -> ScoreBreakdown:
    """Per-candidate dimensions. diversity is filled in by the ranking pass."""
    return ScoreBreakdown(
        genre=genre_score(c, profile),
        author=author_score(c, profile),
        quality=quality_score(c),
        friends=friends_score(c, profile),
        trending=trending_score(c),
        recency=recency_score(c, now),
        diversity=1.0,
    )


def weighted_score(b: ScoreBreakdown, variant: AlgorithmVariant) -> float:
    return sum(variant.weight(d) * getattr(b, d) for d in DIMENSIONS)


def adjusted_score(
    c: Candidate,
    b: ScoreBreakdown,
    variant: AlgorithmVariant,
    context: Optional[RecContext],
) -> float:
    return weighted_score(b, variant) * variant.context_adjust(c, context)


def _rank_key(score: float, c: Candidate) -> Tuple[float, float, str]:
    # rounding keeps float noise from reordering equal scores
    return (-round(score, 9), -c.freshness_ts, c.item_id)


def _repeats(c: Candidate, genres_placed: Counter, authors_placed: Counter) -> int:
    g = max((genres_placed[x] for x in c.genres), default=0)
    a = max((authors_placed[x.casefold()] for x in c.authors), default=0)
    return g + a


def _diversify(
    ranked: List[Tuple[Candidate, ScoreBreakdown]],
    variant: AlgorithmVariant,
    limit: int,
    context: Optional[RecContext] = None,
) -> List[Tuple[Candidate, ScoreBreakdown, float]]:
    """
    Greedy second pass over the score-sorted list: every pick recomputes
    the diversity dimension of the remaining candidates against what is
    already placed, using the variant's decay function.
    """
    remaining = list(ranked)
    genres_placed: Counter = Counter()
    authors_placed: Counter = Counter()
    out: List[Tuple[Candidate, ScoreBreakdown, float]] = []

    while remaining and len(out) < limit:
        best_idx = 0
        best_key = None
        best_novelty = 1.0
        best_score = 0.0
        for idx, (c, b) in enumerate(remaining):
            novelty = variant.decay(_repeats(c, genres_placed, authors_placed))
            b.diversity = novelty
            score = adjusted_score(c, b, variant, context)
            key = _rank_key(score, c)
            if best_key is None or key < best_key:
                best_idx, best_key, best_novelty, best_score = idx, key, novelty, score

        c, b = remaining.pop(best_idx)
        b.diversity = best_novelty
        out.append((c, b, best_score))
        genres_placed.update(set(c.genres))
        authors_placed.update({a.casefold() for a in c.authors})

    return out


def explain(c: Candidate, b: ScoreBreakdown, profile: Optional[PreferenceProfile], variant: AlgorithmVariant) -> str:
    templates = tuning.EXPLANATIONS
    contributions = [
        (variant.weight(d) * getattr(b, d), d)
        for d in DIMENSIONS
        if d != "diversity"
    ]
    # highest contribution first, fixed dimension order on ties
    contributions.sort(key=lambda x: (-x[0], DIMENSIONS.index(x[1])))
    top_value, top = contributions[0]
    if top_value <= 0:
        return templates["fallback"]

    first_genre = c.genres[0] if c.genres else None

    if top == "genre":
        matched: List[Tuple[float, str]] = []
        if profile is not None:
            matched = [(profile.genre_weights.get(g, 0.0), g) for g in c.genres]
            matched = [m for m in matched if m[0] > 0]
        if matched:
            genre = max(matched, key=lambda m: (m[0], m[1]))[1]
            return templates["genre"].format(genre=genre)
        return templates["genre_generic"]

    if top == "author":
        favored = {a.casefold() for a in profile.favored_authors} if profile else set()
        author = next((a for a in c.authors if a.casefold() in favored), None)
        return templates["author"].format(author=author or "this author")

    if top == "quality":
        return templates["quality"]

    if top == "friends":
        if c.friend_engagements == 1:
            return templates["friends_single"]
        return templates["friends"].format(count=c.friend_engagements)

    if top == "trending":
        if first_genre:
            return templates["trending"].format(genre=first_genre)
        return templates["trending_generic"]

    if first_genre:
        return templates["recency"].format(genre=first_genre)
    return templates["recency_generic"]


def rank_candidates(
    profile: Optional[PreferenceProfile],
    pool: Sequence[Candidate],
    variant: AlgorithmVariant,
    limit: int,
    now: float,
    context: Optional[RecContext] = None,
) -> List[RecItem]:
    """
    Hybrid scorer:
    - score every candidate on the seven dimensions (no profile -> only
      quality/trending/recency carry signal)
    - scale by the variant's context adjustment (1.0 without a context)
    - sort by score, then item recency, then item id
    - re-rank greedily with the diversity dimension, assign positions

    Pure over its arguments; `now` is passed in so results are reproducible.
    """
    if limit <= 0:
        return []

    seen: Dict[str, Candidate] = {}
    for c in pool:
        seen.setdefault(c.item_id, c)

    scored = [(c, breakdown_for(c, profile, now)) for c in seen.values()]
    scored.sort(key=lambda cb: _rank_key(adjusted_score(cb[0], cb[1], variant, context), cb[0]))

    picked = _diversify(scored, variant, limit, context)

    return [
        RecItem(
            item_id=c.item_id,
            score=score,
            reason=explain(c, b, profile, variant),
            algorithm=variant.name,
            position=pos,
            score_breakdown=b,
        )
        for pos, (c, b, score) in enumerate(picked)
    ]


TRENDING_ALGORITHM = "trending"


def rank_trending(pool: Sequence[Candidate], limit: int, now: float) -> List[RecItem]:
    """Popularity-only list: trending activity and rating, no personal signal."""
    if limit <= 0:
        return []

    seen: Dict[str, Candidate] = {}
    for c in pool:
        seen.setdefault(c.item_id, c)

    scored = []
    for c in seen.values():
        b = ScoreBreakdown(quality=quality_score(c), trending=trending_score(c), recency=recency_score(c, now))
        score = tuning.FALLBACK_TRENDING_WEIGHT * b.trending + tuning.FALLBACK_QUALITY_WEIGHT * b.quality
        scored.append((c, b, score))
    scored.sort(key=lambda x: _rank_key(x[2], x[0]))

    return [
        RecItem(
            item_id=c.item_id,
            score=score,
            reason=tuning.EXPLANATIONS["popular"],
            algorithm=TRENDING_ALGORITHM,
            position=pos,
            score_breakdown=b,
        )
        for pos, (c, b, score) in enumerate(scored[:limit])
    ]
