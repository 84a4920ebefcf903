"""
Secondary lists that sit next to the main ranking: books the people a
user follows loved, and books similar to a given one.
"""
from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Set, Tuple
import math

from backend.recommender import tuning
from backend.recommender.catalog import (
    engaged_items,
    following_of,
    get_item,
    held_items,
    load_available_items,
)
from backend.recommender.entities import PreferenceProfile, RecItem, ScoreBreakdown
from backend.recommender.preferences import PreferenceStore
from backend.recommender.scorer import quality_score
from backend.recommender.store import RecordStore

FRIEND_ALGORITHM = "friend_activity"
SIMILAR_ALGORITHM = "similar_items"


def taste_similarity(a: Optional[PreferenceProfile], b: Optional[PreferenceProfile]) -> float:
    """Cosine similarity of the two genre-weight vectors, clamped to [0, 1]."""
    if a is None or b is None:
        return 0.0

    genres = set(a.genre_weights) | set(b.genre_weights)
    dot = sum(a.genre_weights.get(g, 0.0) * b.genre_weights.get(g, 0.0) for g in genres)
    norm_a = math.sqrt(sum(w * w for w in a.genre_weights.values()))
    norm_b = math.sqrt(sum(w * w for w in b.genre_weights.values()))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return max(0.0, min(dot / (norm_a * norm_b), 1.0))


def friendship_strength(
    store: RecordStore,
    preferences: PreferenceStore,
    user_id: str,
    friend_id: str,
    user_following: Set[str],
) -> float:
    """
    Base strength, plus:
    - a bonus when the friend follows back
    - a capped bonus per account both of them follow
    - genre taste overlap
    """
    strength = tuning.FRIENDSHIP_BASE

    friend_following = set(following_of(store, friend_id))
    if user_id in friend_following:
        strength += tuning.MUTUAL_FOLLOW_BONUS

    mutual = len(friend_following & user_following)
    strength += min(mutual * tuning.MUTUAL_FRIEND_WEIGHT, tuning.MAX_MUTUAL_FRIEND_BONUS)

    similarity = taste_similarity(preferences.get(user_id), preferences.get(friend_id))
    strength += similarity * tuning.TASTE_SIMILARITY_WEIGHT

    return min(strength, 1.0)


def _friend_reason(fans: List[Tuple[str, float]]) -> str:
    templates = tuning.EXPLANATIONS
    ranked = [f for f, _ in sorted(fans, key=lambda x: (-x[1], x[0]))]
    if len(ranked) == 1:
        return templates["friend_pick_one"].format(first=ranked[0])
    if len(ranked) == 2:
        return templates["friend_pick_two"].format(first=ranked[0], second=ranked[1])
    others = len(ranked) - 2
    if others == 1:
        return templates["friend_pick_one_more"].format(first=ranked[0], second=ranked[1])
    return templates["friend_pick_many"].format(first=ranked[0], second=ranked[1], others=others)


def rank_friend_picks(
    store: RecordStore,
    preferences: PreferenceStore,
    user_id: str,
    limit: int,
) -> List[RecItem]:
    """
    Books loved by the accounts a user follows, weighted by how strong each
    friendship is and how many friends loved the book. Items the user
    already holds and unavailable items are left out.
    """
    if limit <= 0:
        return []

    following = set(following_of(store, user_id))
    if not following:
        return []

    fans_by_item: Dict[str, List[Tuple[str, float]]] = {}
    for friend_id in sorted(following):
        strength = friendship_strength(store, preferences, user_id, friend_id, following)
        for item_id in set(engaged_items(store, friend_id)):
            fans_by_item.setdefault(item_id, []).append((friend_id, strength))

    held = set(held_items(store, user_id))
    available = {c.item_id: c for c in load_available_items(store)}

    picks = []
    for item_id, fans in fans_by_item.items():
        c = available.get(item_id)
        if c is None or item_id in held:
            continue

        strength_part = min(sum(s for _, s in fans) / tuning.FRIEND_STRENGTH_SCALE, 1.0)
        count_part = min(len(fans) / tuning.FRIEND_COUNT_SCALE, 1.0)
        b = ScoreBreakdown(
            quality=quality_score(c),
            friends=tuning.FRIEND_PICK_STRENGTH_WEIGHT * strength_part
            + tuning.FRIEND_PICK_COUNT_WEIGHT * count_part,
        )
        score = b.friends + tuning.FRIEND_PICK_QUALITY_WEIGHT * b.quality
        picks.append((item_id, b, score, fans))

    picks.sort(key=lambda p: (-round(p[2], 9), p[0]))

    return [
        RecItem(
            item_id=item_id,
            score=score,
            reason=_friend_reason(fans),
            algorithm=FRIEND_ALGORITHM,
            position=pos,
            score_breakdown=b,
        )
        for pos, (item_id, b, score, fans) in enumerate(picks[:limit])
    ]


def rank_similar_items(
    store: RecordStore,
    item_id: str,
    limit: int,
    exclude: Iterable[str] = (),
) -> Optional[List[RecItem]]:
    """
    Available items sharing a genre or an author with `item_id`.
    None when the item is not in the catalog.
    """
    source = get_item(store, item_id)
    if source is None:
        return None
    if limit <= 0:
        return []

    skip = set(exclude) | {item_id}
    genres = set(source.genres)
    authors = {a.casefold() for a in source.authors}

    scored = []
    for c in load_available_items(store):
        if c.item_id in skip:
            continue
        shared_genres = genres & set(c.genres)
        shared_author = next((a for a in c.authors if a.casefold() in authors), None)
        if not shared_genres and shared_author is None:
            continue

        b = ScoreBreakdown(
            genre=len(shared_genres) / len(genres | set(c.genres)),
            author=1.0 if shared_author else 0.0,
            quality=quality_score(c),
        )
        score = (
            tuning.SIMILAR_GENRE_WEIGHT * b.genre
            + tuning.SIMILAR_AUTHOR_WEIGHT * b.author
            + tuning.SIMILAR_QUALITY_WEIGHT * b.quality
        )
        scored.append((c, b, score, shared_author))

    scored.sort(key=lambda x: (-round(x[2], 9), x[0].item_id))

    out: List[RecItem] = []
    seen_editions = set()
    for c, b, score, shared_author in scored:
        if len(out) >= limit:
            break
        # several editions of one book collapse to the best-scored one
        if c.title:
            edition = (c.title.casefold().strip(), c.authors[0].casefold() if c.authors else "")
            if edition in seen_editions:
                continue
            seen_editions.add(edition)

        if shared_author:
            reason = tuning.EXPLANATIONS["similar_author"].format(author=shared_author)
        else:
            reason = tuning.EXPLANATIONS["similar"]
        out.append(RecItem(
            item_id=c.item_id,
            score=score,
            reason=reason,
            algorithm=SIMILAR_ALGORITHM,
            position=len(out),
            score_breakdown=b,
        ))
    return out
