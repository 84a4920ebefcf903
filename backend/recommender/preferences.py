from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
import logging
import time

from backend.recommender.entities import PreferenceProfile
from backend.recommender.errors import ConcurrentUpdate, ValidationError
from backend.recommender.store import RecordStore
from backend.recommender.tuning import normalize_genre, normalize_genres

logger = logging.getLogger(__name__)

PREFERENCES = "preferences"


class PreferenceStore:
    """
    Per-user genre weights and favored authors.

    Writes are additive and versioned: each mutation re-reads the profile
    and commits with a conditional update on `version`, so two concurrent
    merges never drop each other's signal.
    """

    def __init__(
        self,
        store: RecordStore,
        clock: Callable[[], float] = time.time,
        top_weight: float = 5.0,
        step: float = 0.5,
        min_weight: float = 0.5,
        max_retries: int = 5,
    ):
        self.store = store
        self.clock = clock
        self.top_weight = top_weight
        self.step = step
        self.min_weight = min_weight
        self.max_retries = max_retries

    def get(self, user_id: str) -> Optional[PreferenceProfile]:
        doc = self.store.find(PREFERENCES, user_id)
        return PreferenceProfile.from_doc(doc) if doc else None

    def _mutate(self, user_id: str, change: Callable[[PreferenceProfile], None]) -> PreferenceProfile:
        for _attempt in range(self.max_retries):
            doc = self.store.find(PREFERENCES, user_id)
            now = self.clock()

            if doc is None:
                profile = PreferenceProfile(user_id=user_id)
                change(profile)
                profile.version = 1
                profile.updated_at = now
                if self.store.create(PREFERENCES, user_id, profile.to_doc()):
                    return profile
                continue

            profile = PreferenceProfile.from_doc(doc)
            seen_version = profile.version
            change(profile)
            profile.version = seen_version + 1
            profile.updated_at = now
            if self.store.conditional_update(
                PREFERENCES, user_id, {"version": seen_version}, profile.to_doc()
            ):
                return profile

            logger.debug("preference profile %s moved to a newer version, retrying", user_id)

        raise ConcurrentUpdate(f"preference update for {user_id} kept conflicting")

    def onboarding_weights(self, genres: Sequence[str]) -> List[Tuple[str, float]]:
        """Ranked picks -> descending weights, first pick heaviest."""
        ranked = normalize_genres(genres)
        return [
            (g, max(self.top_weight - i * self.step, self.min_weight))
            for i, g in enumerate(ranked)
        ]

    def merge_onboarding_preferences(
        self,
        user_id: str,
        genres: Sequence[str],
        authors: Sequence[str],
    ) -> Dict[str, Any]:
        if not user_id:
            raise ValidationError("user_id", "is required")
        if not isinstance(genres, (list, tuple)) or not genres:
            raise ValidationError("genres", "at least one genre is required")
        if any(not isinstance(g, str) or not g.strip() for g in genres):
            raise ValidationError("genres", "genres must be non-empty strings")
        if not isinstance(authors, (list, tuple)):
            raise ValidationError("authors", "must be a list")
        if any(not isinstance(a, str) for a in authors):
            raise ValidationError("authors", "authors must be strings")

        weighted = self.onboarding_weights(genres)
        picked_authors = {a.strip() for a in authors if a.strip()}

        def change(profile: PreferenceProfile) -> None:
            for genre, weight in weighted:
                # never lower signal that is already there
                profile.genre_weights[genre] = max(profile.genre_weights.get(genre, 0.0), weight)
            profile.favored_authors = frozenset(profile.favored_authors | picked_authors)
            profile.onboarded_at = self.clock()

        profile = self._mutate(user_id, change)
        logger.info("merged onboarding preferences for user=%s genres=%d authors=%d",
                    user_id, len(weighted), len(picked_authors))

        return {
            "user_id": user_id,
            "genres": [{"genre": g, "weight": w} for g, w in weighted],
            "genre_weights": dict(profile.genre_weights),
            "authors": sorted(profile.favored_authors),
        }

    def apply_signal(self, user_id: str, genres: Sequence[str], delta: float) -> PreferenceProfile:
        """Nudge the weights of the given genres by delta (floored at 0)."""
        touched = [normalize_genre(g) for g in genres if g and g.strip()]

        def change(profile: PreferenceProfile) -> None:
            for g in touched:
                profile.genre_weights[g] = max(0.0, profile.genre_weights.get(g, 0.0) + delta)

        return self._mutate(user_id, change)
