from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union
import logging
import time

from backend.recommender.cache import RecommendationCache
from backend.recommender.catalog import held_items, load_available_items, load_candidate_pool
from backend.recommender.entities import (
    ConvertedAction,
    FeedbackAction,
    RecContext,
    RecItem,
    time_of_day_for_hour,
)
from backend.recommender.errors import StoreUnavailable, ValidationError
from backend.recommender.feedback import RecommendationLog, parse_action
from backend.recommender.preferences import PreferenceStore
from backend.recommender.related import rank_friend_picks, rank_similar_items
from backend.recommender.scorer import rank_candidates, rank_trending
from backend.recommender.side_effects import SideEffectQueue
from backend.recommender.store import RecordStore
from backend.recommender.variants import AlgorithmVariant, variant_for_user

logger = logging.getLogger(__name__)

HOME = "home"
FRIENDS = "friends"
SIMILAR = "similar"


@dataclass
class RecommendationResult:
    user_id: str
    surface: str
    items: List[RecItem]
    source: str  # "cache" | "fresh"
    algorithm: str
    related: Dict[str, List[RecItem]] = field(default_factory=dict)


class RecommendationService:
    """
    Cache-first serving:
    - fresh cache entry with enough items -> return it
    - otherwise score the pool, answer right away and hand the full list
      to the side-effect queue for caching

    Every list handed back to a caller is also queued for logging as shown.
    """

    def __init__(
        self,
        store: RecordStore,
        preferences: PreferenceStore,
        cache: RecommendationCache,
        log: RecommendationLog,
        side_effects: SideEffectQueue,
        clock: Callable[[], float] = time.time,
        ab_testing: bool = False,
        default_algorithm: str = "hybrid",
        cache_ttl_hours: float = 1.0,
        cache_fill: int = 20,
        related_limit: int = 10,
    ):
        self.store = store
        self.preferences = preferences
        self.cache = cache
        self.log = log
        self.side_effects = side_effects
        self.clock = clock
        self.ab_testing = ab_testing
        self.default_algorithm = default_algorithm
        self.cache_ttl_hours = cache_ttl_hours
        self.cache_fill = cache_fill
        self.related_limit = related_limit

    def build_context(self, surface: str = HOME, session_id: Optional[str] = None) -> RecContext:
        hour = datetime.fromtimestamp(self.clock()).hour
        return RecContext(page=surface, session_id=session_id, time_of_day=time_of_day_for_hour(hour))

    def variant_for(self, user_id: str) -> AlgorithmVariant:
        return variant_for_user(user_id, self.ab_testing, self.default_algorithm)

    def score(
        self,
        user_id: str,
        limit: int,
        variant: Optional[AlgorithmVariant] = None,
        context: Optional[RecContext] = None,
    ) -> List[RecItem]:
        variant = variant or self.variant_for(user_id)
        profile = self.preferences.get(user_id)
        pool = load_candidate_pool(self.store, user_id)
        now = self.clock()

        if not pool:
            logger.info("empty candidate pool for user=%s, falling back to trending", user_id)
            return rank_trending(load_available_items(self.store), limit, now)

        if profile is None:
            logger.info("cold start for user=%s, item-intrinsic scoring only", user_id)
        logger.debug("scoring user=%s pool=%d variant=%s", user_id, len(pool), variant.name)

        return rank_candidates(profile, pool, variant, limit, now, context)

    def related_lists(self, user_id: str, items: List[RecItem]) -> Dict[str, List[RecItem]]:
        """Side lists stored with the home entry: friend picks and more like the top item."""
        related = {FRIENDS: rank_friend_picks(self.store, self.preferences, user_id, self.related_limit)}
        if items:
            similar = rank_similar_items(
                self.store, items[0].item_id, self.related_limit, exclude=held_items(self.store, user_id)
            )
            related[SIMILAR] = similar or []
        return related

    def _log_shown(self, user_id: str, items: List[RecItem], surface: str, session_id: Optional[str]) -> None:
        if items:
            self.side_effects.submit("log-shown", self.log.log_shown, user_id, items, surface, session_id)

    def get_recommendations(
        self,
        user_id: str,
        surface: str = HOME,
        limit: int = 20,
        force_refresh: bool = False,
        context: Optional[RecContext] = None,
    ) -> RecommendationResult:
        """
        The cache only answers when its entry holds at least `limit` items.
        A user whose pool is smaller than `limit` therefore re-scores on
        every request; that case is logged.
        """
        if not user_id:
            raise ValidationError("user_id", "is required")
        if limit < 1:
            raise ValidationError("limit", "must be >= 1")
        if not surface:
            raise ValidationError("surface", "is required")

        context = context or self.build_context(surface)

        if not force_refresh:
            try:
                cached = self.cache.get_fresh_recommendations(user_id, surface, limit)
                related = self.cache.get_fresh_related_lists(user_id, surface) if cached is not None else {}
            except StoreUnavailable:
                logger.warning("cache read failed for user=%s surface=%s, scoring fresh", user_id, surface)
                cached = None
            if cached is not None:
                algorithm = cached[0].algorithm if cached else self.default_algorithm
                self._log_shown(user_id, cached, surface, context.session_id)
                return RecommendationResult(user_id, surface, cached, "cache", algorithm, related)

        scored_at = self.clock()
        variant = self.variant_for(user_id)
        # score at least a full cache fill so later, longer requests can still hit
        scored = self.score(user_id, max(limit, self.cache_fill), variant, context)
        related = self.related_lists(user_id, scored) if surface == HOME else {}
        algorithm = scored[0].algorithm if scored else variant.name

        logger.info(
            "scored %d items for user=%s surface=%s time_of_day=%s session=%s",
            len(scored), user_id, surface,
            context.time_of_day.value if context.time_of_day else None, context.session_id,
        )
        if len(scored) < limit:
            logger.info(
                "only %d items available for user=%s limit=%d, cache cannot serve this limit",
                len(scored), user_id, limit,
            )

        if scored:
            self.side_effects.submit(
                "cache-populate",
                self.cache.cache_recommendations,
                user_id,
                surface,
                scored,
                related,
                self.cache_ttl_hours,
                algorithm,
                scored_at,
            )

        served = scored[:limit]
        self._log_shown(user_id, served, surface, context.session_id)
        return RecommendationResult(user_id, surface, served, "fresh", algorithm, related)

    def get_friend_recommendations(
        self,
        user_id: str,
        limit: int = 10,
        force_refresh: bool = False,
        session_id: Optional[str] = None,
    ) -> RecommendationResult:
        """
        Friend picks, read from the home entry when it is fresh. A miss is
        scored directly and not cached on its own; the next home request
        stores it.
        """
        if not user_id:
            raise ValidationError("user_id", "is required")
        if limit < 1:
            raise ValidationError("limit", "must be >= 1")

        picks = None
        if not force_refresh:
            try:
                picks = self.cache.get_fresh_related(user_id, HOME, FRIENDS, limit)
            except StoreUnavailable:
                logger.warning("cache read failed for user=%s surface=%s, scoring fresh", user_id, FRIENDS)

        source = "cache"
        if picks is None:
            source = "fresh"
            picks = rank_friend_picks(self.store, self.preferences, user_id, limit)

        self._log_shown(user_id, picks, FRIENDS, session_id)
        algorithm = picks[0].algorithm if picks else "friend_activity"
        return RecommendationResult(user_id, FRIENDS, picks, source, algorithm)

    def similar_items(self, item_id: str, limit: int = 10, user_id: Optional[str] = None) -> Optional[List[RecItem]]:
        """More like `item_id`; the user's own shelves are left out when a user is given."""
        if limit < 1:
            raise ValidationError("limit", "must be >= 1")
        exclude = held_items(self.store, user_id) if user_id else ()
        items = rank_similar_items(self.store, item_id, limit, exclude=exclude)
        if items and user_id:
            self._log_shown(user_id, items, SIMILAR, None)
        return items

    def refresh(self, user_id: str, surface: str = HOME, limit: Optional[int] = None) -> int:
        """Score and cache synchronously (precompute jobs). Returns items cached."""
        scored_at = self.clock()
        variant = self.variant_for(user_id)
        scored = self.score(user_id, limit or self.cache_fill, variant, self.build_context(surface))
        related = self.related_lists(user_id, scored) if surface == HOME else {}
        algorithm = scored[0].algorithm if scored else variant.name
        self.cache.cache_recommendations(
            user_id, surface, scored, related, self.cache_ttl_hours, algorithm, scored_at
        )
        return len(scored)

    def record_feedback(
        self,
        user_id: str,
        item_id: str,
        action: Union[str, FeedbackAction],
        converted_action: Union[str, ConvertedAction, None] = None,
        surface: str = "home",
        session_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        act = parse_action(action)

        served = None
        algorithm = None
        if act is FeedbackAction.SHOWN and user_id and item_id:
            # carry algorithm/position/score of the served list into the row
            served = self.cache.lookup_item(user_id, surface, item_id)
            algorithm = served.algorithm if served else self.variant_for(user_id).name

        return self.log.update_recommendation_status(
            user_id,
            item_id,
            act,
            converted_action=converted_action,
            surface=surface,
            session_id=session_id,
            algorithm=algorithm,
            position=served.position if served else None,
            score=served.score if served else None,
            reason=served.reason if served else None,
        )
