from dataclasses import dataclass
from typing import Callable, Optional
import time

from backend.app.config import Settings, settings as default_settings
from backend.app.db import connect, connection_factory, init_db
from backend.recommender.cache import RecommendationCache
from backend.recommender.events import EventTracker
from backend.recommender.feedback import RecommendationLog
from backend.recommender.preferences import PreferenceStore
from backend.recommender.service import RecommendationService
from backend.recommender.side_effects import SideEffectQueue
from backend.recommender.store import RecordStore, SqliteRecordStore


@dataclass
class Pipeline:
    store: RecordStore
    preferences: PreferenceStore
    cache: RecommendationCache
    log: RecommendationLog
    events: EventTracker
    recommendations: RecommendationService
    side_effects: SideEffectQueue

    def close(self) -> None:
        self.side_effects.shutdown(wait=True)


def build_pipeline(
    store: RecordStore,
    cfg: Optional[Settings] = None,
    clock: Callable[[], float] = time.time,
    side_effects: Optional[SideEffectQueue] = None,
) -> Pipeline:
    cfg = cfg or default_settings
    side_effects = side_effects or SideEffectQueue(
        max_workers=cfg.side_effect_workers,
        max_pending=cfg.side_effect_max_pending,
        inline=cfg.side_effects_inline,
    )

    preferences = PreferenceStore(
        store,
        clock=clock,
        top_weight=cfg.onboarding_top_weight,
        step=cfg.onboarding_weight_step,
        min_weight=cfg.onboarding_min_weight,
    )
    cache = RecommendationCache(store, default_ttl_hours=cfg.cache_ttl_hours, clock=clock)
    log = RecommendationLog(store, clock=clock)
    events = EventTracker(store, preferences, cache, side_effects, clock=clock)
    recommendations = RecommendationService(
        store,
        preferences,
        cache,
        log,
        side_effects,
        clock=clock,
        ab_testing=cfg.ab_testing_enabled,
        default_algorithm=cfg.default_algorithm,
        cache_ttl_hours=cfg.cache_ttl_hours,
        cache_fill=cfg.default_limit,
        related_limit=cfg.related_limit,
    )
    return Pipeline(store, preferences, cache, log, events, recommendations, side_effects)


def build_sqlite_pipeline(cfg: Optional[Settings] = None, db_path: Optional[str] = None) -> Pipeline:
    # make sure the records table exists before the first request
    conn = connect(db_path)
    init_db(conn)
    conn.close()
    return build_pipeline(SqliteRecordStore(connection_factory(db_path)), cfg)
