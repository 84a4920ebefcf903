from typing import List

import pytest

from backend.app.config import Settings
from backend.app.db import connect, connection_factory, init_db
from backend.app.wiring import build_pipeline
from backend.recommender.catalog import put_item, set_following, set_holdings, set_positive_engagements
from backend.recommender.entities import RecItem, ScoreBreakdown
from backend.recommender.side_effects import SideEffectQueue
from backend.recommender.store import MemoryRecordStore, SqliteRecordStore

T0 = 1_760_000_000.0
MONTH = 30 * 24 * 3600


class FakeClock:
    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryRecordStore()


@pytest.fixture
def sqlite_store(tmp_path):
    path = str(tmp_path / "records.db")
    conn = connect(path)
    init_db(conn)
    conn.close()
    return SqliteRecordStore(connection_factory(path))


@pytest.fixture
def test_settings():
    return Settings(side_effects_inline=True, ab_testing_enabled=False, cache_ttl_hours=1.0, default_limit=5)


@pytest.fixture
def pipeline(store, clock, test_settings):
    p = build_pipeline(store, test_settings, clock=clock, side_effects=SideEffectQueue(inline=True))
    yield p
    p.close()


def seed_catalog(store, now: float = T0) -> None:
    items = [
        {"item_id": "b1", "genres": ["Fantasy"], "authors": ["Mira Coel"], "avg_rating": 4.6,
         "ratings_count": 500, "recent_reads": 30, "recent_likes": 20, "recent_tbr": 40,
         "published_at": now - 6 * MONTH, "page_count": 240},
        {"item_id": "b2", "genres": ["Mystery", "Fiction"], "authors": ["Ada Lorne"], "avg_rating": 4.2,
         "ratings_count": 80, "recent_reads": 5, "recent_likes": 3, "recent_tbr": 2,
         "published_at": now - 30 * MONTH, "page_count": 420},
        {"item_id": "b3", "genres": ["Sci-Fi"], "authors": ["T. R. Vance"], "avg_rating": 3.9,
         "ratings_count": 40, "recent_reads": 1, "recent_likes": 0, "recent_tbr": 1,
         "published_at": now - 2 * MONTH},
        {"item_id": "b4", "genres": ["Romance"], "authors": ["Jon Aske"], "avg_rating": 0,
         "ratings_count": 0, "recent_reads": 0, "recent_likes": 0, "recent_tbr": 0},
        {"item_id": "b5", "genres": ["Thriller"], "authors": ["Rhea Patel"], "avg_rating": 4.0,
         "ratings_count": 120, "recent_reads": 10, "recent_likes": 10, "recent_tbr": 10,
         "published_at": now - 1 * MONTH, "page_count": 380},
        {"item_id": "b6", "genres": ["Memoir"], "authors": ["Hal Brennan"], "avg_rating": 4.8,
         "ratings_count": 300, "available": False},
    ]
    for item in items:
        put_item(store, item)

    set_holdings(store, "reader", ["b3"])
    set_following(store, "reader", ["friend-1", "friend-2"])
    set_positive_engagements(store, "friend-1", ["b2", "b5"])
    set_positive_engagements(store, "friend-2", ["b5"])


@pytest.fixture
def seeded(store):
    seed_catalog(store)
    return store


def make_items(n: int, algorithm: str = "hybrid") -> List[RecItem]:
    return [
        RecItem(
            item_id=f"item-{i}",
            score=1.0 - i * 0.1,
            reason="Recommended for you",
            algorithm=algorithm,
            position=i,
            score_breakdown=ScoreBreakdown(quality=0.5, trending=0.1 * i),
        )
        for i in range(n)
    ]
