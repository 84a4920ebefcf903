import pytest

from backend.recommender.cache import CACHE, INVALIDATIONS, RecommendationCache
from backend.recommender.errors import ValidationError
from backend.recommender.store import MemoryRecordStore

from conftest import make_items


@pytest.fixture
def cache(store, clock):
    return RecommendationCache(store, default_ttl_hours=1.0, clock=clock)


def test_fresh_within_ttl_then_expired(cache, clock):
    cache.cache_recommendations("u1", "home", make_items(5))

    clock.advance(59 * 60)
    hit = cache.get_fresh_recommendations("u1", "home", 5)
    assert hit is not None
    assert [i.item_id for i in hit] == [f"item-{i}" for i in range(5)]

    clock.advance(2 * 60)
    assert cache.get_fresh_recommendations("u1", "home", 5) is None


def test_repeated_reads_within_ttl_are_identical(cache, clock):
    cache.cache_recommendations("u1", "home", make_items(4))

    first = cache.get_fresh_recommendations("u1", "home", 4)
    clock.advance(600)
    second = cache.get_fresh_recommendations("u1", "home", 4)

    assert [(i.item_id, i.score) for i in first] == [(i.item_id, i.score) for i in second]


def test_ttl_boundary_is_exclusive(cache, clock):
    cache.cache_recommendations("u1", "home", make_items(3), ttl_hours=0.5)
    clock.advance(30 * 60)
    assert cache.get_fresh_recommendations("u1", "home", 1) is None


def test_truncates_to_limit_and_misses_when_short(cache):
    cache.cache_recommendations("u1", "home", make_items(10))

    three = cache.get_fresh_recommendations("u1", "home", 3)
    assert [i.position for i in three] == [0, 1, 2]
    assert three[1].score_breakdown.quality == 0.5

    assert cache.get_fresh_recommendations("u1", "home", 10) is not None
    assert cache.get_fresh_recommendations("u1", "home", 11) is None


def test_missing_entry_and_bad_limit(cache):
    assert cache.get_fresh_recommendations("nobody", "home", 5) is None
    with pytest.raises(ValidationError) as ei:
        cache.get_fresh_recommendations("nobody", "home", 0)
    assert ei.value.field == "limit"


def test_rejects_non_positive_ttl(cache):
    with pytest.raises(ValidationError):
        cache.cache_recommendations("u1", "home", make_items(1), ttl_hours=0)


def test_entries_are_replaced_whole(cache):
    cache.cache_recommendations("u1", "home", make_items(5, algorithm="hybrid"))
    cache.cache_recommendations("u1", "home", make_items(2, algorithm="high_diversity"))

    assert cache.get_fresh_recommendations("u1", "home", 3) is None
    two = cache.get_fresh_recommendations("u1", "home", 2)
    assert {i.algorithm for i in two} == {"high_diversity"}


def test_surfaces_are_independent(cache):
    cache.cache_recommendations("u1", "home", make_items(3))
    cache.cache_recommendations("u1", "discover", make_items(1))

    assert len(cache.get_fresh_recommendations("u1", "home", 3)) == 3
    assert cache.get_fresh_recommendations("u1", "discover", 3) is None
    assert cache.get_fresh_recommendations("u2", "home", 1) is None


def test_related_lists_are_kept_on_the_entry(cache, store):
    entry = cache.cache_recommendations("u1", "book", make_items(2), related_lists={"similar": make_items(1)})
    assert [d["item_id"] for d in entry["related"]["similar"]] == ["item-0"]
    assert store.find("rec_cache", "u1::book")["related"]["similar"][0]["position"] == 0


def test_invalidate_marks_all_surfaces_stale(cache):
    cache.cache_recommendations("u1", "home", make_items(3))
    cache.cache_recommendations("u1", "discover", make_items(3))
    cache.cache_recommendations("u2", "home", make_items(3))

    assert cache.invalidate("u1") == 2
    assert cache.invalidate("u1") == 0

    assert cache.get_fresh_recommendations("u1", "home", 1) is None
    assert cache.get_fresh_recommendations("u1", "discover", 1) is None
    assert cache.get_fresh_recommendations("u2", "home", 1) is not None

    # a new write brings the surface back
    cache.cache_recommendations("u1", "home", make_items(3))
    assert cache.get_fresh_recommendations("u1", "home", 3) is not None


def test_lookup_item_reads_served_entry(cache, clock):
    cache.cache_recommendations("u1", "home", make_items(4))
    clock.advance(2 * 3600)

    served = cache.lookup_item("u1", "home", "item-2")
    assert served.position == 2
    assert cache.lookup_item("u1", "home", "item-99") is None
    assert cache.lookup_item("u1", "other", "item-2") is None


def test_users_needing_refresh(cache, clock):
    cache.cache_recommendations("fresh", "home", make_items(2))
    cache.cache_recommendations("stale", "home", make_items(2))
    cache.invalidate("stale")

    todo = cache.users_needing_refresh(["fresh", "stale", "missing"], surface="home")
    assert todo == ["stale", "missing"]

    assert cache.users_needing_refresh(["stale", "missing"], limit=1) == ["stale"]

    clock.advance(3600)
    assert "fresh" in cache.users_needing_refresh(["fresh"])


def test_stats(cache, clock):
    assert cache.stats()["total"] == 0

    cache.cache_recommendations("a", "home", make_items(1))
    cache.cache_recommendations("b", "home", make_items(1), ttl_hours=0.25)
    cache.cache_recommendations("c", "home", make_items(1))
    cache.invalidate("c")
    clock.advance(30 * 60)

    s = cache.stats()
    assert (s["total"], s["fresh"], s["stale"], s["expired"]) == (3, 1, 1, 1)
    assert s["avg_age_seconds"] == pytest.approx(1800.0)


def test_related_lists_are_read_only_from_fresh_entries(cache, clock):
    cache.cache_recommendations("u1", "home", make_items(3), related_lists={"friends": make_items(4)})

    assert [i.item_id for i in cache.get_fresh_related("u1", "home", "friends", 2)] == ["item-0", "item-1"]
    assert len(cache.get_fresh_related("u1", "home", "friends")) == 4
    assert cache.get_fresh_related("u1", "home", "similar") is None
    assert set(cache.get_fresh_related_lists("u1", "home")) == {"friends"}

    clock.advance(3600)
    assert cache.get_fresh_related("u1", "home", "friends") is None
    assert cache.get_fresh_related_lists("u1", "home") == {}


def test_write_scored_before_invalidation_is_dropped(cache, clock, store):
    scored_at = clock()
    clock.advance(5)
    cache.invalidate("u1")
    assert store.find(INVALIDATIONS, "u1")["invalidated_at"] == clock()

    assert cache.cache_recommendations("u1", "home", make_items(3), scored_at=scored_at) is None
    assert store.find(CACHE, "u1::home") is None

    # scored at or after the invalidation: kept
    entry = cache.cache_recommendations("u1", "home", make_items(3), scored_at=clock())
    assert entry["scored_at"] == clock()
    assert cache.get_fresh_recommendations("u1", "home", 3) is not None

    # other users are unaffected
    assert cache.cache_recommendations("u2", "home", make_items(1), scored_at=scored_at) is not None


def test_invalidation_landing_during_a_write_leaves_entry_stale(clock):
    class RacingStore(MemoryRecordStore):
        def upsert(self, collection, key, doc):
            if collection == CACHE:
                # invalidate() writes its marker after the pre-write check and
                # scans before this entry exists
                clock.advance(1)
                super().upsert(INVALIDATIONS, doc["user_id"], {"user_id": doc["user_id"], "invalidated_at": clock()})
            super().upsert(collection, key, doc)

    cache = RecommendationCache(RacingStore(), default_ttl_hours=1.0, clock=clock)

    entry = cache.cache_recommendations("u1", "home", make_items(3), scored_at=clock())

    assert entry["stale"] is True
    assert cache.get_fresh_recommendations("u1", "home", 3) is None
