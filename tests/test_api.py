import sqlite3

import pytest
from fastapi.testclient import TestClient

from backend.app.main import create_app
from backend.app.wiring import build_pipeline
from backend.recommender.catalog import put_item
from backend.recommender.side_effects import SideEffectQueue
from backend.recommender.store import SqliteRecordStore


@pytest.fixture
def client(pipeline, seeded):
    with TestClient(create_app(pipeline)) as c:
        yield c


def _recs(client, **params):
    params.setdefault("user_id", "reader")
    r = client.get("/recommendations", params=params)
    assert r.status_code == 200, r.text
    return r.json()


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_recommendations_fresh_then_cached(client):
    first = _recs(client, limit=3)
    assert first["source"] == "fresh"
    assert first["cached"] is False
    assert first["algorithm"] == "hybrid"
    assert [i["position"] for i in first["items"]] == [0, 1, 2]

    ids = {i["item_id"] for i in first["items"]}
    # held and unavailable items never show up
    assert "b3" not in ids
    assert "b6" not in ids

    second = _recs(client, limit=3)
    assert second["source"] == "cache"
    assert second["items"] == first["items"]

    forced = _recs(client, limit=3, refresh=True)
    assert forced["source"] == "fresh"


def test_recommendation_items_carry_breakdown_and_reason(client):
    body = _recs(client, limit=4, session_id="s-1")
    assert body["context"]["session_id"] == "s-1"
    assert body["context"]["page"] == "home"
    assert body["context"]["time_of_day"] in {"morning", "afternoon", "evening", "night"}

    for item in body["items"]:
        assert set(item["score_breakdown"]) == {
            "genre", "author", "quality", "friends", "trending", "recency", "diversity"
        }
        assert item["reason"]
        # no profile yet
        assert item["score_breakdown"]["genre"] == 0.0
        assert item["score_breakdown"]["friends"] == 0.0


def test_recommendations_rejects_bad_limit(client):
    r = client.get("/recommendations", params={"user_id": "reader", "limit": 0})
    assert r.status_code == 422


def test_onboarding_personalizes_next_list(client):
    r = client.post("/onboarding", json={"user_id": "reader", "genres": ["Fantasy", "Mystery"], "authors": ["Mira Coel"]})
    assert r.status_code == 200
    prefs = r.json()["preferences"]
    assert prefs["genres"] == [{"genre": "fantasy", "weight": 5.0}, {"genre": "mystery", "weight": 4.5}]
    assert prefs["authors"] == ["Mira Coel"]

    body = _recs(client, limit=3)
    top = body["items"][0]
    assert top["item_id"] == "b1"
    assert top["score_breakdown"]["genre"] == 1.0
    assert top["score_breakdown"]["author"] == 1.0
    assert top["reason"] == "Because you like fantasy"

    body = client.get("/debug/preferences", params={"user_id": "reader"}).json()
    assert body["profile"]["genre_weights"]["fantasy"] == 5.0
    assert body["top_genres"] == [{"genre": "fantasy", "weight": 5.0}, {"genre": "mystery", "weight": 4.5}]


def test_onboarding_validation(client):
    r = client.post("/onboarding", json={"user_id": "reader", "genres": ["  "]})
    assert r.status_code == 400
    assert r.json()["field"] == "genres"

    r = client.post("/onboarding", json={"user_id": "reader", "genres": []})
    assert r.status_code == 422


def test_debug_preferences_unknown_user(client):
    r = client.get("/debug/preferences", params={"user_id": "ghost"})
    assert r.status_code == 404


def test_onboarding_genres(client):
    genres = client.get("/onboarding/genres").json()["genres"]
    assert {"id": "fantasy", "name": "Fantasy", "description": "Magic and mythical worlds"} in genres


def test_feedback_flow_and_metrics(client):
    items = _recs(client, limit=3)["items"]
    item_id = items[1]["item_id"]

    def feedback(action, **extra):
        return client.post(
            "/recommendations/feedback",
            json={"user_id": "reader", "item_id": item_id, "action": action, **extra},
        )

    r = feedback("shown")
    assert r.status_code == 200
    assert r.json()["row_status"] == "shown"

    assert feedback("clicked").json()["row_status"] == "clicked"
    assert feedback("converted", converted_action="added_to_tbr").json()["row_status"] == "converted"

    r = feedback("clicked")
    assert r.status_code == 409
    assert r.json()["field"] == "action"

    log = client.get("/debug/recommendation-log", params={"user_id": "reader"}).json()
    # the whole served list was logged as shown
    assert sorted(r["item_id"] for r in log) == sorted(i["item_id"] for i in items)
    row = next(r for r in log if r["item_id"] == item_id)
    assert row["algorithm"] == "hybrid"
    assert row["position"] == 1
    assert row["converted_action"] == "added_to_tbr"

    m = client.get("/metrics/algorithms", params={"algorithm": "hybrid"}).json()
    hybrid = m["metrics"]["hybrid"]
    assert (hybrid["shown"], hybrid["clicked"], hybrid["converted"]) == (3, 1, 1)
    assert hybrid["ctr"] == pytest.approx(1 / 3)

    top = client.get("/metrics/top-items").json()["items"]
    assert top[0]["item_id"] == item_id

    cmp = client.get("/metrics/algorithms/compare", params={"a": "hybrid", "b": "high_diversity"}).json()
    assert cmp["algorithm_b"]["shown"] == 0
    assert cmp["winner"] is None

    r = client.get("/metrics/algorithms/compare", params={"a": "hybrid", "b": "hybrid"})
    assert r.status_code == 400


def test_feedback_errors(client):
    r = client.post("/recommendations/feedback", json={"user_id": "reader", "item_id": "b1", "action": "bookmarked"})
    assert r.status_code == 400
    assert r.json()["field"] == "action"

    r = client.post("/recommendations/feedback", json={"user_id": "reader", "item_id": "b1", "action": "clicked"})
    assert r.status_code == 409


def test_track_event_and_batch(client):
    r = client.post("/events/track", json={"user_id": "reader", "type": "book.liked", "metadata": {"item_id": "b1"}})
    assert r.status_code == 200
    assert r.json()["event_id"]

    r = client.post("/events/track", json={"user_id": "reader", "type": "book.liked"})
    assert r.status_code == 400
    assert r.json()["field"] == "metadata.item_id"

    r = client.post("/events/track/batch", json={
        "user_id": "reader",
        "events": [
            {"type": "book.viewed", "metadata": {"item_id": "b2"}},
            {"type": "bogus"},
            "junk",
        ],
    })
    assert r.status_code == 200
    body = r.json()
    assert (body["accepted"], body["failed"]) == (1, 2)
    assert [e["index"] for e in body["errors"]] == [1, 2]

    activity = client.get("/debug/activity", params={"user_id": "reader"}).json()
    assert activity["activity"]["books_liked"] == 1
    assert activity["activity"]["books_viewed"] == 1
    assert activity["active"] is True


def test_debug_cache_stats_and_algorithms(client):
    _recs(client, limit=2)
    stats = client.get("/debug/cache/stats").json()
    assert stats["total"] == 1
    assert stats["fresh"] == 1

    algos = client.get("/debug/algorithms").json()["algorithms"]
    assert algos == ["high_diversity", "high_friend_weight", "hybrid"]


def test_store_outage_maps_to_503(clock, test_settings):
    def broken():
        raise sqlite3.OperationalError("disk I/O error")

    p = build_pipeline(SqliteRecordStore(broken), test_settings, clock=clock, side_effects=SideEffectQueue(inline=True))
    with TestClient(create_app(p)) as c:
        r = c.get("/recommendations", params={"user_id": "reader", "limit": 2})
    assert r.status_code == 503
    assert r.json()["detail"] == "storage unavailable"


def test_home_list_comes_with_related_lists(client):
    body = _recs(client, limit=3)
    assert [i["item_id"] for i in body["related"]["friends"]] == ["b5", "b2"]
    assert body["related"]["friends"][0]["reason"] == "friend-1 and friend-2 loved this"
    assert "similar" in body["related"]


def test_friend_recommendations_route(client):
    r = client.get("/recommendations/friends", params={"user_id": "reader", "limit": 5})
    assert r.status_code == 200
    body = r.json()
    assert body["source"] == "fresh"
    assert [i["item_id"] for i in body["items"]] == ["b5", "b2"]
    assert {i["algorithm"] for i in body["items"]} == {"friend_activity"}

    _recs(client, limit=3)
    cached = client.get("/recommendations/friends", params={"user_id": "reader"}).json()
    assert cached["cached"] is True

    r = client.get("/recommendations/friends", params={"user_id": "reader", "limit": 0})
    assert r.status_code == 422


def test_similar_recommendations_route(client, seeded):
    put_item(seeded, {"item_id": "b7", "genres": ["Fantasy"], "authors": ["Someone"]})

    r = client.get("/recommendations/similar/b1")
    assert r.status_code == 200
    assert [i["item_id"] for i in r.json()["items"]] == ["b7"]
    assert r.json()["items"][0]["algorithm"] == "similar_items"

    r = client.get("/recommendations/similar/unknown")
    assert r.status_code == 404
