import pytest

from backend.recommender.errors import ConcurrentUpdate, ValidationError
from backend.recommender.preferences import PreferenceStore
from backend.recommender.store import MemoryRecordStore


@pytest.fixture
def prefs(store, clock):
    return PreferenceStore(store, clock=clock)


def test_onboarding_weights_descend_by_pick_order(prefs):
    summary = prefs.merge_onboarding_preferences("u1", ["fiction", "mystery", "fantasy"], [])

    assert summary["genres"] == [
        {"genre": "fiction", "weight": 5.0},
        {"genre": "mystery", "weight": 4.5},
        {"genre": "fantasy", "weight": 4.0},
    ]
    assert prefs.get("u1").genre_weights == {"fiction": 5.0, "mystery": 4.5, "fantasy": 4.0}


def test_weights_floor_at_minimum(prefs):
    picks = [f"genre-{i}" for i in range(12)]
    weights = [w for _, w in prefs.onboarding_weights(picks)]
    assert weights[0] == 5.0
    assert weights[-1] == 0.5
    assert min(weights) == 0.5


def test_aliases_collapse_to_one_genre(prefs):
    weighted = prefs.onboarding_weights(["Sci-Fi", "science fiction", "  Epic   Fantasy "])
    assert weighted == [("science fiction", 5.0), ("fantasy", 4.5)]


def test_merge_never_lowers_existing_weights(prefs):
    prefs.merge_onboarding_preferences("u1", ["fantasy", "romance"], ["Mira Coel"])
    prefs.merge_onboarding_preferences("u1", ["horror", "fantasy"], ["Ada Lorne"])

    profile = prefs.get("u1")
    assert profile.genre_weights["fantasy"] == 5.0
    assert profile.genre_weights["romance"] == 4.5
    assert profile.genre_weights["horror"] == 5.0
    assert profile.favored_authors == {"Mira Coel", "Ada Lorne"}
    assert profile.version == 2


def test_merge_twice_is_stable(prefs, clock):
    first = prefs.merge_onboarding_preferences("u1", ["fiction", "poetry"], ["A"])
    clock.advance(60)
    second = prefs.merge_onboarding_preferences("u1", ["fiction", "poetry"], ["A"])

    assert first["genre_weights"] == second["genre_weights"]
    assert second["authors"] == ["A"]
    assert prefs.get("u1").onboarded_at == clock.now


@pytest.mark.parametrize(
    "user_id, genres, authors, field",
    [
        ("", ["fiction"], [], "user_id"),
        ("u1", [], [], "genres"),
        ("u1", "fiction", [], "genres"),
        ("u1", ["fiction", "  "], [], "genres"),
        ("u1", ["fiction"], "Ada Lorne", "authors"),
        ("u1", ["fiction"], [42], "authors"),
    ],
)
def test_merge_validation(prefs, user_id, genres, authors, field):
    with pytest.raises(ValidationError) as ei:
        prefs.merge_onboarding_preferences(user_id, genres, authors)
    assert ei.value.field == field
    assert prefs.get("u1") is None


def test_apply_signal_is_additive_and_floored(prefs):
    prefs.merge_onboarding_preferences("u1", ["fantasy"], [])

    prefs.apply_signal("u1", ["Epic Fantasy", "Mystery"], 1.5)
    profile = prefs.get("u1")
    assert profile.genre_weights["fantasy"] == 6.5
    assert profile.genre_weights["mystery"] == 1.5

    prefs.apply_signal("u1", ["mystery"], -5.0)
    assert prefs.get("u1").genre_weights["mystery"] == 0.0


def test_apply_signal_creates_profile(prefs):
    profile = prefs.apply_signal("fresh", ["thriller"], 0.3)
    assert profile.version == 1
    assert prefs.get("fresh").genre_weights == {"thriller": 0.3}
    assert prefs.get("fresh").onboarded_at is None


class _AlwaysLosingStore(MemoryRecordStore):
    def conditional_update(self, collection, key, expected, changes):
        return False


def test_gives_up_after_repeated_conflicts(clock):
    store = _AlwaysLosingStore()
    prefs = PreferenceStore(store, clock=clock, max_retries=3)
    prefs.apply_signal("u1", ["fantasy"], 1.0)

    with pytest.raises(ConcurrentUpdate):
        prefs.apply_signal("u1", ["fantasy"], 1.0)
