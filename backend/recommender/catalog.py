from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from backend.recommender.entities import Candidate
from backend.recommender.store import RecordStore
from backend.recommender.tuning import normalize_genres

# read-only from the pipeline's point of view; written by seeding/ingest jobs
ITEMS = "items"
HOLDINGS = "holdings"
FOLLOWS = "follows"
POSITIVE_ENGAGEMENTS = "positive_engagements"


def _candidate_from_doc(doc: Dict[str, Any], friend_engagements: int = 0) -> Candidate:
    return Candidate(
        item_id=str(doc["item_id"]),
        title=str(doc.get("title") or ""),
        genres=normalize_genres(doc.get("genres") or []),
        authors=[str(a) for a in (doc.get("authors") or [])],
        avg_rating=float(doc.get("avg_rating") or 0.0),
        ratings_count=int(doc.get("ratings_count") or 0),
        recent_reads=int(doc.get("recent_reads") or 0),
        recent_likes=int(doc.get("recent_likes") or 0),
        recent_tbr=int(doc.get("recent_tbr") or 0),
        published_at=doc.get("published_at"),
        popular_since=doc.get("popular_since"),
        page_count=int(doc["page_count"]) if doc.get("page_count") else None,
        friend_engagements=friend_engagements,
    )


def _id_list(store: RecordStore, collection: str, user_id: str, field: str) -> List[str]:
    doc = store.find(collection, user_id)
    if not doc:
        return []
    return [str(x) for x in doc.get(field) or []]


def held_items(store: RecordStore, user_id: str) -> List[str]:
    return _id_list(store, HOLDINGS, user_id, "item_ids")


def following_of(store: RecordStore, user_id: str) -> List[str]:
    return [f for f in _id_list(store, FOLLOWS, user_id, "following") if f != user_id]


def engaged_items(store: RecordStore, user_id: str) -> List[str]:
    return _id_list(store, POSITIVE_ENGAGEMENTS, user_id, "item_ids")


def get_item(store: RecordStore, item_id: str) -> Optional[Candidate]:
    doc = store.find(ITEMS, item_id)
    return _candidate_from_doc(doc) if doc else None


def load_available_items(store: RecordStore) -> List[Candidate]:
    items = [_candidate_from_doc(d) for d in store.find_all(ITEMS) if d.get("available", True)]
    items.sort(key=lambda c: c.item_id)
    return items


def load_candidate_pool(store: RecordStore, user_id: str) -> List[Candidate]:
    """
    Eligible pool for one user:
    - available catalog items
    - minus items already on any of the user's shelves
    - friend_engagements = followed users with a positive engagement on the item
    """
    held = set(held_items(store, user_id))

    friend_counts: Dict[str, int] = {}
    for friend_id in set(following_of(store, user_id)):
        for item_id in set(engaged_items(store, friend_id)):
            friend_counts[item_id] = friend_counts.get(item_id, 0) + 1

    pool: List[Candidate] = []
    for doc in store.find_all(ITEMS):
        item_id = str(doc["item_id"])
        if item_id in held or not doc.get("available", True):
            continue
        pool.append(_candidate_from_doc(doc, friend_counts.get(item_id, 0)))

    pool.sort(key=lambda c: c.item_id)
    return pool


# writers used by seeding scripts and tests

def put_item(store: RecordStore, item: Dict[str, Any]) -> None:
    doc = dict(item)
    doc["item_id"] = str(doc["item_id"])
    doc.setdefault("available", True)
    store.upsert(ITEMS, doc["item_id"], doc)


def set_holdings(store: RecordStore, user_id: str, item_ids: Iterable[str]) -> None:
    store.upsert(HOLDINGS, user_id, {"user_id": user_id, "item_ids": sorted({str(i) for i in item_ids})})


def set_following(store: RecordStore, user_id: str, friend_ids: Iterable[str]) -> None:
    store.upsert(FOLLOWS, user_id, {"user_id": user_id, "following": sorted({str(f) for f in friend_ids})})


def set_positive_engagements(store: RecordStore, user_id: str, item_ids: Iterable[str]) -> None:
    store.upsert(
        POSITIVE_ENGAGEMENTS,
        user_id,
        {"user_id": user_id, "item_ids": sorted({str(i) for i in item_ids})},
    )
