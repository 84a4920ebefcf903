from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence
import logging
import time

from backend.recommender.entities import RecItem
from backend.recommender.errors import ValidationError
from backend.recommender.store import RecordStore

logger = logging.getLogger(__name__)

CACHE = "rec_cache"
# last invalidation time per user, checked by late cache writes
INVALIDATIONS = "rec_cache_invalidations"


def cache_key(user_id: str, surface: str) -> str:
    return f"{user_id}::{surface}"


class RecommendationCache:
    """
    Last scored list per (user, surface).

    An entry is fresh while it is not marked stale and younger than its TTL.
    Entries are only ever replaced whole; there is no per-item invalidation.
    """

    def __init__(
        self,
        store: RecordStore,
        default_ttl_hours: float = 1.0,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.default_ttl_hours = default_ttl_hours
        self.clock = clock

    def _is_fresh(self, entry: Dict[str, Any], now: float) -> bool:
        if entry.get("stale"):
            return False
        return now - float(entry["created_at"]) < float(entry["ttl_seconds"])

    def _fresh_entry(self, user_id: str, surface: str) -> Optional[Dict[str, Any]]:
        entry = self.store.find(CACHE, cache_key(user_id, surface))
        if entry is None:
            return None

        if not self._is_fresh(entry, self.clock()):
            logger.debug("cache expired for user=%s surface=%s", user_id, surface)
            return None
        return entry

    def get_fresh_recommendations(self, user_id: str, surface: str, limit: int) -> Optional[List[RecItem]]:
        """None means "no fresh entry" (absent, stale, expired or too short)."""
        if limit < 1:
            raise ValidationError("limit", "must be >= 1")

        entry = self._fresh_entry(user_id, surface)
        if entry is None:
            return None

        items = entry.get("items") or []
        if len(items) < limit:
            return None

        return [RecItem.from_dict(d) for d in items[:limit]]

    def get_fresh_related(
        self,
        user_id: str,
        surface: str,
        name: str,
        limit: Optional[int] = None,
    ) -> Optional[List[RecItem]]:
        """
        A named side list stored with a fresh entry. Unlike the main list a
        short side list is still a hit: it was scored from the whole pool.
        """
        entry = self._fresh_entry(user_id, surface)
        if entry is None:
            return None

        related = entry.get("related") or {}
        if name not in related:
            return None

        items = related[name]
        if limit is not None:
            items = items[:limit]
        return [RecItem.from_dict(d) for d in items]

    def get_fresh_related_lists(self, user_id: str, surface: str) -> Dict[str, List[RecItem]]:
        entry = self._fresh_entry(user_id, surface)
        if entry is None:
            return {}
        return {
            name: [RecItem.from_dict(d) for d in items]
            for name, items in (entry.get("related") or {}).items()
        }

    def _invalidated_after(self, user_id: str, scored_at: float) -> bool:
        marker = self.store.find(INVALIDATIONS, user_id)
        return marker is not None and float(marker["invalidated_at"]) > scored_at

    def cache_recommendations(
        self,
        user_id: str,
        surface: str,
        items: Sequence[RecItem],
        related_lists: Optional[Dict[str, Sequence[RecItem]]] = None,
        ttl_hours: Optional[float] = None,
        algorithm: str = "hybrid",
        scored_at: Optional[float] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Store a scored list. With `scored_at`, the write is dropped (None is
        returned) when the user was invalidated after scoring started, so a
        late background write cannot bring back pre-invalidation results.
        """
        ttl = self.default_ttl_hours if ttl_hours is None else ttl_hours
        if ttl <= 0:
            raise ValidationError("ttl_hours", "must be > 0")

        if scored_at is not None and self._invalidated_after(user_id, scored_at):
            logger.info(
                "skipping cache write for user=%s surface=%s, invalidated after scoring",
                user_id, surface,
            )
            return None

        entry = {
            "user_id": user_id,
            "surface": surface,
            "items": [i.to_dict() for i in items],
            "related": {
                name: [i.to_dict() for i in recs]
                for name, recs in (related_lists or {}).items()
            },
            "algorithm": algorithm,
            "created_at": self.clock(),
            "scored_at": scored_at,
            "ttl_seconds": ttl * 3600.0,
            "stale": False,
        }
        key = cache_key(user_id, surface)
        # whole-entry replace, last writer wins
        self.store.upsert(CACHE, key, entry)

        # invalidate() writes its marker before scanning entries, so one of
        # the two sides always sees the other
        if scored_at is not None and self._invalidated_after(user_id, scored_at):
            self.store.conditional_update(CACHE, key, {"created_at": entry["created_at"]}, {"stale": True})
            entry["stale"] = True
        return entry

    def lookup_item(self, user_id: str, surface: str, item_id: str) -> Optional[RecItem]:
        """The item as it was served from this entry, fresh or not."""
        entry = self.store.find(CACHE, cache_key(user_id, surface))
        if entry is None:
            return None
        for d in entry.get("items") or []:
            if str(d["item_id"]) == item_id:
                return RecItem.from_dict(d)
        return None

    def invalidate(self, user_id: str) -> int:
        """Mark every surface entry of the user stale. Returns how many flipped."""
        self.store.upsert(INVALIDATIONS, user_id, {"user_id": user_id, "invalidated_at": self.clock()})

        flipped = 0
        for entry in self.store.find_all(CACHE, user_id=user_id):
            if entry.get("stale"):
                continue
            # a refresh that landed meanwhile keeps its own created_at and stays fresh
            ok = self.store.conditional_update(
                CACHE,
                cache_key(user_id, entry["surface"]),
                {"created_at": entry["created_at"]},
                {"stale": True},
            )
            if ok:
                flipped += 1
        return flipped

    def users_needing_refresh(
        self,
        user_ids: Iterable[str],
        surface: str = "home",
        limit: int = 100,
    ) -> List[str]:
        now = self.clock()
        out: List[str] = []
        for uid in user_ids:
            if len(out) >= limit:
                break
            entry = self.store.find(CACHE, cache_key(uid, surface))
            if entry is None or not self._is_fresh(entry, now):
                out.append(uid)
        return out

    def stats(self) -> Dict[str, Any]:
        now = self.clock()
        entries = self.store.find_all(CACHE)
        fresh = stale = expired = 0
        age_sum = 0.0
        for e in entries:
            created = float(e["created_at"])
            age_sum += now - created
            if e.get("stale"):
                stale += 1
            elif now - created >= float(e["ttl_seconds"]):
                expired += 1
            else:
                fresh += 1

        return {
            "total": len(entries),
            "fresh": fresh,
            "stale": stale,
            "expired": expired,
            "avg_age_seconds": age_sum / len(entries) if entries else 0.0,
        }
