from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence
import logging
import time
import uuid

from backend.recommender import tuning
from backend.recommender.cache import RecommendationCache
from backend.recommender.catalog import get_item
from backend.recommender.errors import RecommenderError, ValidationError
from backend.recommender.preferences import PreferenceStore
from backend.recommender.side_effects import SideEffectQueue
from backend.recommender.store import RecordStore

logger = logging.getLogger(__name__)

EVENTS = "events"
DAY_SECONDS = 24 * 3600


class EventType(str, Enum):
    BOOK_VIEWED = "book.viewed"
    BOOK_RATED = "book.rated"
    BOOK_LIKED = "book.liked"
    BOOK_UNLIKED = "book.unliked"
    BOOK_ADDED_TO_SHELF = "book.added_to_shelf"
    BOOK_ADDED_TO_TBR = "book.added_to_tbr"
    BOOK_STARTED_READING = "book.started_reading"
    BOOK_FINISHED_READING = "book.finished_reading"
    BOOK_ADDED_TO_FAVORITES = "book.added_to_favorites"
    BOOK_SHARED = "book.shared"
    BOOK_ADDED_TO_LIST = "book.added_to_list"
    BOOK_SEARCHED = "book.searched"

    USER_FOLLOWED = "user.followed"
    USER_UNFOLLOWED = "user.unfollowed"
    USER_PROFILE_VIEWED = "user.profile_viewed"

    RECOMMENDATION_VIEWED = "recommendation.viewed"
    RECOMMENDATION_CLICKED = "recommendation.clicked"
    RECOMMENDATION_DISMISSED = "recommendation.dismissed"
    RECOMMENDATION_CONVERTED = "recommendation.converted"

    ONBOARDING_STARTED = "onboarding.started"
    ONBOARDING_COMPLETED = "onboarding.completed"


# events that carry a preference signal for the touched item's genres
_SIGNAL_EVENTS: Dict[EventType, str] = {
    EventType.BOOK_VIEWED: "viewed",
    EventType.BOOK_LIKED: "liked",
    EventType.BOOK_ADDED_TO_SHELF: "finished_reading",
    EventType.BOOK_FINISHED_READING: "finished_reading",
    EventType.BOOK_ADDED_TO_TBR: "added_to_tbr",
    EventType.BOOK_STARTED_READING: "started_reading",
    EventType.BOOK_ADDED_TO_FAVORITES: "added_to_favorites",
    EventType.BOOK_SHARED: "shared",
    EventType.BOOK_ADDED_TO_LIST: "added_to_list",
}

# events after which a cached list is no longer trustworthy
_SIGNIFICANT_EVENTS = {
    EventType.BOOK_RATED,
    EventType.BOOK_LIKED,
    EventType.BOOK_ADDED_TO_SHELF,
    EventType.BOOK_FINISHED_READING,
    EventType.BOOK_ADDED_TO_TBR,
    EventType.BOOK_ADDED_TO_FAVORITES,
    EventType.USER_FOLLOWED,
    EventType.USER_UNFOLLOWED,
    EventType.ONBOARDING_COMPLETED,
}

_NEEDS_ITEM = set(_SIGNAL_EVENTS) | {EventType.BOOK_RATED, EventType.BOOK_UNLIKED}
_NEEDS_TARGET_USER = {EventType.USER_FOLLOWED, EventType.USER_UNFOLLOWED, EventType.USER_PROFILE_VIEWED}


def parse_event_type(value: Any) -> EventType:
    if not value:
        raise ValidationError("type", "event type is required")
    try:
        return EventType(value)
    except ValueError:
        raise ValidationError("type", f"invalid event type '{value}'") from None


@dataclass
class BatchResult:
    accepted: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)


class EventTracker:
    """
    Append-only interaction log. Storing the event is the primary write;
    preference updates and cache invalidation ride on the side-effect
    queue and never fail the call.
    """

    def __init__(
        self,
        store: RecordStore,
        preferences: PreferenceStore,
        cache: RecommendationCache,
        side_effects: SideEffectQueue,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.preferences = preferences
        self.cache = cache
        self.side_effects = side_effects
        self.clock = clock

    def _validate(
        self,
        type_: Any,
        user_id: Any,
        metadata: Any,
    ) -> tuple:
        event_type = parse_event_type(type_)

        if not isinstance(user_id, str) or not user_id:
            raise ValidationError("user_id", "is required")

        if metadata is None:
            metadata = {}
        if not isinstance(metadata, Mapping):
            raise ValidationError("metadata", "must be an object")
        metadata = dict(metadata)

        if event_type in _NEEDS_ITEM and not metadata.get("item_id"):
            raise ValidationError("metadata.item_id", f"is required for {event_type.value}")
        if event_type in _NEEDS_TARGET_USER and not metadata.get("target_user_id"):
            raise ValidationError("metadata.target_user_id", f"is required for {event_type.value}")

        if event_type is EventType.BOOK_RATED:
            rating = metadata.get("rating")
            if isinstance(rating, bool) or not isinstance(rating, (int, float)) or not 1 <= rating <= 5:
                raise ValidationError("metadata.rating", "must be a number between 1 and 5")

        return event_type, metadata

    def track(
        self,
        type_: Any,
        user_id: Any,
        metadata: Optional[Mapping[str, Any]] = None,
        session_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        event_type, meta = self._validate(type_, user_id, metadata)

        event = {
            "event_id": uuid.uuid4().hex,
            "type": event_type.value,
            "user_id": user_id,
            "metadata": meta,
            "session_id": session_id or f"{int(self.clock())}-{uuid.uuid4().hex[:9]}",
            "ts": self.clock(),
        }
        self.store.create(EVENTS, event["event_id"], event)

        if event_type in _SIGNAL_EVENTS or event_type is EventType.BOOK_RATED:
            self.side_effects.submit("profile-signal", self._apply_signal, user_id, event_type, meta)
        if event_type in _SIGNIFICANT_EVENTS:
            self.side_effects.submit("cache-invalidate", self.cache.invalidate, user_id)

        return event

    def track_quietly(
        self,
        type_: Any,
        user_id: Any,
        metadata: Optional[Mapping[str, Any]] = None,
        session_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Instrumentation attached to another action: log failures, never raise."""
        try:
            return self.track(type_, user_id, metadata, session_id)
        except RecommenderError:
            logger.exception("event tracking failed type=%s user=%s", type_, user_id)
            return None

    def track_batch(self, events: Sequence[Any]) -> BatchResult:
        result = BatchResult()
        for idx, ev in enumerate(events):
            try:
                if not isinstance(ev, Mapping):
                    raise ValidationError("event", "must be an object")
                self.track(ev.get("type"), ev.get("user_id"), ev.get("metadata"), ev.get("session_id"))
                result.accepted += 1
            except RecommenderError as exc:
                result.failed += 1
                result.errors.append({"index": idx, "error": str(exc)})

        if result.failed:
            logger.warning("batch tracking: %d accepted, %d failed", result.accepted, result.failed)
        return result

    def _apply_signal(self, user_id: str, event_type: EventType, metadata: Dict[str, Any]) -> None:
        item = get_item(self.store, str(metadata["item_id"]))
        if item is None or not item.genres:
            return

        if event_type is EventType.BOOK_RATED:
            delta = tuning.rating_signal(float(metadata["rating"]))
        else:
            delta = tuning.SIGNALS[_SIGNAL_EVENTS[event_type]]
            if event_type is EventType.BOOK_ADDED_TO_SHELF and metadata.get("rating"):
                delta *= tuning.rating_signal(float(metadata["rating"]))

        self.preferences.apply_signal(user_id, item.genres, delta)

    def events_for(self, user_id: str, days: float) -> List[Dict[str, Any]]:
        since = self.clock() - days * DAY_SECONDS
        rows = [e for e in self.store.find_all(EVENTS, user_id=user_id) if float(e["ts"]) >= since]
        rows.sort(key=lambda e: float(e["ts"]))
        return rows

    def recent_activity(self, user_id: str, days: float = 7) -> Dict[str, int]:
        summary = {
            "books_viewed": 0,
            "books_rated": 0,
            "books_liked": 0,
            "books_added": 0,
            "searches": 0,
            "follow_activity": 0,
        }
        for e in self.events_for(user_id, days):
            t = e["type"]
            if t == EventType.BOOK_VIEWED.value:
                summary["books_viewed"] += 1
            elif t == EventType.BOOK_RATED.value:
                summary["books_rated"] += 1
            elif t == EventType.BOOK_LIKED.value:
                summary["books_liked"] += 1
            elif t in (
                EventType.BOOK_ADDED_TO_SHELF.value,
                EventType.BOOK_ADDED_TO_TBR.value,
                EventType.BOOK_FINISHED_READING.value,
            ):
                summary["books_added"] += 1
            elif t == EventType.BOOK_SEARCHED.value:
                summary["searches"] += 1
            elif t in (EventType.USER_FOLLOWED.value, EventType.USER_UNFOLLOWED.value):
                summary["follow_activity"] += 1
        return summary

    def engagement_score(self, user_id: str, days: float = 30) -> int:
        """0-100; 200 weighted points counts as fully engaged."""
        a = self.recent_activity(user_id, days)
        points = (
            a["books_rated"] * 10
            + a["books_liked"] * 5
            + a["books_added"] * 8
            + a["searches"] * 2
            + a["books_viewed"] * 1
            + a["follow_activity"] * 3
        )
        return min(round(points / 200 * 100), 100)

    def is_active_user(self, user_id: str, days: float = 7) -> bool:
        a = self.recent_activity(user_id, days)
        return any(a[k] > 0 for k in ("books_rated", "books_liked", "books_added", "searches"))

    def active_users(self, days: float = 7) -> List[str]:
        since = self.clock() - days * DAY_SECONDS
        users: Iterable[str] = {
            e["user_id"] for e in self.store.find_all(EVENTS) if float(e["ts"]) >= since
        }
        return sorted(u for u in users if self.is_active_user(u, days))
