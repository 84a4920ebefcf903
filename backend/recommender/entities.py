from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple


DIMENSIONS: Tuple[str, ...] = (
    "genre",
    "author",
    "quality",
    "friends",
    "trending",
    "recency",
    "diversity",
)


class FeedbackAction(str, Enum):
    SHOWN = "shown"
    CLICKED = "clicked"
    CONVERTED = "converted"
    DISMISSED = "dismissed"


class ConvertedAction(str, Enum):
    RATED = "rated"
    ADDED_TO_SHELF = "added_to_shelf"
    LIKED = "liked"
    ADDED_TO_TBR = "added_to_tbr"
    STARTED_READING = "started_reading"


class TimeOfDay(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"
    NIGHT = "night"


def time_of_day_for_hour(hour: int) -> TimeOfDay:
    if 6 <= hour < 12:
        return TimeOfDay.MORNING
    if 12 <= hour < 17:
        return TimeOfDay.AFTERNOON
    if 17 <= hour < 21:
        return TimeOfDay.EVENING
    return TimeOfDay.NIGHT


@dataclass
class ScoreBreakdown:
    genre: float = 0.0
    author: float = 0.0
    quality: float = 0.0
    friends: float = 0.0
    trending: float = 0.0
    recency: float = 0.0
    diversity: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any] | None) -> "ScoreBreakdown":
        data = data or {}
        return cls(**{d: float(data.get(d, 0.0) or 0.0) for d in DIMENSIONS})


@dataclass
class RecItem:
    item_id: str
    score: float
    reason: str
    algorithm: str
    position: int
    score_breakdown: ScoreBreakdown

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "score": self.score,
            "reason": self.reason,
            "algorithm": self.algorithm,
            "position": self.position,
            "score_breakdown": self.score_breakdown.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecItem":
        return cls(
            item_id=str(data["item_id"]),
            score=float(data["score"]),
            reason=str(data.get("reason", "")),
            algorithm=str(data.get("algorithm", "")),
            position=int(data["position"]),
            score_breakdown=ScoreBreakdown.from_dict(data.get("score_breakdown")),
        )


@dataclass
class RecContext:
    page: str = "home"
    session_id: Optional[str] = None
    time_of_day: Optional[TimeOfDay] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "page": self.page,
            "session_id": self.session_id,
            "time_of_day": self.time_of_day.value if self.time_of_day else None,
        }


@dataclass
class Candidate:
    """A catalog item eligible for ranking, with its social signal attached."""

    item_id: str
    title: str = ""
    genres: List[str] = field(default_factory=list)
    authors: List[str] = field(default_factory=list)
    avg_rating: float = 0.0
    ratings_count: int = 0
    recent_reads: int = 0
    recent_likes: int = 0
    recent_tbr: int = 0
    published_at: Optional[float] = None
    popular_since: Optional[float] = None
    page_count: Optional[int] = None
    friend_engagements: int = 0

    @property
    def freshness_ts(self) -> float:
        # most recent of release and "newly popular"
        stamps = [t for t in (self.published_at, self.popular_since) if t is not None]
        return max(stamps) if stamps else 0.0


@dataclass
class PreferenceProfile:
    user_id: str
    genre_weights: Dict[str, float] = field(default_factory=dict)
    favored_authors: FrozenSet[str] = frozenset()
    version: int = 0
    onboarded_at: Optional[float] = None
    updated_at: Optional[float] = None

    def top_genres(self, n: int = 5) -> List[Tuple[str, float]]:
        ranked = sorted(self.genre_weights.items(), key=lambda kv: (-kv[1], kv[0]))
        return ranked[:n]

    def to_doc(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "genre_weights": dict(self.genre_weights),
            "favored_authors": sorted(self.favored_authors),
            "version": self.version,
            "onboarded_at": self.onboarded_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "PreferenceProfile":
        return cls(
            user_id=str(doc["user_id"]),
            genre_weights={str(k): float(v) for k, v in (doc.get("genre_weights") or {}).items()},
            favored_authors=frozenset(doc.get("favored_authors") or []),
            version=int(doc.get("version", 0)),
            onboarded_at=doc.get("onboarded_at"),
            updated_at=doc.get("updated_at"),
        )
