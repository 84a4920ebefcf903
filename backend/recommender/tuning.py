"""
Tunable constants for scoring, preference learning and explanations.

Scoring weights live on the algorithm variants (see variants.py); this
module holds everything else the pipeline reads as fixed numbers.
"""
from __future__ import annotations

from typing import Dict, Iterable, List


# how much each interaction nudges the genre weights of the touched item
SIGNALS: Dict[str, float] = {
    "rating_5": 2.0,
    "rating_4": 1.0,
    "rating_3": 0.5,
    "rating_2": -0.5,
    "rating_1": -1.0,
    "liked": 1.5,
    "finished_reading": 1.0,
    "added_to_tbr": 0.7,
    "started_reading": 0.8,
    "added_to_favorites": 1.8,
    "viewed": 0.3,
    "shared": 1.8,
    "added_to_list": 0.9,
}

# genre dimension: onboarding weights top out around 5
GENRE_WEIGHT_SCALE = 5.0
MULTI_GENRE_BONUS = 0.2

# quality dimension
NEUTRAL_QUALITY = 0.5
RATING_CONFIDENCE_COUNT = 100
RATING_FLOOR_SHARE = 0.7

# friends dimension saturates at this many engaged friends
FRIENDS_SATURATION = 3

# trending dimension: weighted recent activity / TRENDING_SCALE
TRENDING_SCALE = 100.0
TRENDING_READ_WEIGHT = 2.0
TRENDING_LIKE_WEIGHT = 1.5
TRENDING_TBR_WEIGHT = 1.0

# recency dimension decays linearly to zero over this window
RECENCY_WINDOW_MONTHS = 24
SECONDS_PER_MONTH = 30 * 24 * 3600

# serving context: short reads get a lift in the morning
MORNING_SHORT_BOOK_PAGES = 300
MORNING_SHORT_BOOK_BOOST = 1.1

# friendship strength in [0, 1]
FRIENDSHIP_BASE = 0.3
MUTUAL_FOLLOW_BONUS = 0.2
MUTUAL_FRIEND_WEIGHT = 0.03
MAX_MUTUAL_FRIEND_BONUS = 0.3
TASTE_SIMILARITY_WEIGHT = 0.2

# friend picks: summed strength saturates at 3 friends, head count at 5
FRIEND_STRENGTH_SCALE = 3.0
FRIEND_COUNT_SCALE = 5.0
FRIEND_PICK_STRENGTH_WEIGHT = 0.5
FRIEND_PICK_COUNT_WEIGHT = 0.3
FRIEND_PICK_QUALITY_WEIGHT = 0.2

# similar items: genre overlap (jaccard), shared author, item quality
SIMILAR_GENRE_WEIGHT = 0.5
SIMILAR_AUTHOR_WEIGHT = 0.3
SIMILAR_QUALITY_WEIGHT = 0.2

# popularity-only list used when a user has no candidates left
FALLBACK_TRENDING_WEIGHT = 0.6
FALLBACK_QUALITY_WEIGHT = 0.4

EXPLANATIONS: Dict[str, str] = {
    "genre": "Because you like {genre}",
    "genre_generic": "Because you liked similar genres",
    "author": "By {author}, one of your favorite authors",
    "quality": "Highly rated by readers",
    "friends": "{count} of your friends loved this",
    "friends_single": "A friend of yours loved this",
    "trending": "Trending in {genre}",
    "trending_generic": "Trending right now",
    "recency": "New release in {genre}",
    "recency_generic": "New and noteworthy",
    "fallback": "Recommended for you",
    "popular": "Popular with readers right now",
    "similar": "Readers also enjoyed",
    "similar_author": "More from {author}",
    "friend_pick_one": "{first} loved this",
    "friend_pick_two": "{first} and {second} loved this",
    "friend_pick_one_more": "{first}, {second} and 1 other loved this",
    "friend_pick_many": "{first}, {second} and {others} others loved this",
}

# spelling variants -> canonical (lower-case) genre key
GENRE_ALIASES: Dict[str, List[str]] = {
    "science fiction": ["sci-fi", "scifi", "science fiction & fantasy", "sf"],
    "fantasy": ["epic fantasy", "urban fantasy", "high fantasy"],
    "mystery": ["detective", "crime", "whodunit"],
    "thriller": ["suspense", "psychological thriller"],
    "romance": ["contemporary romance", "historical romance"],
    "horror": ["gothic", "supernatural horror"],
    "historical fiction": ["historical"],
    "biography": ["memoir", "autobiography"],
    "self-help": ["personal development", "self improvement"],
    "business": ["economics", "management"],
    "fiction": ["literary fiction", "contemporary fiction", "general fiction"],
    "non-fiction": ["nonfiction"],
    "young adult": ["ya", "teen"],
    "children": ["kids", "juvenile"],
}

_ALIAS_LOOKUP: Dict[str, str] = {
    alias: canonical
    for canonical, aliases in GENRE_ALIASES.items()
    for alias in aliases
}

ONBOARDING_GENRES = [
    {"id": "fiction", "name": "Fiction", "description": "Literary and contemporary fiction"},
    {"id": "mystery", "name": "Mystery", "description": "Detective stories and whodunits"},
    {"id": "thriller", "name": "Thriller", "description": "Suspenseful page-turners"},
    {"id": "romance", "name": "Romance", "description": "Love stories and relationships"},
    {"id": "science fiction", "name": "Science Fiction", "description": "Futuristic and speculative"},
    {"id": "fantasy", "name": "Fantasy", "description": "Magic and mythical worlds"},
    {"id": "horror", "name": "Horror", "description": "Scary and supernatural"},
    {"id": "historical fiction", "name": "Historical Fiction", "description": "Stories set in the past"},
    {"id": "biography", "name": "Biography", "description": "True stories of real people"},
    {"id": "self-help", "name": "Self-Help", "description": "Personal development"},
    {"id": "business", "name": "Business", "description": "Business and economics"},
    {"id": "non-fiction", "name": "Non-Fiction", "description": "True stories and factual"},
    {"id": "young adult", "name": "Young Adult", "description": "Books for teens and young adults"},
    {"id": "classics", "name": "Classics", "description": "Timeless literary works"},
    {"id": "poetry", "name": "Poetry", "description": "Verse and poetic works"},
]


def normalize_genre(genre: str) -> str:
    g = " ".join(genre.strip().lower().split())
    return _ALIAS_LOOKUP.get(g, g)


def normalize_genres(genres: Iterable[str]) -> List[str]:
    out: List[str] = []
    for g in genres:
        n = normalize_genre(g)
        if n and n not in out:
            out.append(n)
    return out


def rating_signal(rating: float) -> float:
    r = int(round(rating))
    r = max(1, min(r, 5))
    return SIGNALS[f"rating_{r}"]
