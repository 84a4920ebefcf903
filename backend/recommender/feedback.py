from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Sequence, Union
import logging
import time

from backend.recommender.entities import ConvertedAction, FeedbackAction, RecItem
from backend.recommender.errors import ConcurrentUpdate, InvalidTransition, ValidationError
from backend.recommender.store import RecordStore

logger = logging.getLogger(__name__)

LOG = "rec_log"
DAY_SECONDS = 24 * 3600

# current status -> actions that move the row forward
_TRANSITIONS: Dict[FeedbackAction, set] = {
    FeedbackAction.SHOWN: {FeedbackAction.CLICKED, FeedbackAction.CONVERTED, FeedbackAction.DISMISSED},
    FeedbackAction.CLICKED: {FeedbackAction.CONVERTED},
    FeedbackAction.CONVERTED: set(),
    FeedbackAction.DISMISSED: set(),
}


def row_key(user_id: str, item_id: str, surface: str, session_id: Optional[str]) -> str:
    return f"{user_id}::{item_id}::{surface}::{session_id or '-'}"


def parse_action(action: Union[str, FeedbackAction]) -> FeedbackAction:
    try:
        return FeedbackAction(action)
    except ValueError:
        allowed = ", ".join(a.value for a in FeedbackAction)
        raise ValidationError("action", f"must be one of: {allowed}") from None


def parse_converted_action(value: Union[str, ConvertedAction, None]) -> Optional[ConvertedAction]:
    if value is None:
        return None
    try:
        return ConvertedAction(value)
    except ValueError:
        allowed = ", ".join(a.value for a in ConvertedAction)
        raise ValidationError("converted_action", f"must be one of: {allowed}") from None


def _rate(num: int, den: int) -> float:
    return num / den if den else 0.0


class RecommendationLog:
    """
    One row per (user, item, surface, session) that walks
    shown -> clicked -> converted, or shown -> dismissed.

    Only `shown` may create a row; every other action without a row is
    rejected. Repeating the row's current status is a no-op, except on the
    terminal states, which accept nothing.
    """

    def __init__(self, store: RecordStore, clock: Callable[[], float] = time.time, max_retries: int = 3):
        self.store = store
        self.clock = clock
        self.max_retries = max_retries

    def _new_row(
        self,
        user_id: str,
        item_id: str,
        surface: str,
        session_id: Optional[str],
        algorithm: str,
        position: Optional[int],
        score: Optional[float],
        reason: Optional[str],
        now: float,
    ) -> Dict[str, Any]:
        return {
            "user_id": user_id,
            "item_id": item_id,
            "surface": surface,
            "session_id": session_id,
            "algorithm": algorithm,
            "position": position,
            "score": score,
            "reason": reason,
            "status": FeedbackAction.SHOWN.value,
            "shown_at": now,
            "clicked_at": None,
            "converted_at": None,
            "converted_action": None,
            "dismissed_at": None,
        }

    def update_recommendation_status(
        self,
        user_id: str,
        item_id: str,
        action: Union[str, FeedbackAction],
        converted_action: Union[str, ConvertedAction, None] = None,
        surface: str = "home",
        session_id: Optional[str] = None,
        algorithm: Optional[str] = None,
        position: Optional[int] = None,
        score: Optional[float] = None,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not user_id:
            raise ValidationError("user_id", "is required")
        if not item_id:
            raise ValidationError("item_id", "is required")

        act = parse_action(action)
        detail = parse_converted_action(converted_action)
        if detail is not None and act is not FeedbackAction.CONVERTED:
            raise ValidationError("converted_action", "only allowed with action 'converted'")

        key = row_key(user_id, item_id, surface, session_id)

        for _attempt in range(self.max_retries):
            now = self.clock()
            row = self.store.find(LOG, key)

            if row is None:
                if act is not FeedbackAction.SHOWN:
                    raise InvalidTransition(None, act.value)
                doc = self._new_row(
                    user_id, item_id, surface, session_id,
                    algorithm or "unknown", position, score, reason, now,
                )
                if self.store.create(LOG, key, doc):
                    return doc
                continue  # somebody else created it first; re-read

            current = FeedbackAction(row["status"])
            if act is FeedbackAction.SHOWN or act is current:
                if current in (FeedbackAction.CONVERTED, FeedbackAction.DISMISSED) and act is current:
                    raise InvalidTransition(current.value, act.value)
                return row

            if act not in _TRANSITIONS[current]:
                raise InvalidTransition(current.value, act.value)

            changes: Dict[str, Any] = {"status": act.value, f"{act.value}_at": now}
            if act is FeedbackAction.CONVERTED and detail is not None:
                changes["converted_action"] = detail.value

            if self.store.conditional_update(LOG, key, {"status": current.value}, changes):
                row.update(changes)
                return row

            logger.debug("log row %s changed under us, retrying", key)

        raise ConcurrentUpdate(f"could not apply '{act.value}' to {key}")

    def log_shown(
        self,
        user_id: str,
        items: Sequence[RecItem],
        surface: str = "home",
        session_id: Optional[str] = None,
    ) -> int:
        """Mark a served list as shown. Returns the number of rows touched."""
        for rec in items:
            self.update_recommendation_status(
                user_id,
                rec.item_id,
                FeedbackAction.SHOWN,
                surface=surface,
                session_id=session_id,
                algorithm=rec.algorithm,
                position=rec.position,
                score=rec.score,
                reason=rec.reason,
            )
        return len(items)

    def _rows_since(self, window_days: float, **equals: Any) -> List[Dict[str, Any]]:
        if window_days <= 0:
            raise ValidationError("days", "must be > 0")
        since = self.clock() - window_days * DAY_SECONDS
        return [r for r in self.store.find_all(LOG, **equals) if float(r["shown_at"]) >= since]

    @staticmethod
    def _aggregate(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
        shown = len(rows)
        clicked = sum(1 for r in rows if r.get("clicked_at") is not None)
        converted = sum(1 for r in rows if r.get("converted_at") is not None)
        dismissed = sum(1 for r in rows if r.get("dismissed_at") is not None)

        positions = [r["position"] for r in rows if r.get("position") is not None]
        scores = [r["score"] for r in rows if r.get("score") is not None]

        return {
            "shown": shown,
            "clicked": clicked,
            "converted": converted,
            "dismissed": dismissed,
            "ctr": _rate(clicked, shown),
            "conversion_rate": _rate(converted, shown),
            "dismissal_rate": _rate(dismissed, shown),
            "avg_position": sum(positions) / len(positions) if positions else 0.0,
            "avg_score": sum(scores) / len(scores) if scores else 0.0,
        }

    def get_algorithm_metrics(self, algorithm: Optional[str] = None, window_days: float = 7) -> Dict[str, Dict[str, Any]]:
        """
        Per-algorithm rates over rows first shown within the trailing window.
        Asking for a specific algorithm with no rows gives all-zero metrics.
        """
        filters = {"algorithm": algorithm} if algorithm else {}
        rows = self._rows_since(window_days, **filters)

        grouped: Dict[str, List[Dict[str, Any]]] = {}
        for r in rows:
            grouped.setdefault(r["algorithm"], []).append(r)

        if algorithm and algorithm not in grouped:
            grouped[algorithm] = []

        return {name: self._aggregate(group) for name, group in sorted(grouped.items())}

    def compare_algorithms(self, algorithm_a: str, algorithm_b: str, window_days: float = 7) -> Dict[str, Any]:
        a = self.get_algorithm_metrics(algorithm_a, window_days)[algorithm_a]
        b = self.get_algorithm_metrics(algorithm_b, window_days)[algorithm_b]

        winner = None
        if a["shown"] and b["shown"]:
            ka = (a["conversion_rate"], a["ctr"])
            kb = (b["conversion_rate"], b["ctr"])
            if ka != kb:
                winner = algorithm_a if ka > kb else algorithm_b

        return {"algorithm_a": {"name": algorithm_a, **a}, "algorithm_b": {"name": algorithm_b, **b}, "winner": winner}

    def top_performers(self, limit: int = 20, window_days: float = 30) -> List[Dict[str, Any]]:
        per_item: Dict[str, List[Dict[str, Any]]] = {}
        for r in self._rows_since(window_days):
            per_item.setdefault(r["item_id"], []).append(r)

        out = []
        for item_id, rows in per_item.items():
            agg = self._aggregate(rows)
            out.append({
                "item_id": item_id,
                "shown": agg["shown"],
                "clicked": agg["clicked"],
                "converted": agg["converted"],
                "ctr": agg["ctr"],
                "conversion_rate": agg["conversion_rate"],
            })

        out.sort(key=lambda x: (-x["conversion_rate"], -x["converted"], -x["ctr"], x["item_id"]))
        return out[:limit]

    def user_history(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        rows = self.store.find_all(LOG, user_id=user_id)
        rows.sort(key=lambda r: (-float(r["shown_at"]), r["item_id"]))
        return rows[:limit]
