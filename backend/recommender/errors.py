from __future__ import annotations


class RecommenderError(Exception):
    """Base class for errors raised by the recommendation pipeline."""


class ValidationError(RecommenderError):
    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class InvalidTransition(ValidationError):
    """A feedback action that the row's current status does not allow."""

    def __init__(self, current: str | None, action: str):
        where = current if current is not None else "no row"
        super().__init__("action", f"cannot apply '{action}' from '{where}'")
        self.current = current
        self.action = action


class StoreUnavailable(RecommenderError):
    pass


class ConcurrentUpdate(RecommenderError):
    """Conditional update kept losing against other writers."""
