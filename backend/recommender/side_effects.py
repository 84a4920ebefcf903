from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable
import logging
import threading

logger = logging.getLogger(__name__)


class SideEffectQueue:
    """
    Fire-and-forget work (cache population, profile updates, cache
    invalidation) kept off the request's result path.

    Failures are logged and dropped. At most `max_pending` tasks wait at
    once; anything beyond that is dropped with a warning instead of piling
    up behind a slow store. `inline=True` runs tasks on the caller's thread
    (tests, scripts) with the same error isolation.
    """

    def __init__(self, max_workers: int = 2, max_pending: int = 256, inline: bool = False):
        self.inline = inline
        self._slots = threading.BoundedSemaphore(max_pending)
        self._pool = None if inline else ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="side-effect"
        )

    def _run(self, label: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        try:
            fn(*args, **kwargs)
        except Exception:
            logger.exception("side effect '%s' failed", label)
        finally:
            self._slots.release()

    def submit(self, label: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> bool:
        if not self._slots.acquire(blocking=False):
            logger.warning("side-effect queue full, dropping '%s'", label)
            return False

        if self._pool is None:
            self._run(label, fn, *args, **kwargs)
            return True

        try:
            self._pool.submit(self._run, label, fn, *args, **kwargs)
        except RuntimeError:
            # executor already shut down
            self._slots.release()
            logger.warning("side-effect queue closed, dropping '%s'", label)
            return False
        return True

    def shutdown(self, wait: bool = True) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=wait)
