#!/usr/bin/env python3
import argparse
import json
import logging

from backend.app.config import settings
from backend.app.logging_setup import setup_logging
from backend.app.wiring import build_sqlite_pipeline
from backend.recommender.errors import RecommenderError

logger = logging.getLogger("precompute")


def main():
    ap = argparse.ArgumentParser(description="Refresh cached recommendations for recently active users")
    ap.add_argument("--surface", default="home")
    ap.add_argument("--active-days", type=int, default=7)
    ap.add_argument("--batch-size", type=int, default=50)
    ap.add_argument("--limit", type=int, default=settings.default_limit)
    ap.add_argument("--user-id", action="append", default=[], help="Refresh these users instead")
    args = ap.parse_args()

    setup_logging(settings.log_level)
    pipeline = build_sqlite_pipeline(settings)

    try:
        users = args.user_id or pipeline.events.active_users(args.active_days)
        todo = pipeline.cache.users_needing_refresh(users, surface=args.surface, limit=args.batch_size)

        refreshed = 0
        failed = 0
        for user_id in todo:
            try:
                n = pipeline.recommendations.refresh(user_id, surface=args.surface, limit=args.limit)
                refreshed += 1
                logger.info("refreshed user=%s items=%d", user_id, n)
            except RecommenderError:
                failed += 1
                logger.exception("refresh failed for user=%s", user_id)
    finally:
        pipeline.close()

    print(json.dumps({
        "candidates": len(users),
        "needing_refresh": len(todo),
        "refreshed": refreshed,
        "failed": failed,
    }, indent=2))


if __name__ == "__main__":
    main()
