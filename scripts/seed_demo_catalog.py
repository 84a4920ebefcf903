#!/usr/bin/env python3
import argparse
import json
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from backend.app.db import clear_collections, connect, connection_factory, init_db
from backend.recommender.catalog import (
    FOLLOWS,
    HOLDINGS,
    ITEMS,
    POSITIVE_ENGAGEMENTS,
    put_item,
    set_following,
    set_holdings,
    set_positive_engagements,
)
from backend.recommender.store import SqliteRecordStore


def _to_ts(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    # catalog dates come as YYYY or YYYY-MM-DD
    fmt = "%Y" if len(value) == 4 else "%Y-%m-%d"
    return datetime.strptime(value, fmt).replace(tzinfo=timezone.utc).timestamp()


def seed_items(store: SqliteRecordStore, items: list[Dict[str, Any]]) -> int:
    n = 0
    for raw in items:
        if "item_id" not in raw:
            continue
        doc = dict(raw)
        doc["published_at"] = _to_ts(raw.get("published_at"))
        doc["popular_since"] = _to_ts(raw.get("popular_since"))
        put_item(store, doc)
        n += 1
    return n


def seed_users(store: SqliteRecordStore, users: list[Dict[str, Any]]) -> int:
    n = 0
    for u in users:
        user_id = str(u["user_id"])
        set_holdings(store, user_id, u.get("holdings", []))
        set_following(store, user_id, u.get("following", []))
        set_positive_engagements(store, user_id, u.get("liked", []))
        n += 1
    return n


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--catalog", default=os.path.join(os.path.dirname(__file__), "demo_catalog.json"))
    ap.add_argument("--reset", action="store_true", help="Clear catalog collections before seeding")
    args = ap.parse_args()

    if not os.path.exists(args.catalog):
        raise SystemExit(f"Missing catalog file: {args.catalog}")

    with open(args.catalog, "r", encoding="utf-8") as f:
        data = json.load(f)

    conn = connect()
    init_db(conn)
    if args.reset:
        removed = clear_collections(conn, [ITEMS, HOLDINGS, FOLLOWS, POSITIVE_ENGAGEMENTS])
        print(f"Removed {removed} catalog records.")
    conn.close()

    store = SqliteRecordStore(connection_factory())
    n_items = seed_items(store, data.get("items", []))
    n_users = seed_users(store, data.get("users", []))

    print(f"Seeding complete: {n_items} items, {n_users} users.")


if __name__ == "__main__":
    main()
