import os
import sqlite3
from typing import Callable, Iterable, Optional
from backend.app.config import settings
from backend.app.schema import SCHEMA_SQL

def _sqlite_path_from_url(database_url: str) -> str:
    # this should support:
    #   sqlite:///./data/app.db  -> ./data/app.db
    #   sqlite:////abs/path.db   -> /abs/path.db
    if not database_url.startswith("sqlite:"):
        raise ValueError("Only sqlite DATABASE_URL is supported")

    if database_url.startswith("sqlite:///./") or database_url.startswith("sqlite:///../"):
        return database_url.replace("sqlite:///", "", 1)

    if database_url.startswith("sqlite:////"):
        # absolute path
        return database_url.replace("sqlite:////", "/", 1)

    if database_url.startswith("sqlite:///"):
        # treat as absolute (/path...)
        return database_url.replace("sqlite://", "", 1)

    return database_url.replace("sqlite:", "", 1)

def get_db_path() -> str:
    return _sqlite_path_from_url(settings.database_url)

def connect(db_path: Optional[str] = None) -> sqlite3.Connection:
    path = db_path or get_db_path()
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    conn = sqlite3.connect(path, timeout=10.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn

def init_db(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA_SQL)
    conn.commit()

def connection_factory(db_path: Optional[str] = None) -> Callable[[], sqlite3.Connection]:
    # the record store opens one short-lived connection per operation
    path = db_path or get_db_path()
    return lambda: connect(path)

def clear_collections(conn: sqlite3.Connection, collections: Iterable[str]) -> int:
    removed = 0
    for name in collections:
        cur = conn.execute("DELETE FROM records WHERE collection = ?", (name,))
        removed += cur.rowcount
    conn.commit()
    return removed
