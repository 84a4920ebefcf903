SCHEMA_SQL = """
PRAGMA foreign_keys = ON;

-- every collection (preferences, rec cache, rec log, events, catalog) lives here
-- as JSON documents keyed by (collection, key)

CREATE TABLE IF NOT EXISTS records (
  collection TEXT NOT NULL,
  key        TEXT NOT NULL,
  doc_json   TEXT NOT NULL,
  updated_at REAL NOT NULL,                    -- unix timestamp
  created_at TEXT NOT NULL DEFAULT (datetime('now')),
  PRIMARY KEY (collection, key)
);

CREATE INDEX IF NOT EXISTS idx_records_collection_updated
ON records(collection, updated_at);
"""
