from __future__ import annotations

import logging
import sqlite3

logger = logging.getLogger(__name__)


DDL_TABLES_SQL = r"""
CREATE TABLE IF NOT EXISTS kv_entries (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    revision INTEGER NOT NULL DEFAULT 1,
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
);

CREATE TABLE IF NOT EXISTS kv_tombstones (
    key TEXT PRIMARY KEY,
    revision INTEGER NOT NULL,
    removed_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
);
"""


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(DDL_TABLES_SQL)
    logger.debug("Key-value schema ensured")
