"""Durable string-keyed store on top of SQLite.

Values are JSON documents. Every ``set``/``remove`` bumps a store-wide revision
and publishes a :class:`StorageEvent` on the bus, including to the writer's own
subscribers. Writes made by other processes sharing the same database file are
picked up by :meth:`KeyValueStore.poll_external_changes`.

Concurrent writers are last-writer-wins per key; no merge is attempted.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, TypeVar

from config.settings import CONFIG
from db.schema import initialize_schema
from db.sqlite import get_connection
from services.notifications import ChangeBus, StorageEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")

_REMOVED = -1

_NEXT_REVISION_SQL = """
SELECT COALESCE(MAX(revision), 0) + 1 FROM (
    SELECT revision FROM kv_entries
    UNION ALL
    SELECT revision FROM kv_tombstones
)
"""


class KeyValueStore:
    def __init__(self, db_path: Path | str | None = None, bus: ChangeBus[StorageEvent] | None = None) -> None:
        self.db_path = Path(db_path) if db_path else CONFIG.store_path
        self.bus: ChangeBus[StorageEvent] = bus if bus is not None else ChangeBus("storage")
        # key -> last revision this context has seen (_REMOVED for deletions)
        self._seen: dict[str, int] = {}
        with get_connection(self.db_path) as conn:
            initialize_schema(conn)
            self._seen = self._snapshot(conn)

    def get(self, key: str, default: T) -> Any | T:
        with get_connection(self.db_path) as conn:
            row = conn.execute("SELECT value, revision FROM kv_entries WHERE key = ?", (key,)).fetchone()
        if row is None:
            return default
        try:
            return json.loads(row["value"])
        except (TypeError, ValueError):
            logger.warning("Stored value for key %s is not valid JSON, using default", key)
            return default

    def set(self, key: str, value: Any) -> None:
        payload = json.dumps(value, ensure_ascii=False)
        with get_connection(self.db_path) as conn:
            revision = self._reserve_revision(conn)
            conn.execute(
                """
                INSERT INTO kv_entries(key, value, revision, updated_at)
                VALUES (?, ?, ?, strftime('%Y-%m-%dT%H:%M:%f', 'now'))
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    revision = excluded.revision,
                    updated_at = excluded.updated_at
                """,
                (key, payload, revision),
            )
            conn.execute("DELETE FROM kv_tombstones WHERE key = ?", (key,))
        self._seen[key] = revision
        logger.debug("Stored key %s (revision %s)", key, revision)
        self.bus.publish(StorageEvent(key))

    def remove(self, key: str) -> None:
        with get_connection(self.db_path) as conn:
            revision = self._reserve_revision(conn)
            conn.execute("DELETE FROM kv_entries WHERE key = ?", (key,))
            conn.execute(
                "INSERT OR REPLACE INTO kv_tombstones(key, revision) VALUES (?, ?)",
                (key, revision),
            )
        self._seen[key] = _REMOVED
        logger.debug("Removed key %s", key)
        self.bus.publish(StorageEvent(key))

    def keys(self) -> list[str]:
        with get_connection(self.db_path) as conn:
            return [row["key"] for row in conn.execute("SELECT key FROM kv_entries ORDER BY key")]

    def poll_external_changes(self) -> list[str]:
        """Publish events for keys changed by other contexts since the last look.

        Returns the changed keys in revision order.
        """
        with get_connection(self.db_path) as conn:
            current = self._snapshot(conn)
            revisions = self._revisions(conn)
        changed = [key for key, rev in current.items() if self._seen.get(key) != rev]
        changed.extend(key for key, rev in self._seen.items() if key not in current and rev != _REMOVED)
        changed.sort(key=lambda k: revisions.get(k, 0))
        self._seen = current
        for key in changed:
            logger.info("External change detected for key %s", key)
            self.bus.publish(StorageEvent(key))
        return changed

    @staticmethod
    def _reserve_revision(conn: sqlite3.Connection) -> int:
        # Write lock first: the revision read and the write that uses it must not
        # interleave with another process doing the same
        conn.execute("BEGIN IMMEDIATE")
        return int(conn.execute(_NEXT_REVISION_SQL).fetchone()[0])

    @staticmethod
    def _snapshot(conn: sqlite3.Connection) -> dict[str, int]:
        snapshot = {row["key"]: int(row["revision"]) for row in conn.execute("SELECT key, revision FROM kv_entries")}
        for row in conn.execute("SELECT key FROM kv_tombstones"):
            snapshot.setdefault(row["key"], _REMOVED)
        return snapshot

    @staticmethod
    def _revisions(conn: sqlite3.Connection) -> dict[str, int]:
        rows = conn.execute(
            "SELECT key, revision FROM kv_entries UNION ALL SELECT key, revision FROM kv_tombstones"
        ).fetchall()
        return {row["key"]: int(row["revision"]) for row in rows}
