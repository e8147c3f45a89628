from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from config.settings import CONFIG

logger = logging.getLogger(__name__)


def _apply_pragmas(conn: sqlite3.Connection, enable_wal: bool, busy_timeout_ms: int) -> None:
    if enable_wal:
        conn.execute("PRAGMA journal_mode = WAL;")
        conn.execute("PRAGMA synchronous = NORMAL;")
    conn.execute("PRAGMA temp_store = MEMORY;")
    conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)};")


@contextmanager
def get_connection(
    db_path: Path | str | None = None,
    enable_wal: bool | None = None,
    busy_timeout_ms: int | None = None,
) -> Generator[sqlite3.Connection, None, None]:
    path = Path(db_path) if db_path else CONFIG.store_path
    path.parent.mkdir(parents=True, exist_ok=True)
    needs_init = not path.exists()
    timeout_ms = busy_timeout_ms if busy_timeout_ms is not None else CONFIG.busy_timeout_ms
    wal = CONFIG.enable_wal if enable_wal is None else enable_wal

    conn = sqlite3.connect(path, timeout=max(1.0, timeout_ms / 1000.0))
    conn.row_factory = sqlite3.Row
    try:
        _apply_pragmas(conn, wal, timeout_ms)
        if needs_init:
            logger.info("Created new store database at %s", path)
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        logger.exception("Transaction rolled back due to an error")
        raise
    finally:
        conn.close()
