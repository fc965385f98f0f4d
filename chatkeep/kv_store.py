"""
Key-value document store using SQLite.

The storage substrate every other chatkeep component is built on. It keeps
JSON documents under string keys in two areas:

- ``local``: device-local state (encryption key, encrypted secrets, analytics)
- ``sync``: state that a replicating client would share across devices
  (profiles, license cache, credit ledger, API key records)

Each ``set`` replaces a whole document. There is deliberately no
read-modify-write primitive: components read a snapshot, compute the next
document and write it back, and two processes doing that at the same time
can lose one of the updates. WAL mode and a busy timeout only guarantee
that individual reads and writes never see a torn document.
"""

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Optional

logger = logging.getLogger(__name__)

LOCAL = "local"
SYNC = "sync"
AREAS = frozenset({LOCAL, SYNC})

# How long a writer waits on another process's lock before giving up
BUSY_TIMEOUT_MS = 5000


def _check_area(area: str) -> None:
    if area not in AREAS:
        raise ValueError(f"Unknown storage area: {area!r} (expected 'local' or 'sync')")


class SqliteKeyValueStore:
    """
    SQLite-backed store for JSON documents, keyed by (area, key).

    Safe to open from several processes against the same file. A single
    instance may be shared between threads; calls are serialized by an
    internal lock.
    """

    def __init__(self, db_path: Path):
        """
        Args:
            db_path: Path to SQLite database file
        """
        self._db_path = Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._init_db()

    @property
    def path(self) -> Path:
        return self._db_path

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            timeout=BUSY_TIMEOUT_MS / 1000,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS documents (
                area TEXT NOT NULL,
                key TEXT NOT NULL,
                value_json TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (area, key)
            )
        """)
        self._conn.commit()

    def _now(self) -> str:
        """Current timestamp in ISO format."""
        return datetime.now(timezone.utc).isoformat()

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError(f"Store is closed: {self._db_path}")
        return self._conn

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get(self, area: str, key: str) -> Any:
        """
        Get a document.

        Returns:
            The decoded JSON value, or None if the key is absent
        """
        _check_area(area)
        with self._lock:
            row = self._require_conn().execute("""
                SELECT value_json FROM documents
                WHERE area = ? AND key = ?
            """, (area, key)).fetchone()
        if row is None:
            return None
        return json.loads(row["value_json"])

    def get_many(self, area: str, keys: list[str]) -> dict[str, Any]:
        """
        Get several documents in one round trip.

        Returns:
            Dict mapping key → value (missing keys omitted)
        """
        _check_area(area)
        if not keys:
            return {}
        placeholders = ",".join("?" * len(keys))
        with self._lock:
            rows = self._require_conn().execute(f"""
                SELECT key, value_json FROM documents
                WHERE area = ? AND key IN ({placeholders})
            """, (area, *keys)).fetchall()
        return {row["key"]: json.loads(row["value_json"]) for row in rows}

    def keys(self, area: str, prefix: str = "") -> list[str]:
        """List keys in an area, optionally restricted to a prefix, sorted."""
        _check_area(area)
        # Escape LIKE wildcards so prefixes are literal
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with self._lock:
            rows = self._require_conn().execute("""
                SELECT key FROM documents
                WHERE area = ? AND key LIKE ? ESCAPE '\\'
                ORDER BY key
            """, (area, escaped + "%")).fetchall()
        return [row["key"] for row in rows]

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def set(self, area: str, key: str, value: Any) -> None:
        """Write a whole document, replacing whatever was there."""
        self.set_many(area, {key: value})

    def set_many(self, area: str, items: Mapping[str, Any]) -> None:
        """Write several documents in a single commit."""
        _check_area(area)
        if not items:
            return
        now = self._now()
        rows = [
            (area, key, json.dumps(value, ensure_ascii=False), now)
            for key, value in items.items()
        ]
        with self._lock:
            conn = self._require_conn()
            conn.executemany("""
                INSERT OR REPLACE INTO documents (area, key, value_json, updated_at)
                VALUES (?, ?, ?, ?)
            """, rows)
            conn.commit()
        logger.debug("Wrote %s/%s", area, ",".join(items))

    def delete(self, area: str, key: str) -> bool:
        """
        Delete a document.

        Returns:
            True if the document existed and was deleted
        """
        _check_area(area)
        with self._lock:
            conn = self._require_conn()
            cursor = conn.execute("""
                DELETE FROM documents
                WHERE area = ? AND key = ?
            """, (area, key))
            conn.commit()
        return cursor.rowcount > 0

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        try:
            self.close()
        except Exception:
            pass
