"""
Page Preview - Preview Store
SQLite key-value store of assembled previews, keyed by subject id, with an
index over the metadata timestamp for range sweeps and oldest-first eviction.

Every mutation runs in its own short transaction. Structural damage to the
database file surfaces as StoreCorruptionError; rebuild() starts over from
an empty file. Operational failures (a lock held by another connection, an
I/O error) surface as StoreUnavailableError and leave the file alone.
"""

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, List, Optional

from capture_models import CacheEntry, PreviewMetadata
from utils.error_handler import ErrorContext, StoreCorruptionError, StoreUnavailableError

logger = logging.getLogger(__name__)


class PreviewStore:
    """Persistent previews table"""

    def __init__(self, db_path: str = "data/previews.db", timeout: float = 5.0):
        """
        Args:
            db_path: SQLite database file
            timeout: Seconds to wait on a lock held by another connection
        """
        self.db_path = Path(db_path)
        self.timeout = timeout
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: Optional[sqlite3.Connection] = None
        # Store calls arrive from worker threads via asyncio.to_thread
        self._lock = threading.RLock()

    def _ensure(self) -> sqlite3.Connection:
        if self._conn is None:
            conn = sqlite3.connect(str(self.db_path), timeout=self.timeout, check_same_thread=False)
            try:
                self._init_schema(conn)
            except sqlite3.DatabaseError:
                conn.close()
                raise
            self._conn = conn
        return self._conn

    @staticmethod
    def _init_schema(conn: sqlite3.Connection):
        conn.execute(
            "CREATE TABLE IF NOT EXISTS previews ("
            "subject_id TEXT PRIMARY KEY, image BLOB NOT NULL, title TEXT, "
            "source_url TEXT, icon_ref TEXT, timestamp REAL NOT NULL)"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_previews_timestamp ON previews(timestamp)"
        )
        conn.commit()

    @contextmanager
    def _guard(self, operation: str):
        # OperationalError subclasses DatabaseError, so it is mapped first
        with ErrorContext(operation, raise_as=StoreCorruptionError, catch=(sqlite3.DatabaseError,)):
            with ErrorContext(operation, raise_as=StoreUnavailableError, catch=(sqlite3.OperationalError,)):
                yield

    @staticmethod
    def _row_to_entry(row) -> CacheEntry:
        subject_id, image, title, source_url, icon_ref, timestamp = row
        return CacheEntry(
            subject_id=subject_id,
            image_data=bytes(image) if image is not None else b"",
            metadata=PreviewMetadata(
                title=title or "",
                source_url=source_url or "",
                icon_ref=icon_ref,
                timestamp=timestamp if timestamp is not None else 0.0,
            ),
        )

    def get(self, subject_id: str) -> Optional[CacheEntry]:
        with self._lock, self._guard(f"reading preview {subject_id}"):
            row = self._ensure().execute(
                "SELECT subject_id, image, title, source_url, icon_ref, timestamp "
                "FROM previews WHERE subject_id = ?",
                (subject_id,),
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def put(self, entry: CacheEntry):
        meta = entry.metadata
        with self._lock, self._guard(f"writing preview {entry.subject_id}"):
            conn = self._ensure()
            with conn:
                conn.execute(
                    "INSERT OR REPLACE INTO previews "
                    "(subject_id, image, title, source_url, icon_ref, timestamp) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        entry.subject_id,
                        sqlite3.Binary(entry.image_data),
                        meta.title,
                        meta.source_url,
                        meta.icon_ref,
                        meta.timestamp,
                    ),
                )

    def delete(self, subject_id: str) -> bool:
        return self.delete_many([subject_id]) > 0

    def delete_many(self, subject_ids: Iterable[str]) -> int:
        """Delete several previews in a single transaction"""
        ids = [(subject_id,) for subject_id in subject_ids]
        if not ids:
            return 0
        with self._lock, self._guard("deleting previews"):
            conn = self._ensure()
            with conn:
                before = conn.total_changes
                conn.executemany("DELETE FROM previews WHERE subject_id = ?", ids)
                return conn.total_changes - before

    def get_all(self) -> List[CacheEntry]:
        """All previews, oldest first"""
        with self._lock, self._guard("reading previews"):
            rows = self._ensure().execute(
                "SELECT subject_id, image, title, source_url, icon_ref, timestamp "
                "FROM previews ORDER BY timestamp ASC"
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def list_metadata(self) -> List[dict]:
        """Preview metadata without image payloads, newest first"""
        with self._lock, self._guard("listing previews"):
            rows = self._ensure().execute(
                "SELECT subject_id, title, source_url, icon_ref, timestamp, length(image) "
                "FROM previews ORDER BY timestamp DESC"
            ).fetchall()
        return [
            {
                "subject_id": subject_id,
                "title": title or "",
                "source_url": source_url or "",
                "icon_ref": icon_ref,
                "timestamp": timestamp,
                "size_bytes": size or 0,
            }
            for subject_id, title, source_url, icon_ref, timestamp, size in rows
        ]

    def oldest(self, limit: int) -> List[str]:
        """Subject ids of the oldest previews by timestamp"""
        if limit <= 0:
            return []
        with self._lock, self._guard("reading oldest previews"):
            rows = self._ensure().execute(
                "SELECT subject_id FROM previews ORDER BY timestamp ASC LIMIT ?", (limit,)
            ).fetchall()
        return [row[0] for row in rows]

    def ids_before(self, cutoff: float) -> List[str]:
        """Subject ids with timestamp at or before cutoff (timestamp index range)"""
        with self._lock, self._guard("reading expired previews"):
            rows = self._ensure().execute(
                "SELECT subject_id FROM previews WHERE timestamp <= ?", (cutoff,)
            ).fetchall()
        return [row[0] for row in rows]

    def count(self) -> int:
        with self._lock, self._guard("counting previews"):
            return self._ensure().execute("SELECT COUNT(*) FROM previews").fetchone()[0]

    def size_bytes(self) -> int:
        with self._lock, self._guard("measuring previews"):
            total = self._ensure().execute(
                "SELECT COALESCE(SUM(length(image)), 0) FROM previews"
            ).fetchone()[0]
        return int(total)

    def clear(self) -> int:
        with self._lock, self._guard("clearing previews"):
            conn = self._ensure()
            with conn:
                return conn.execute("DELETE FROM previews").rowcount

    def close(self):
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def rebuild(self):
        """Discard the database file and recreate an empty store"""
        with self._lock:
            self.close()
            for suffix in ("", "-journal", "-wal", "-shm"):
                path = f"{self.db_path}{suffix}"
                if os.path.exists(path):
                    os.remove(path)
            self._ensure()
        logger.warning(f"[PreviewStore] Rebuilt empty store at {self.db_path}")
