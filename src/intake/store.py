"""SQLite-backed queue store for intake records."""

import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

from .exceptions import QueueError
from .models import FileStatus, QueuedFile, new_id

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id",
    "filename",
    "show_id",
    "status",
    "source_path",
    "output_path",
    "error",
    "processing_time_ms",
    "added_at",
    "processed_at",
    "conflict_resolved",
)

_UPDATABLE = frozenset(_COLUMNS) - {"id", "show_id", "filename", "added_at"}


class QueueStore:
    """
    Durable mapping of queued-file records keyed by id.

    This is the single source of truth for queue state. Every operation
    is atomic on its own; callers never hold a lock across operations.

    Features:
    - Atomic insert with (show_id, filename) deduplication
    - Compare-and-set status transitions
    - Crash recovery of records left in 'processing'
    - Thread-safe operations
    """

    def __init__(self, db_path: Path, table_name: str = "queued_files"):
        """
        Initialize the queue store.

        Args:
            db_path: Path to the SQLite database file
            table_name: Name of the table for queue records
        """
        self.db_path = Path(db_path)
        self.table_name = table_name
        self._lock = threading.Lock()
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._closed = False

        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a thread-local database connection."""
        if getattr(self._local, "conn", None) is None:
            conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
                isolation_level=None,  # Autocommit mode
                timeout=30.0,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            self._local.conn = conn
            self._connections.append(conn)
        return self._local.conn

    def _init_db(self) -> None:
        """Initialize the database schema."""
        conn = self._get_connection()
        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {self.table_name} (
                id TEXT PRIMARY KEY,
                filename TEXT NOT NULL,
                show_id TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                source_path TEXT NOT NULL,
                output_path TEXT,
                error TEXT,
                processing_time_ms INTEGER,
                added_at REAL NOT NULL,
                processed_at REAL,
                conflict_resolved INTEGER NOT NULL DEFAULT 0
            )
        """)
        conn.execute(f"""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_{self.table_name}_show_filename
            ON {self.table_name}(show_id, filename)
        """)
        conn.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{self.table_name}_status
            ON {self.table_name}(status)
        """)

    def _check_open(self) -> None:
        if self._closed:
            raise QueueError("Queue store is closed")

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> QueuedFile:
        data = dict(row)
        data["conflict_resolved"] = bool(data.get("conflict_resolved"))
        return QueuedFile.from_dict(data)

    @staticmethod
    def _to_db_value(key: str, value):
        if isinstance(value, FileStatus):
            return value.value
        if isinstance(value, Path):
            return str(value)
        if key == "conflict_resolved":
            return int(bool(value))
        return value

    def _insert(self, conn: sqlite3.Connection, record: QueuedFile) -> QueuedFile:
        stored = QueuedFile.from_dict({**record.to_dict(), "id": new_id(), "added_at": time.time()})
        values = stored.to_dict()
        placeholders = ",".join("?" * len(_COLUMNS))
        conn.execute(
            f"INSERT INTO {self.table_name} ({','.join(_COLUMNS)}) VALUES ({placeholders})",
            [self._to_db_value(col, values[col]) for col in _COLUMNS],
        )
        return stored

    def get_queue(self) -> List[QueuedFile]:
        """
        Get all queue records in insertion order.

        Returns:
            List of queued files
        """
        self._check_open()

        with self._lock:
            conn = self._get_connection()
            cursor = conn.execute(f"SELECT * FROM {self.table_name} ORDER BY added_at, rowid")
            return [self._row_to_record(row) for row in cursor.fetchall()]

    def get_file(self, file_id: str) -> Optional[QueuedFile]:
        """Get a single record by id, or None."""
        self._check_open()

        with self._lock:
            conn = self._get_connection()
            row = conn.execute(
                f"SELECT * FROM {self.table_name} WHERE id = ?", (file_id,)
            ).fetchone()
            return self._row_to_record(row) if row else None

    def get_by_status(self, status: FileStatus) -> List[QueuedFile]:
        """Get all records in the given status, oldest first."""
        self._check_open()

        with self._lock:
            conn = self._get_connection()
            cursor = conn.execute(
                f"SELECT * FROM {self.table_name} WHERE status = ? ORDER BY added_at, rowid",
                (status.value,),
            )
            return [self._row_to_record(row) for row in cursor.fetchall()]

    def find_by_show_and_filename(self, show_id: str, filename: str) -> Optional[QueuedFile]:
        """Get the record for a (show, filename) pair, or None."""
        self._check_open()

        with self._lock:
            conn = self._get_connection()
            row = conn.execute(
                f"SELECT * FROM {self.table_name} WHERE show_id = ? AND filename = ?",
                (show_id, filename),
            ).fetchone()
            return self._row_to_record(row) if row else None

    def add_to_queue(self, record: QueuedFile) -> QueuedFile:
        """
        Insert a record, assigning a fresh id and insertion timestamp.

        Args:
            record: Record to insert; its id and added_at are ignored

        Returns:
            The stored record

        Raises:
            QueueError: If the (show_id, filename) pair is already queued
        """
        self._check_open()

        with self._lock:
            conn = self._get_connection()
            try:
                stored = self._insert(conn, record)
            except sqlite3.IntegrityError as e:
                raise QueueError(
                    f"{record.filename} is already queued for show {record.show_id}"
                ) from e

        logger.info(f"File added to queue: {stored.filename} ({stored.id})")
        return stored

    def add_if_absent(self, record: QueuedFile) -> Optional[QueuedFile]:
        """
        Insert a record unless its (show_id, filename) pair is already queued.

        Returns:
            The stored record, or None if it was a duplicate
        """
        self._check_open()

        with self._lock:
            conn = self._get_connection()
            try:
                stored = self._insert(conn, record)
            except sqlite3.IntegrityError:
                return None

        logger.info(f"File added to queue: {stored.filename} ({stored.id})")
        return stored

    def update_queue_item(self, file_id: str, **fields) -> Optional[QueuedFile]:
        """
        Update fields of a single record atomically.

        Args:
            file_id: Record to update
            **fields: Column values; None clears a column

        Returns:
            The updated record, or None if it does not exist
        """
        self._check_open()
        self._validate_fields(fields)

        with self._lock:
            conn = self._get_connection()
            if fields:
                assignments = ", ".join(f"{key} = ?" for key in fields)
                conn.execute(
                    f"UPDATE {self.table_name} SET {assignments} WHERE id = ?",
                    [self._to_db_value(k, v) for k, v in fields.items()] + [file_id],
                )
            row = conn.execute(
                f"SELECT * FROM {self.table_name} WHERE id = ?", (file_id,)
            ).fetchone()
            return self._row_to_record(row) if row else None

    def transition(
        self,
        file_id: str,
        from_status: FileStatus,
        to_status: FileStatus,
        **fields,
    ) -> bool:
        """
        Change a record's status only if it currently has `from_status`.

        Args:
            file_id: Record to update
            from_status: Expected current status
            to_status: New status
            **fields: Extra columns to set in the same statement

        Returns:
            True if the record was transitioned
        """
        self._check_open()
        self._validate_fields(fields)

        values = {"status": to_status, **fields}
        assignments = ", ".join(f"{key} = ?" for key in values)

        with self._lock:
            conn = self._get_connection()
            cursor = conn.execute(
                f"UPDATE {self.table_name} SET {assignments} WHERE id = ? AND status = ?",
                [self._to_db_value(k, v) for k, v in values.items()] + [file_id, from_status.value],
            )
            return cursor.rowcount == 1

    def remove_from_queue(self, file_id: str) -> bool:
        """
        Delete a record.

        Returns:
            True if a record was removed
        """
        self._check_open()

        with self._lock:
            conn = self._get_connection()
            cursor = conn.execute(f"DELETE FROM {self.table_name} WHERE id = ?", (file_id,))
            removed = cursor.rowcount == 1

        if removed:
            logger.info(f"File removed from queue: {file_id}")
        return removed

    def clear_queue(self) -> int:
        """
        Remove all records.

        Returns:
            Number of records removed
        """
        self._check_open()

        with self._lock:
            conn = self._get_connection()
            cursor = conn.execute(f"DELETE FROM {self.table_name}")
            count = cursor.rowcount

        logger.info(f"Queue cleared ({count} records)")
        return count

    def count_by_status(self) -> Dict[str, int]:
        """Get the number of records per status, including zero counts."""
        self._check_open()

        counts = {status.value: 0 for status in FileStatus}
        with self._lock:
            conn = self._get_connection()
            for row in conn.execute(
                f"SELECT status, COUNT(*) AS n FROM {self.table_name} GROUP BY status"
            ):
                counts[row["status"]] = row["n"]
        return counts

    def recover_interrupted(self) -> int:
        """
        Mark records left in 'processing' by a crashed run as failed.

        They are not retried automatically; an operator can retry them.

        Returns:
            Number of records recovered
        """
        self._check_open()

        with self._lock:
            conn = self._get_connection()
            cursor = conn.execute(
                f"UPDATE {self.table_name} SET status = ?, error = ?, processed_at = ? WHERE status = ?",
                (
                    FileStatus.FAILED.value,
                    "Processing interrupted",
                    time.time(),
                    FileStatus.PROCESSING.value,
                ),
            )
            count = cursor.rowcount

        if count:
            logger.warning(f"Marked {count} interrupted record(s) as failed")
        return count

    def __len__(self) -> int:
        self._check_open()

        with self._lock:
            conn = self._get_connection()
            return conn.execute(f"SELECT COUNT(*) FROM {self.table_name}").fetchone()[0]

    @staticmethod
    def _validate_fields(fields: dict) -> None:
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise QueueError(f"Cannot update queue fields: {', '.join(sorted(unknown))}")

    def close(self) -> None:
        """Close the store and release resources."""
        if self._closed:
            return

        self._closed = True

        with self._lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
