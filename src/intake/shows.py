"""
Show profile and application settings persistence via SQLite tables.
"""

import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

from .exceptions import ShowNotFoundError
from .models import ShowProfile

logger = logging.getLogger(__name__)


class ShowStore:
    """Show configuration source; profiles are stored as JSON rows."""

    def __init__(self, db_path: Path):
        self._db_path = Path(db_path)
        self._lock = threading.Lock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        """Create the shows table if it doesn't exist."""
        conn = self._connect()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS shows (
                    id TEXT PRIMARY KEY,
                    payload TEXT NOT NULL
                )
            """)
            conn.commit()
        finally:
            conn.close()

    def get_all_shows(self) -> List[ShowProfile]:
        """Get every show, ordered by creation time."""
        conn = self._connect()
        try:
            rows = conn.execute("SELECT payload FROM shows").fetchall()
        finally:
            conn.close()
        shows = [ShowProfile.from_dict(json.loads(row["payload"])) for row in rows]
        return sorted(shows, key=lambda s: s.created_at)

    def get_show(self, show_id: str) -> Optional[ShowProfile]:
        """Get a show by id, or None."""
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT payload FROM shows WHERE id = ?", (show_id,)
            ).fetchone()
        finally:
            conn.close()
        return ShowProfile.from_dict(json.loads(row["payload"])) if row else None

    def save_show(self, show: ShowProfile) -> ShowProfile:
        """Insert or replace a show as given."""
        with self._lock:
            conn = self._connect()
            try:
                conn.execute(
                    "INSERT OR REPLACE INTO shows (id, payload) VALUES (?, ?)",
                    (show.id, json.dumps(show.to_dict())),
                )
                conn.commit()
            finally:
                conn.close()
        return show

    def create_show(self, show: ShowProfile) -> ShowProfile:
        """Store a new show, stamping its timestamps."""
        now = time.time()
        show.created_at = now
        show.updated_at = now
        self.save_show(show)
        logger.info(f"Show created: {show.name} ({show.id})")
        return show

    def update_show(self, show_id: str, **updates) -> ShowProfile:
        """
        Update fields of an existing show.

        Raises:
            ShowNotFoundError: If the show does not exist
        """
        show = self.get_show(show_id)
        if show is None:
            raise ShowNotFoundError(f"Show not found: {show_id}")

        data = show.to_dict()
        data.update(updates)
        data["id"] = show_id
        data["updated_at"] = time.time()
        if "file_patterns" in updates:
            data["file_patterns"] = [
                p.to_dict() if hasattr(p, "to_dict") else p for p in updates["file_patterns"]
            ]

        updated = self.save_show(ShowProfile.from_dict(data))
        logger.info(f"Show updated: {updated.name} ({show_id})")
        return updated

    def delete_show(self, show_id: str) -> bool:
        """Delete a show. Returns True if it existed."""
        with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute("DELETE FROM shows WHERE id = ?", (show_id,))
                conn.commit()
                deleted = cursor.rowcount == 1
            finally:
                conn.close()
        if deleted:
            logger.info(f"Show deleted: {show_id}")
        return deleted

    def import_json(self, path: Path) -> List[ShowProfile]:
        """
        Load shows from a JSON file holding a list (or {"shows": [...]}).

        Existing shows with the same id are replaced.
        """
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if isinstance(data, dict):
            data = data.get("shows", [])

        shows = [self.save_show(ShowProfile.from_dict(item)) for item in data]
        logger.info(f"Imported {len(shows)} show(s) from {path}")
        return shows


class SettingsManager:
    """Manages application settings stored in the intake database."""

    def __init__(self, db_path: Path):
        self._db_path = Path(db_path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        conn = self._connect()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            """)
            conn.commit()
        finally:
            conn.close()

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Get a setting value by key."""
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT value FROM settings WHERE key = ?", (key,)
            ).fetchone()
            return row["value"] if row else default
        finally:
            conn.close()

    def set(self, key: str, value: Optional[str]) -> None:
        """Set a setting value; None deletes it."""
        conn = self._connect()
        try:
            if value is None:
                conn.execute("DELETE FROM settings WHERE key = ?", (key,))
            else:
                conn.execute(
                    "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
                    (key, value),
                )
            conn.commit()
        finally:
            conn.close()

    def get_all(self) -> Dict[str, str]:
        """Get all settings as a dict."""
        conn = self._connect()
        try:
            rows = conn.execute("SELECT key, value FROM settings").fetchall()
            return {row["key"]: row["value"] for row in rows}
        finally:
            conn.close()

    # --- Directory overrides ---

    def get_global_watch_directory(self) -> Optional[Path]:
        value = self.get("global_watch_directory")
        return Path(value) if value else None

    def set_global_watch_directory(self, path: Optional[Path]) -> None:
        self.set("global_watch_directory", str(path) if path else None)

    def get_global_output_directory(self) -> Optional[Path]:
        value = self.get("global_output_directory")
        return Path(value) if value else None

    def set_global_output_directory(self, path: Optional[Path]) -> None:
        self.set("global_output_directory", str(path) if path else None)
