"""
SQLite database for persistent annotation storage.

This module provides a simple SQLite-based persistence layer for annotation
records. Each call opens its own connection, so the store is safe to use
from the request threadpool; concurrent writers to the same record resolve
as last-write-wins.
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .models import AnnotationStatus
from .utils import ensure_directory


# Default database path
DEFAULT_DB_PATH = Path("data/annotations.db")

# Columns that may be changed after a record is created
UPDATABLE_COLUMNS = (
    "title",
    "image",
    "text_content",
    "annotation",
    "genre",
    "tts_url",
    "status",
    "error_message",
    "updated_at",
)


def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize datetime to ISO format string."""
    return dt.isoformat() if dt else None


def _deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    """Deserialize ISO format string to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


@contextmanager
def open_connection(db_path: Path) -> Iterator[sqlite3.Connection]:
    """Open a connection with WAL enabled; commit on success, roll back on error."""
    conn = sqlite3.connect(str(db_path), timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


class AnnotationDatabase:
    """
    SQLite database for annotation persistence.

    Thread-safe: SQLite handles concurrent access with WAL mode.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        ensure_directory(self.db_path.parent)
        self._init_db()

    def _get_connection(self):
        return open_connection(self.db_path)

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS annotations (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    image TEXT,
                    source_type TEXT NOT NULL,
                    text_content TEXT NOT NULL DEFAULT '',
                    annotation TEXT NOT NULL DEFAULT '',
                    genre TEXT NOT NULL DEFAULT '',
                    tts_url TEXT,
                    status TEXT NOT NULL,
                    error_message TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_annotations_created_at
                ON annotations(created_at DESC)
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_annotations_user_status
                ON annotations(user_id, status)
            """)

    def save_annotation(self, data: Dict[str, Any]) -> None:
        """
        Insert or fully replace an annotation record.

        Args:
            data: Dictionary with annotation fields
        """
        with self._get_connection() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO annotations (
                    id, user_id, title, image, source_type, text_content,
                    annotation, genre, tts_url, status, error_message,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                data["id"],
                data["user_id"],
                data["title"],
                data.get("image"),
                data["source_type"],
                data.get("text_content", ""),
                data.get("annotation", ""),
                data.get("genre", ""),
                data.get("tts_url"),
                AnnotationStatus(data["status"]).value,
                data.get("error_message"),
                _serialize_datetime(data["created_at"]),
                _serialize_datetime(data["updated_at"]),
            ))

    def get_annotation(self, annotation_id: str) -> Optional[Dict[str, Any]]:
        """
        Retrieve an annotation by ID.

        Returns:
            Annotation data dictionary or None if not found
        """
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM annotations WHERE id = ?", (annotation_id,)
            ).fetchone()

            if not row:
                return None

            return self._row_to_dict(row)

    def list_annotations(
        self,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        genre: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """
        List annotations ordered by creation time (newest first).

        Args:
            user_id: Only records created by this user
            status: Only records in this status
            genre: Only records with this genre
            limit: Maximum number of records (None for all)
            offset: Number of records to skip
        """
        clauses: List[str] = []
        values: List[Any] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            values.append(user_id)
        if status is not None:
            clauses.append("status = ?")
            values.append(AnnotationStatus(status).value)
        if genre is not None:
            clauses.append("genre = ?")
            values.append(genre)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        values.extend([limit if limit is not None else -1, max(offset, 0)])

        with self._get_connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM annotations {where} "
                "ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                values,
            ).fetchall()

            return [self._row_to_dict(row) for row in rows]

    def update_annotation(self, annotation_id: str, fields: Dict[str, Any]) -> bool:
        """
        Update a subset of columns on an annotation.

        Args:
            annotation_id: The annotation ID
            fields: Column name -> new value; only UPDATABLE_COLUMNS are accepted

        Returns:
            True if a record matched, False if not found
        """
        unknown = set(fields) - set(UPDATABLE_COLUMNS)
        if unknown:
            raise ValueError(f"Cannot update columns: {sorted(unknown)}")
        if not fields:
            return self.get_annotation(annotation_id) is not None

        updates = []
        values: List[Any] = []
        for column, value in fields.items():
            updates.append(f"{column} = ?")
            if isinstance(value, datetime):
                value = _serialize_datetime(value)
            elif isinstance(value, AnnotationStatus):
                value = value.value
            values.append(value)
        values.append(annotation_id)

        with self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE annotations SET {', '.join(updates)} WHERE id = ?",
                values,
            )
            return cursor.rowcount > 0

    def delete_annotation(self, annotation_id: str) -> bool:
        """
        Delete an annotation record.

        Returns:
            True if deleted, False if not found
        """
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM annotations WHERE id = ?", (annotation_id,))
            return cursor.rowcount > 0

    def count_by_status(self, user_id: str) -> Dict[str, int]:
        """Count a user's annotations grouped by status."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS count FROM annotations "
                "WHERE user_id = ? GROUP BY status",
                (user_id,),
            ).fetchall()
            return {row["status"]: row["count"] for row in rows}

    def _row_to_dict(self, row: sqlite3.Row) -> Dict[str, Any]:
        """Convert a database row to an annotation data dictionary."""
        return {
            "id": row["id"],
            "user_id": row["user_id"],
            "title": row["title"],
            "image": row["image"],
            "source_type": row["source_type"],
            "text_content": row["text_content"] or "",
            "annotation": row["annotation"] or "",
            "genre": row["genre"] or "",
            "tts_url": row["tts_url"],
            "status": AnnotationStatus(row["status"]),
            "error_message": row["error_message"],
            "created_at": _deserialize_datetime(row["created_at"]),
            "updated_at": _deserialize_datetime(row["updated_at"]),
        }
