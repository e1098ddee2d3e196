"""
SQLite storage for uploaded file metadata.

Once a transfer completes, the application records the file's name, remote
URL, type, size and folder here. The scheduler never touches this store: a
completed task means the bytes arrived, not that the metadata was saved.
"""

import logging
import sqlite3
from concurrent.futures import Future
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

from .models import StoredFile, TaskSnapshot, TaskStatus
from .utils import base_filename, ensure_directory

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path("data/uploads.db")


def _serialize_datetime(dt: datetime) -> str:
    """Serialize datetime to ISO format string."""
    return dt.isoformat()


def _deserialize_datetime(s: str) -> datetime:
    """Deserialize ISO format string to datetime."""
    return datetime.fromisoformat(s)


class FileMetadataStore:
    """
    SQLite store for uploaded file records.

    Thread-safe: each operation opens its own connection and SQLite
    serializes writers in WAL mode.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        ensure_directory(self.db_path.parent)
        self._init_db()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper settings."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
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

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS uploads (
                    id TEXT PRIMARY KEY,
                    task_id TEXT,
                    name TEXT NOT NULL,
                    url TEXT NOT NULL,
                    file_type TEXT NOT NULL,
                    file_size INTEGER NOT NULL,
                    folder_id TEXT,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_uploads_folder_id
                ON uploads(folder_id)
            """)

    def record_upload(
        self,
        name: str,
        url: str,
        file_type: str,
        file_size: int,
        folder_id: Optional[str] = None,
        task_id: Optional[str] = None,
    ) -> StoredFile:
        """
        Insert a record for a transferred file.

        Returns:
            The stored record, including its generated id
        """
        record = StoredFile(
            id=f"upload_{uuid4().hex}",
            task_id=task_id,
            name=base_filename(name),
            url=url,
            file_type=file_type or "application/octet-stream",
            file_size=file_size,
            folder_id=folder_id,
            created_at=datetime.utcnow(),
        )
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO uploads (id, task_id, name, url, file_type, file_size, folder_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.id,
                record.task_id,
                record.name,
                record.url,
                record.file_type,
                record.file_size,
                record.folder_id,
                _serialize_datetime(record.created_at),
            ))
        return record

    def get_upload(self, upload_id: str) -> Optional[StoredFile]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM uploads WHERE id = ?", (upload_id,)
            ).fetchone()
            return self._row_to_record(row) if row else None

    def list_uploads(self, folder_id: Optional[str] = None) -> List[StoredFile]:
        """
        List stored files, newest first.

        Args:
            folder_id: Restrict to one folder when given
        """
        with self._get_connection() as conn:
            if folder_id is None:
                rows = conn.execute(
                    "SELECT * FROM uploads ORDER BY created_at DESC"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM uploads WHERE folder_id = ? ORDER BY created_at DESC",
                    (folder_id,),
                ).fetchall()
            return [self._row_to_record(row) for row in rows]

    def delete_upload(self, upload_id: str) -> bool:
        """
        Delete a file record.

        Returns:
            True if deleted, False if not found
        """
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM uploads WHERE id = ?", (upload_id,))
            return cursor.rowcount > 0

    def _row_to_record(self, row: sqlite3.Row) -> StoredFile:
        return StoredFile(
            id=row["id"],
            task_id=row["task_id"],
            name=row["name"],
            url=row["url"],
            file_type=row["file_type"],
            file_size=row["file_size"],
            folder_id=row["folder_id"],
            created_at=_deserialize_datetime(row["created_at"]),
        )


def record_completed_upload(store: FileMetadataStore, future: Future) -> Optional[StoredFile]:
    """
    Completion hook: persist metadata for a successfully transferred task.

    Meant for ``Future.add_done_callback``. Failed transfers are skipped.
    Persistence errors are logged; they never change the task's outcome.
    """
    snapshot: TaskSnapshot = future.result()
    if snapshot.status is not TaskStatus.COMPLETED or snapshot.result is None:
        return None
    try:
        return store.record_upload(
            name=snapshot.result.name or snapshot.filename,
            url=snapshot.result.url,
            file_type=snapshot.content_type,
            file_size=snapshot.result.size,
            folder_id=snapshot.folder_id,
            task_id=snapshot.id,
        )
    except sqlite3.Error:
        logger.exception(f"Failed to record metadata for upload task {snapshot.id}")
        return None
