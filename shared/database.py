"""
SQLite Database Manager for Stemvault.
Owns the schema of the library records and hands out connections.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from shared.constants import DEFAULT_DATA_DIR, DEFAULT_DB_FILENAME


class DatabaseManager:
    def __init__(self, db_path: Optional[str] = None):
        if db_path is None:
            db_dir = Path(DEFAULT_DATA_DIR).expanduser()
            db_dir.mkdir(parents=True, exist_ok=True)
            self.db_path = db_dir / DEFAULT_DB_FILENAME
        else:
            self.db_path = Path(db_path).expanduser()
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        # Autocommit; multi-statement writes go through transaction()
        conn = sqlite3.connect(self.db_path, timeout=20, isolation_level=None,
                               check_same_thread=False)
        conn.row_factory = sqlite3.Row
        # Enable WAL mode for high concurrency
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._get_connection()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Connection inside BEGIN IMMEDIATE ... COMMIT, rolled back on error."""
        with self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _init_db(self):
        """Initialize the database schema."""
        with self.transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS profiles (
                    id TEXT PRIMARY KEY,
                    display_name TEXT NOT NULL DEFAULT '',
                    quota_bytes INTEGER,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS folders (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    owner_id TEXT NOT NULL,
                    parent_id TEXT REFERENCES folders(id),
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_folders_owner_parent ON folders(owner_id, parent_id)"
            )

            conn.execute("""
                CREATE TABLE IF NOT EXISTS files (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    size INTEGER NOT NULL CHECK (size >= 0),
                    mime_type TEXT NOT NULL,
                    owner_id TEXT NOT NULL,
                    storage_path TEXT NOT NULL UNIQUE,
                    folder_id TEXT REFERENCES folders(id),
                    created_at TEXT NOT NULL,
                    modified_at TEXT NOT NULL,
                    duration_seconds INTEGER,
                    status TEXT NOT NULL DEFAULT 'ready'
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_files_owner_folder ON files(owner_id, folder_id)"
            )

            conn.execute("""
                CREATE TABLE IF NOT EXISTS tracks (
                    id TEXT PRIMARY KEY,
                    file_id TEXT REFERENCES files(id) ON DELETE CASCADE,
                    owner_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    duration_seconds INTEGER,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS listening_sessions (
                    track_id TEXT NOT NULL REFERENCES tracks(id) ON DELETE CASCADE,
                    user_id TEXT NOT NULL,
                    last_active_at REAL NOT NULL,
                    PRIMARY KEY (track_id, user_id)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS read_grants (
                    file_id TEXT NOT NULL REFERENCES files(id) ON DELETE CASCADE,
                    grantee_id TEXT NOT NULL,
                    PRIMARY KEY (file_id, grantee_id)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS projects (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    title TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS bookmarks (
                    user_id TEXT NOT NULL,
                    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, project_id)
                )
            """)

            # Schema Migrations (Ensure columns exist)
            columns = [row[1] for row in conn.execute("PRAGMA table_info(files)").fetchall()]
            if 'duration_seconds' not in columns:
                conn.execute("ALTER TABLE files ADD COLUMN duration_seconds INTEGER")
            if 'status' not in columns:
                conn.execute("ALTER TABLE files ADD COLUMN status TEXT NOT NULL DEFAULT 'ready'")

    def clear_all(self):
        """Wipe all data from the database."""
        with self.transaction() as conn:
            for table in ("listening_sessions", "bookmarks", "read_grants", "tracks",
                          "files", "folders", "projects", "profiles"):
                conn.execute(f"DELETE FROM {table}")
