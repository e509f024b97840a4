"""
Folder and file repository.

The only component that touches persistent records. Every mutation checks
ownership, and every destructive mutation that changes stored bytes bumps
the storage event bus exactly once.
"""

import logging
import sqlite3
import time
import uuid
from typing import Callable, Dict, List, Optional, Any, Union

from shared.constants import MAX_NAME_LENGTH, PRESENCE_TTL_SEC
from shared.database import DatabaseManager
from shared.errors import (
    Blocked,
    Forbidden,
    IntegrityConflict,
    NotFound,
    TransientNetwork,
    ValidationError,
)
from shared.events import StorageEventBus, storage_events
from shared.models import (
    FileStatus,
    Folder,
    ListeningSession,
    Profile,
    SortDirection,
    SortKey,
    StoredFile,
    Track,
    utcnow,
)
from storage.storage_provider import S3StorageProvider

logger = logging.getLogger(__name__)

LibraryItem = Union[Folder, StoredFile]
ConfirmHook = Callable[[str], bool]


def validate_name(name: str) -> str:
    """
    Normalize and check a folder or file name.

    Raises:
        ValidationError: empty, too long, path separators, or dot names
    """
    if not isinstance(name, str):
        raise ValidationError("Name must be a string")
    cleaned = name.strip()
    if not cleaned:
        raise ValidationError("Name cannot be empty")
    if len(cleaned) > MAX_NAME_LENGTH:
        raise ValidationError(f"Name longer than {MAX_NAME_LENGTH} characters")
    if '/' in cleaned or '\\' in cleaned:
        raise ValidationError("Name cannot contain path separators")
    if cleaned in ('.', '..'):
        raise ValidationError(f"'{cleaned}' is not a valid name")
    return cleaned


class FolderFileRepository:
    """CRUD over folders and files, plus the store's named procedures."""

    def __init__(self, db: DatabaseManager,
                 events: StorageEventBus = storage_events,
                 storage: Optional[S3StorageProvider] = None,
                 confirm: Optional[ConfirmHook] = None,
                 clock: Callable[[], float] = time.time):
        self.db = db
        self.events = events
        self.storage = storage
        self.confirm = confirm
        self.clock = clock

    # ------------------------------------------------------------------
    # Row mapping

    @staticmethod
    def _row_to_folder(row: sqlite3.Row) -> Folder:
        return Folder.from_dict(dict(row))

    @staticmethod
    def _row_to_file(row: sqlite3.Row) -> StoredFile:
        return StoredFile.from_dict(dict(row))

    @staticmethod
    def _row_to_track(row: sqlite3.Row) -> Track:
        return Track.from_dict(dict(row))

    def _confirmed(self, message: str) -> bool:
        if self.confirm is None:
            return True
        if self.confirm(message):
            return True
        logger.info(f"Declined: {message}")
        return False

    # ------------------------------------------------------------------
    # Lookups

    def get_folder(self, folder_id: str) -> Optional[Folder]:
        with self.db.connection() as conn:
            row = conn.execute("SELECT * FROM folders WHERE id = ?", (folder_id,)).fetchone()
            return self._row_to_folder(row) if row else None

    def get_file(self, file_id: str) -> Optional[StoredFile]:
        """Fetch a file in any state, placeholders included."""
        with self.db.connection() as conn:
            row = conn.execute("SELECT * FROM files WHERE id = ?", (file_id,)).fetchone()
            return self._row_to_file(row) if row else None

    def get_file_by_path(self, storage_path: str) -> Optional[StoredFile]:
        """Committed file stored at a path, if any."""
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM files WHERE storage_path = ? AND status = ?",
                (storage_path, FileStatus.READY.value)
            ).fetchone()
            return self._row_to_file(row) if row else None

    def _require_folder(self, owner_id: str, folder_id: str) -> Folder:
        folder = self.get_folder(folder_id)
        if folder is None:
            raise NotFound(f"Folder {folder_id} not found")
        if folder.owner_id != owner_id:
            raise Forbidden(f"Folder {folder_id} belongs to another user")
        return folder

    def _require_file(self, owner_id: str, file_id: str) -> StoredFile:
        stored = self.get_file(file_id)
        if stored is None or stored.status != FileStatus.READY:
            raise NotFound(f"File {file_id} not found")
        if stored.owner_id != owner_id:
            raise Forbidden(f"File {file_id} belongs to another user")
        return stored

    def require_target_folder(self, owner_id: str, folder_id: Optional[str]) -> None:
        """Root is always a valid target; any other folder must be owned."""
        if folder_id is not None:
            self._require_folder(owner_id, folder_id)

    # ------------------------------------------------------------------
    # Listing

    def list(self, owner_id: str, folder_id: Optional[str] = None,
             sort_key: Union[str, SortKey] = SortKey.NAME,
             direction: Union[str, SortDirection] = SortDirection.ASC) -> List[LibraryItem]:
        """
        List the folders and committed files directly inside a folder.

        Folders come first, then files; both ordered by the sort key. Folders
        have no size, so a size ordering keeps them by name.

        Returns:
            Ordered list, empty when the owner has nothing there
        """
        try:
            key = SortKey(sort_key)
            order = SortDirection(direction)
        except ValueError as e:
            raise ValidationError(str(e))

        self.require_target_folder(owner_id, folder_id)

        with self.db.connection() as conn:
            if folder_id is None:
                folder_rows = conn.execute(
                    "SELECT * FROM folders WHERE owner_id = ? AND parent_id IS NULL", (owner_id,)
                ).fetchall()
                file_rows = conn.execute(
                    "SELECT * FROM files WHERE owner_id = ? AND folder_id IS NULL AND status = ?",
                    (owner_id, FileStatus.READY.value)
                ).fetchall()
            else:
                folder_rows = conn.execute(
                    "SELECT * FROM folders WHERE owner_id = ? AND parent_id = ?", (owner_id, folder_id)
                ).fetchall()
                file_rows = conn.execute(
                    "SELECT * FROM files WHERE owner_id = ? AND folder_id = ? AND status = ?",
                    (owner_id, folder_id, FileStatus.READY.value)
                ).fetchall()

        folders = [self._row_to_folder(r) for r in folder_rows]
        files = [self._row_to_file(r) for r in file_rows]
        reverse = order == SortDirection.DESC

        if key == SortKey.DATE:
            folders.sort(key=lambda f: (f.created_at, f.name.lower()), reverse=reverse)
            files.sort(key=lambda f: (f.created_at, f.name.lower()), reverse=reverse)
        elif key == SortKey.SIZE:
            folders.sort(key=lambda f: f.name.lower(), reverse=reverse)
            files.sort(key=lambda f: (f.size, f.name.lower()), reverse=reverse)
        else:
            folders.sort(key=lambda f: f.name.lower(), reverse=reverse)
            files.sort(key=lambda f: f.name.lower(), reverse=reverse)

        return [*folders, *files]

    # ------------------------------------------------------------------
    # Folders

    def _check_sibling_name(self, conn: sqlite3.Connection, owner_id: str,
                            parent_id: Optional[str], name: str,
                            exclude_id: Optional[str] = None) -> None:
        if parent_id is None:
            rows = conn.execute(
                "SELECT id FROM folders WHERE owner_id = ? AND parent_id IS NULL AND lower(name) = lower(?)",
                (owner_id, name)
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT id FROM folders WHERE owner_id = ? AND parent_id = ? AND lower(name) = lower(?)",
                (owner_id, parent_id, name)
            ).fetchall()
        if any(r['id'] != exclude_id for r in rows):
            raise ValidationError(f"A folder named '{name}' already exists here")

    def create_folder(self, owner_id: str, parent_id: Optional[str], name: str) -> Folder:
        name = validate_name(name)
        self.require_target_folder(owner_id, parent_id)

        folder = Folder(id=Folder.generate_id(), name=name, owner_id=owner_id, parent_id=parent_id)
        with self.db.transaction() as conn:
            self._check_sibling_name(conn, owner_id, parent_id, name)
            conn.execute(
                "INSERT INTO folders (id, name, owner_id, parent_id, created_at) VALUES (?, ?, ?, ?, ?)",
                (folder.id, folder.name, folder.owner_id, folder.parent_id, folder.created_at)
            )
        logger.debug(f"Created folder {folder.id} '{name}' for {owner_id}")
        return folder

    def rename_folder(self, owner_id: str, folder_id: str, name: str) -> Folder:
        name = validate_name(name)
        folder = self._require_folder(owner_id, folder_id)
        with self.db.transaction() as conn:
            self._check_sibling_name(conn, owner_id, folder.parent_id, name, exclude_id=folder_id)
            conn.execute("UPDATE folders SET name = ? WHERE id = ?", (name, folder_id))
        folder.name = name
        return folder

    def _ancestors(self, folder_id: Optional[str]) -> List[str]:
        """Folder ids from folder_id up to the root."""
        chain: List[str] = []
        current = folder_id
        with self.db.connection() as conn:
            while current is not None:
                if current in chain:
                    raise IntegrityConflict(f"Folder cycle detected at {current}")
                chain.append(current)
                row = conn.execute("SELECT parent_id FROM folders WHERE id = ?", (current,)).fetchone()
                current = row['parent_id'] if row else None
        return chain

    def move_folder(self, owner_id: str, folder_id: str, new_parent_id: Optional[str]) -> Folder:
        """Reparent a folder. Moving a folder under itself or a descendant is rejected."""
        folder = self._require_folder(owner_id, folder_id)
        self.require_target_folder(owner_id, new_parent_id)
        if folder_id in self._ancestors(new_parent_id):
            raise ValidationError("Cannot move a folder into itself or one of its subfolders")

        with self.db.transaction() as conn:
            self._check_sibling_name(conn, owner_id, new_parent_id, folder.name, exclude_id=folder_id)
            conn.execute("UPDATE folders SET parent_id = ? WHERE id = ?", (new_parent_id, folder_id))
        folder.parent_id = new_parent_id
        return folder

    def _subtree_folder_ids(self, conn: sqlite3.Connection, root_id: str) -> List[str]:
        """Breadth-first folder ids of a subtree, root first."""
        ordered = [root_id]
        index = 0
        while index < len(ordered):
            rows = conn.execute("SELECT id FROM folders WHERE parent_id = ?", (ordered[index],)).fetchall()
            ordered.extend(r['id'] for r in rows)
            index += 1
        return ordered

    def delete_folder(self, owner_id: str, folder_id: str, cascade: bool = False) -> bool:
        """
        Delete a folder.

        A non-empty folder is refused with Blocked(count) unless cascade is
        set, in which case every nested file (object and row) and folder goes.

        Returns:
            True if deleted, False if the confirmation was declined
        """
        self._require_folder(owner_id, folder_id)

        with self.db.connection() as conn:
            children = conn.execute(
                "SELECT (SELECT COUNT(*) FROM folders WHERE parent_id = ?) "
                "+ (SELECT COUNT(*) FROM files WHERE folder_id = ?)",
                (folder_id, folder_id)
            ).fetchone()[0]
            if children and not cascade:
                raise Blocked(children, f"Folder contains {children} item(s); delete them first")
            folder_ids = self._subtree_folder_ids(conn, folder_id)
            placeholders = ','.join(['?'] * len(folder_ids))
            file_rows = conn.execute(
                f"SELECT * FROM files WHERE folder_id IN ({placeholders}) ORDER BY created_at", folder_ids
            ).fetchall()

        files = [self._row_to_file(r) for r in file_rows]
        if any(f.owner_id != owner_id for f in files):
            raise Forbidden("Folder contains files owned by another user")

        message = f"Delete folder {folder_id}"
        if files:
            message += f" and {len(files)} file(s)"
        if not self._confirmed(message):
            return False

        # Object and row go together, so a failure midway leaves no orphaned row
        removed = 0
        try:
            for stored in files:
                self._delete_object(stored)
                with self.db.transaction() as conn:
                    conn.execute("DELETE FROM files WHERE id = ?", (stored.id,))
                removed += 1
        except TransientNetwork:
            if removed:
                logger.warning(f"Folder {folder_id} delete stopped after {removed} of {len(files)} file(s)")
                self.events.publish(f"folder partially deleted: {folder_id}")
            raise

        with self.db.transaction() as conn:
            # Children before parents
            for fid in reversed(folder_ids):
                conn.execute("DELETE FROM folders WHERE id = ?", (fid,))

        logger.info(f"Deleted folder {folder_id} ({len(folder_ids)} folder(s), {len(files)} file(s))")
        self.events.publish(f"folder deleted: {folder_id}")
        return True

    # ------------------------------------------------------------------
    # Files

    def rename_file(self, owner_id: str, file_id: str, name: str) -> StoredFile:
        name = validate_name(name)
        stored = self._require_file(owner_id, file_id)
        now = utcnow()
        with self.db.transaction() as conn:
            conn.execute("UPDATE files SET name = ?, modified_at = ? WHERE id = ?", (name, now, file_id))
        stored.name = name
        stored.modified_at = now
        return stored

    def move_file(self, owner_id: str, file_id: str, folder_id: Optional[str]) -> StoredFile:
        stored = self._require_file(owner_id, file_id)
        self.require_target_folder(owner_id, folder_id)
        now = utcnow()
        with self.db.transaction() as conn:
            conn.execute("UPDATE files SET folder_id = ?, modified_at = ? WHERE id = ?",
                         (folder_id, now, file_id))
        stored.folder_id = folder_id
        stored.modified_at = now
        return stored

    def _delete_object(self, stored: StoredFile) -> None:
        if self.storage is None:
            return
        if not self.storage.delete_file(stored.storage_path):
            raise TransientNetwork(f"Could not delete stored object for {stored.name}")

    def delete_file(self, owner_id: str, file_id: str) -> bool:
        """
        Delete a file's object and row, then signal the storage change.

        Returns:
            True if deleted, False if the confirmation was declined
        """
        stored = self._require_file(owner_id, file_id)
        if not self._confirmed(f"Delete file {stored.name}"):
            return False

        self._delete_object(stored)
        with self.db.transaction() as conn:
            conn.execute("DELETE FROM files WHERE id = ?", (file_id,))

        logger.info(f"Deleted file {file_id} ({stored.size} bytes) for {owner_id}")
        self.events.publish(f"file deleted: {file_id}")
        return True

    # ------------------------------------------------------------------
    # Placeholders (upload pipeline)

    def reserve_placeholder(self, owner_id: str, name: str, size: int, mime_type: str,
                            folder_id: Optional[str] = None) -> StoredFile:
        """Insert a pending row before the transfer starts. Invisible to listings."""
        file_id = StoredFile.generate_id()
        stored = StoredFile(
            id=file_id,
            name=validate_name(name),
            size=size,
            mime_type=mime_type,
            owner_id=owner_id,
            storage_path=StoredFile.build_storage_path(owner_id, file_id, name),
            folder_id=folder_id,
            status=FileStatus.PENDING,
        )
        with self.db.transaction() as conn:
            conn.execute("""
                INSERT INTO files (
                    id, name, size, mime_type, owner_id, storage_path, folder_id,
                    created_at, modified_at, duration_seconds, status
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, ?)
            """, (
                stored.id, stored.name, stored.size, stored.mime_type, stored.owner_id,
                stored.storage_path, stored.folder_id, stored.created_at, stored.modified_at,
                stored.status.value
            ))
        return stored

    def commit_placeholder(self, file_id: str) -> StoredFile:
        now = utcnow()
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE files SET status = ?, created_at = ?, modified_at = ? WHERE id = ? AND status = ?",
                (FileStatus.READY.value, now, now, file_id, FileStatus.PENDING.value)
            )
            if cursor.rowcount == 0:
                raise NotFound(f"No placeholder {file_id} to commit")
        return self.get_file(file_id)

    def discard_placeholder(self, file_id: str) -> bool:
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM files WHERE id = ? AND status = ?", (file_id, FileStatus.PENDING.value)
            )
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Accounting

    def count_files(self, owner_id: str) -> int:
        """Every file row of an owner, placeholders included."""
        with self.db.connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM files WHERE owner_id = ?", (owner_id,)).fetchone()[0]

    def sum_sizes(self, owner_id: str) -> int:
        """Total bytes of an owner's committed files, across all folders."""
        with self.db.connection() as conn:
            result = conn.execute(
                "SELECT SUM(size) FROM files WHERE owner_id = ? AND status = ?",
                (owner_id, FileStatus.READY.value)
            ).fetchone()[0]
            return result if result else 0

    # ------------------------------------------------------------------
    # Profiles and grants

    def ensure_profile(self, owner_id: str, display_name: str = "",
                       quota_bytes: Optional[int] = None) -> Profile:
        profile = Profile(id=owner_id, display_name=display_name, quota_bytes=quota_bytes)
        with self.db.transaction() as conn:
            conn.execute("""
                INSERT INTO profiles (id, display_name, quota_bytes, created_at) VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    display_name = excluded.display_name,
                    quota_bytes = excluded.quota_bytes
            """, (profile.id, profile.display_name, profile.quota_bytes, profile.created_at))
        return self.get_profile(owner_id)

    def get_profile(self, owner_id: str) -> Optional[Profile]:
        with self.db.connection() as conn:
            row = conn.execute("SELECT * FROM profiles WHERE id = ?", (owner_id,)).fetchone()
            return Profile.from_dict(dict(row)) if row else None

    def grant_read(self, owner_id: str, file_id: str, grantee_id: str) -> None:
        self._require_file(owner_id, file_id)
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO read_grants (file_id, grantee_id) VALUES (?, ?)",
                (file_id, grantee_id)
            )

    def revoke_read(self, owner_id: str, file_id: str, grantee_id: str) -> bool:
        self._require_file(owner_id, file_id)
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM read_grants WHERE file_id = ? AND grantee_id = ?", (file_id, grantee_id)
            )
            return cursor.rowcount > 0

    def has_read_grant(self, file_id: str, user_id: str) -> bool:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM read_grants WHERE file_id = ? AND grantee_id = ?", (file_id, user_id)
            ).fetchone()
            return row is not None

    # ------------------------------------------------------------------
    # Tracks (legacy audio representation)

    def create_track(self, owner_id: str, file_id: Optional[str], title: str) -> Track:
        track = Track(id=Track.generate_id(), file_id=file_id, owner_id=owner_id, title=title)
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO tracks (id, file_id, owner_id, title, duration_seconds, created_at) "
                "VALUES (?, ?, ?, ?, NULL, ?)",
                (track.id, track.file_id, track.owner_id, track.title, track.created_at)
            )
        return track

    def get_track(self, track_id: str) -> Optional[Track]:
        with self.db.connection() as conn:
            row = conn.execute("SELECT * FROM tracks WHERE id = ?", (track_id,)).fetchone()
            return self._row_to_track(row) if row else None

    def get_track_for_file(self, file_id: str) -> Optional[Track]:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM tracks WHERE file_id = ? ORDER BY created_at LIMIT 1", (file_id,)
            ).fetchone()
            return self._row_to_track(row) if row else None

    # ------------------------------------------------------------------
    # Named procedures

    @staticmethod
    def _check_duration(seconds: int) -> None:
        if not isinstance(seconds, int) or isinstance(seconds, bool) or seconds < 0:
            raise ValidationError(f"Invalid duration {seconds!r}")

    def update_audio_duration(self, track_id: str, seconds: int) -> None:
        """Patch the legacy track duration."""
        self._check_duration(seconds)
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE tracks SET duration_seconds = ? WHERE id = ?", (seconds, track_id)
            )
            if cursor.rowcount == 0:
                raise NotFound(f"Track {track_id} not found")

    def update_file_duration_seconds(self, file_id: str, seconds: int) -> None:
        """Patch the file duration."""
        self._check_duration(seconds)
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE files SET duration_seconds = ? WHERE id = ?", (seconds, file_id)
            )
            if cursor.rowcount == 0:
                raise NotFound(f"File {file_id} not found")

    def create_project(self, owner_id: str, title: str) -> str:
        project_id = str(uuid.uuid4())
        with self.db.transaction() as conn:
            conn.execute("INSERT INTO projects (id, owner_id, title) VALUES (?, ?, ?)",
                         (project_id, owner_id, validate_name(title)))
        return project_id

    def toggle_bookmark(self, user_id: str, project_id: str) -> bool:
        """
        Flip a bookmark.

        Returns:
            True if the bookmark now exists, False if it was removed
        """
        try:
            with self.db.transaction() as conn:
                cursor = conn.execute(
                    "DELETE FROM bookmarks WHERE user_id = ? AND project_id = ?", (user_id, project_id)
                )
                if cursor.rowcount:
                    return False
                conn.execute(
                    "INSERT INTO bookmarks (user_id, project_id, created_at) VALUES (?, ?, ?)",
                    (user_id, project_id, utcnow())
                )
                return True
        except sqlite3.IntegrityError:
            raise NotFound(f"Project {project_id} not found")

    def search_all(self, term: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Substring search over files, folders, tracks and projects."""
        term = (term or "").strip()
        if not term:
            return []
        pattern = f"%{term}%"
        with self.db.connection() as conn:
            rows = conn.execute("""
                SELECT 'file' AS type, id, name AS title, owner_id FROM files
                    WHERE status = 'ready' AND name LIKE ?
                UNION ALL
                SELECT 'folder', id, name, owner_id FROM folders WHERE name LIKE ?
                UNION ALL
                SELECT 'track', id, title, owner_id FROM tracks WHERE title LIKE ?
                UNION ALL
                SELECT 'project', id, title, owner_id FROM projects WHERE title LIKE ?
                ORDER BY title
                LIMIT ?
            """, (pattern, pattern, pattern, pattern, limit)).fetchall()
        return [dict(r) for r in rows]

    def get_total_listeners_for_user(self, user_id: str,
                                     ttl_seconds: float = PRESENCE_TTL_SEC) -> int:
        """Distinct users currently listening to any track owned by user_id."""
        cutoff = self.clock() - ttl_seconds
        with self.db.connection() as conn:
            return conn.execute("""
                SELECT COUNT(DISTINCT s.user_id) FROM listening_sessions s
                JOIN tracks t ON t.id = s.track_id
                WHERE t.owner_id = ? AND s.last_active_at >= ?
            """, (user_id, cutoff)).fetchone()[0]

    def delete_user_profile(self, user_id: str) -> None:
        """Remove the account records of a user. Files are never touched here."""
        with self.db.transaction() as conn:
            conn.execute("DELETE FROM listening_sessions WHERE user_id = ?", (user_id,))
            conn.execute("DELETE FROM bookmarks WHERE user_id = ?", (user_id,))
            conn.execute("DELETE FROM read_grants WHERE grantee_id = ?", (user_id,))
            conn.execute("DELETE FROM projects WHERE owner_id = ?", (user_id,))
            # Callers guarantee the user has no files left
            conn.execute("DELETE FROM folders WHERE owner_id = ?", (user_id,))
            conn.execute("DELETE FROM profiles WHERE id = ?", (user_id,))

    # ------------------------------------------------------------------
    # Listening sessions

    def upsert_listening_session(self, track_id: str, user_id: str,
                                 at: Optional[float] = None) -> None:
        """
        Insert or refresh a presence row; last_active_at never moves backwards.

        Raises:
            IntegrityConflict: track_id is not a known track
        """
        at = self.clock() if at is None else at
        try:
            with self.db.transaction() as conn:
                conn.execute("""
                    INSERT INTO listening_sessions (track_id, user_id, last_active_at) VALUES (?, ?, ?)
                    ON CONFLICT(track_id, user_id) DO UPDATE SET
                        last_active_at = MAX(last_active_at, excluded.last_active_at)
                """, (track_id, user_id, at))
        except sqlite3.IntegrityError as e:
            raise IntegrityConflict(f"Listening session for unknown track {track_id}: {e}")

    def delete_listening_session(self, track_id: str, user_id: str) -> bool:
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM listening_sessions WHERE track_id = ? AND user_id = ?", (track_id, user_id)
            )
            return cursor.rowcount > 0

    def reap_listening_sessions(self, older_than: float) -> int:
        """Delete presence rows idle since before the given timestamp."""
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM listening_sessions WHERE last_active_at < ?", (older_than,)
            )
            return cursor.rowcount

    def get_listening_sessions(self, track_id: Optional[str] = None,
                               user_id: Optional[str] = None) -> List[ListeningSession]:
        query = "SELECT * FROM listening_sessions WHERE 1 = 1"
        params: List[Any] = []
        if track_id is not None:
            query += " AND track_id = ?"
            params.append(track_id)
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        with self.db.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [ListeningSession.from_dict(dict(r)) for r in rows]
