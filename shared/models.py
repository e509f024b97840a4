"""
Data models for folders, files, tracks and presence rows.

This module defines the core records used throughout the platform for
representing a user's library and the figures derived from it.
"""

from dataclasses import dataclass, asdict, field
from typing import List, Dict, Optional, Any, BinaryIO
from enum import Enum
import dataclasses
import uuid
from datetime import datetime, timezone


def utcnow() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


class StorageProvider(Enum):
    """Supported object storage providers."""
    CLOUDFLARE_R2 = "r2"
    BACKBLAZE_B2 = "b2"
    AWS_S3 = "s3"
    GENERIC_S3 = "generic"
    LOCAL = "local"


class FileStatus(Enum):
    """Lifecycle state of a file row."""
    PENDING = "pending"  # placeholder reserved, transfer in flight
    READY = "ready"


class SortKey(Enum):
    """Columns a library listing can be ordered by."""
    NAME = "name"
    DATE = "date"
    SIZE = "size"


class SortDirection(Enum):
    ASC = "asc"
    DESC = "desc"


def _filter_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    field_names = {f.name for f in dataclasses.fields(cls)}
    return {k: v for k, v in data.items() if k in field_names}


@dataclass
class Folder:
    """
    A folder in a user's library.

    Attributes:
        id: Unique identifier
        name: Display name
        owner_id: Owning user
        parent_id: Parent folder, None for the root level
        created_at: ISO timestamp
    """
    id: str
    name: str
    owner_id: str
    parent_id: Optional[str] = None
    created_at: str = field(default_factory=utcnow)

    @staticmethod
    def generate_id() -> str:
        return str(uuid.uuid4())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Folder':
        return cls(**_filter_fields(cls, data))


@dataclass
class StoredFile:
    """
    A file in a user's library.

    Attributes:
        id: Unique identifier
        name: Display name (original filename)
        size: Size in bytes
        mime_type: MIME type declared or guessed at upload
        owner_id: Owning user
        storage_path: Object key in the bucket
        folder_id: Containing folder, None for the root level
        created_at: ISO timestamp of the commit
        modified_at: ISO timestamp of the last rename/move
        duration_seconds: Audio duration, None while unknown
        status: pending (placeholder) or ready
    """
    id: str
    name: str
    size: int
    mime_type: str
    owner_id: str
    storage_path: str
    folder_id: Optional[str] = None
    created_at: str = field(default_factory=utcnow)
    modified_at: str = field(default_factory=utcnow)
    duration_seconds: Optional[int] = None
    status: FileStatus = FileStatus.READY

    @staticmethod
    def generate_id() -> str:
        return str(uuid.uuid4())

    @staticmethod
    def build_storage_path(owner_id: str, file_id: str, name: str) -> str:
        """Object key layout: <owner>/<file id>.<ext>"""
        ext = name.rsplit('.', 1)[-1].lower() if '.' in name else 'bin'
        return f"{owner_id}/{file_id}.{ext}"

    @property
    def is_audio(self) -> bool:
        return (self.mime_type or "").startswith("audio/")

    @property
    def file_type(self) -> str:
        """Coarse category used by the library browser."""
        mime = self.mime_type or ""
        if mime.startswith("audio/"):
            return "audio"
        if mime.startswith("image/"):
            return "image"
        if mime.startswith("video/"):
            return "video"
        if mime == "application/pdf":
            return "pdf"
        return "other"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StoredFile':
        filtered = _filter_fields(cls, data)
        if 'status' in filtered and not isinstance(filtered['status'], FileStatus):
            filtered['status'] = FileStatus(filtered['status'])
        return cls(**filtered)


@dataclass
class Track:
    """
    Legacy audio view of a file.

    Holds its own copy of the duration, patched alongside the file's.
    """
    id: str
    file_id: Optional[str]
    owner_id: str
    title: str
    duration_seconds: Optional[int] = None
    created_at: str = field(default_factory=utcnow)

    @staticmethod
    def generate_id() -> str:
        return str(uuid.uuid4())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Track':
        return cls(**_filter_fields(cls, data))


@dataclass
class ListeningSession:
    """Ephemeral "currently listening" row keyed by (track_id, user_id)."""
    track_id: str
    user_id: str
    last_active_at: float

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ListeningSession':
        return cls(**_filter_fields(cls, data))


@dataclass
class Profile:
    """Account record. quota_bytes overrides the default quota when set."""
    id: str
    display_name: str = ""
    quota_bytes: Optional[int] = None
    created_at: str = field(default_factory=utcnow)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Profile':
        return cls(**_filter_fields(cls, data))


@dataclass
class StorageUsageSnapshot:
    """
    Derived storage figure for one owner. Never persisted.

    Attributes:
        owner_id: Owner the figure belongs to
        used_bytes: Sum of committed file sizes
        limit_bytes: Quota ceiling
        version: Event bus version the figure was derived at
    """
    owner_id: str
    used_bytes: int
    limit_bytes: int
    version: int

    @property
    def remaining_bytes(self) -> int:
        return max(self.limit_bytes - self.used_bytes, 0)

    @property
    def is_over_quota(self) -> bool:
        return self.used_bytes > self.limit_bytes

    @property
    def percentage(self) -> int:
        """Rounded usage percentage, capped at 100."""
        if self.limit_bytes <= 0:
            return 100
        return min(round(self.used_bytes / self.limit_bytes * 100), 100)


@dataclass
class UploadBlob:
    """
    One entry of an upload batch.

    Attributes:
        name: Filename as chosen by the user
        stream: Readable binary stream with the content
        size: Declared size in bytes
        mime_type: MIME type, guessed from the name when omitted
    """
    name: str
    stream: BinaryIO
    size: int
    mime_type: Optional[str] = None


@dataclass
class UploadFailure:
    """Why a blob of a batch did not end up committed."""
    name: str
    reason: str
    error: Exception


@dataclass
class UploadBatchResult:
    """Outcome of one upload batch."""
    committed: List[StoredFile] = field(default_factory=list)
    rejected: List[UploadFailure] = field(default_factory=list)
    failed: List[UploadFailure] = field(default_factory=list)
    cancelled: List[str] = field(default_factory=list)
    duration_jobs: List[Any] = field(default_factory=list)
    version: Optional[int] = None

    @property
    def committed_bytes(self) -> int:
        return sum(f.size for f in self.committed)
