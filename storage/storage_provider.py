"""
Abstract base class for object storage providers.

This module defines the interface every provider implements, allowing the
library to work with Cloudflare R2, Backblaze B2, AWS S3, any other
S3-compatible service, or a local directory.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Callable, Dict, Any, List, BinaryIO
import threading

from shared.constants import ALLOWED_EXTENSIONS, ALLOWED_MIME_TYPES, MAX_UPLOAD_BYTES
from shared.errors import ValidationError


@dataclass
class UploadProgress:
    """Progress information for file uploads."""
    bytes_uploaded: int
    total_bytes: int
    percentage: float
    file_name: str

    def __str__(self) -> str:
        return f"{self.file_name}: {self.percentage:.1f}% ({self.bytes_uploaded}/{self.total_bytes} bytes)"


ProgressCallback = Callable[[UploadProgress], None]


def make_progress(bytes_uploaded: int, total_bytes: int, file_name: str) -> UploadProgress:
    """Build an UploadProgress with the percentage clamped to [0, 100]."""
    if total_bytes > 0:
        percentage = min(bytes_uploaded / total_bytes * 100, 100.0)
    else:
        percentage = 100.0
    return UploadProgress(bytes_uploaded, total_bytes, percentage, file_name)


@dataclass
class BucketPolicy:
    """
    Creation-time restrictions of a bucket.

    The same policy instance validates uploads before any storage is touched,
    so the size ceiling exists in exactly one place.
    """
    allowed_mime_types: List[str] = field(default_factory=lambda: list(ALLOWED_MIME_TYPES))
    allowed_extensions: List[str] = field(default_factory=lambda: list(ALLOWED_EXTENSIONS))
    max_object_bytes: int = MAX_UPLOAD_BYTES
    public: bool = False

    def check(self, name: str, mime_type: Optional[str], size: int) -> None:
        """
        Validate one object against the policy.

        Raises:
            ValidationError: extension, MIME type or size not allowed
        """
        ext = Path(name).suffix.lower()
        if ext not in self.allowed_extensions:
            raise ValidationError(f"File type '{ext or name}' is not allowed")
        if not mime_type or mime_type not in self.allowed_mime_types:
            raise ValidationError(f"MIME type '{mime_type}' is not allowed")
        if size < 0:
            raise ValidationError(f"Invalid size {size} for {name}")
        if size > self.max_object_bytes:
            raise ValidationError(
                f"{name} is {size} bytes, larger than the {self.max_object_bytes} byte limit"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed_mime_types": list(self.allowed_mime_types),
            "allowed_extensions": list(self.allowed_extensions),
            "max_object_bytes": self.max_object_bytes,
            "public": self.public,
        }


class S3StorageProvider(ABC):
    """
    Abstract base class for object storage providers.

    All providers must implement this interface to back the library.
    Transfer failures raise TransientNetwork, aborted transfers raise
    UploadCancelled.
    """

    policy: BucketPolicy = BucketPolicy()

    @abstractmethod
    def authenticate(self, credentials: Dict[str, Any]) -> bool:
        """
        Authenticate with the storage provider.

        Args:
            credentials: Dictionary containing authentication credentials
                        (access_key_id, secret_access_key, endpoint, etc.)

        Returns:
            True if authentication successful, False otherwise
        """
        pass

    @abstractmethod
    def create_bucket(self, bucket_name: str,
                      policy: Optional[BucketPolicy] = None) -> Dict[str, Any]:
        """
        Create a new storage bucket and adopt its policy.

        Args:
            bucket_name: Name for the new bucket
            policy: Allowed MIME types and per-object size ceiling

        Returns:
            Dictionary with bucket information (endpoint, url, etc.)
        """
        pass

    @abstractmethod
    def bucket_exists(self, bucket_name: str) -> bool:
        pass

    @abstractmethod
    def upload_stream(self, stream: BinaryIO, remote_key: str, size: int,
                      content_type: str,
                      progress_callback: Optional[ProgressCallback] = None,
                      cancel_event: Optional[threading.Event] = None) -> None:
        """
        Stream bytes to storage.

        Args:
            stream: Readable binary stream
            remote_key: Key (path) for the object in the bucket
            size: Expected number of bytes
            content_type: MIME type stored with the object
            progress_callback: Optional callback for upload progress
            cancel_event: When set, the transfer aborts with UploadCancelled

        Raises:
            UploadCancelled: cancel_event was set mid-transfer
            TransientNetwork: the transfer failed
        """
        pass

    @abstractmethod
    def delete_file(self, remote_key: str) -> bool:
        """
        Delete an object. Deleting a missing object succeeds.

        Returns:
            True if deletion successful, False otherwise
        """
        pass

    @abstractmethod
    def file_exists(self, remote_key: str) -> bool:
        pass

    @abstractmethod
    def list_files(self, prefix: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        List objects in the bucket.

        Returns:
            List of dictionaries with 'key', 'size' and 'modified'
        """
        pass

    @abstractmethod
    def create_signed_url(self, remote_key: str, expires_in: int = 3600) -> str:
        """
        Mint a fresh time-limited URL for an object.

        Args:
            remote_key: Key (path) of the object
            expires_in: Lifetime in seconds

        Raises:
            Forbidden: the store refused to sign for this key
            TransientNetwork: the store could not be reached
        """
        pass

    def get_bucket_size(self) -> int:
        """Total size of all objects in the bucket."""
        return sum(f['size'] for f in self.list_files())

    def enforce_policy(self, remote_key: str, content_type: str, size: int) -> None:
        """Reject objects the bucket was not created to hold."""
        self.policy.check(remote_key, content_type, size)
