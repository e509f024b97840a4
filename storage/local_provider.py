"""
Local filesystem storage provider.
Implements the S3StorageProvider interface on a directory tree.
"""

import logging
import os
import secrets
import threading
import time
from pathlib import Path
from typing import Optional, Dict, Any, List, BinaryIO
from urllib.parse import parse_qs, urlencode, urlparse, unquote, quote

from shared.constants import UPLOAD_CHUNK_SIZE
from shared.crypto import sign, verify
from shared.errors import NotFound, TransientNetwork, UploadCancelled, ValidationError
from .storage_provider import BucketPolicy, ProgressCallback, S3StorageProvider, make_progress

logger = logging.getLogger(__name__)


class LocalStorageProvider(S3StorageProvider):
    """
    Storage provider that uses the local filesystem.
    Useful for self-hosting on a NAS or local drive, and for tests.

    Signed URLs are file:// URLs carrying an expiry, a random nonce and an
    HMAC signature, checked by verify_signed_url().
    """

    def __init__(self):
        self.base_path: Optional[Path] = None
        self.bucket_name: Optional[str] = None
        self.policy = BucketPolicy()
        self._secret = secrets.token_bytes(32)

    def authenticate(self, credentials: Dict[str, Any]) -> bool:
        """
        'Authenticate' by setting the base path.
        The 'base_path' or 'endpoint' entry is the root directory.
        """
        path = credentials.get('base_path') or credentials.get('endpoint')
        if not path:
            return False

        self.base_path = Path(path).expanduser().absolute()
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.bucket_name = credentials.get('bucket') or self.bucket_name
        if credentials.get('signing_secret'):
            self._secret = credentials['signing_secret'].encode()
        return True

    def create_bucket(self, bucket_name: str,
                      policy: Optional[BucketPolicy] = None) -> Dict[str, Any]:
        """Create a subdirectory as a bucket."""
        bucket_path = self.base_path / bucket_name
        bucket_path.mkdir(parents=True, exist_ok=True)
        self.bucket_name = bucket_name
        self.policy = policy or BucketPolicy()
        return {
            'bucket_name': bucket_name,
            'endpoint': str(bucket_path),
            'url': f"file://{bucket_path}",
            'policy': self.policy.to_dict(),
        }

    def bucket_exists(self, bucket_name: str) -> bool:
        return (self.base_path / bucket_name).exists()

    def _bucket_root(self) -> Path:
        if not self.bucket_name:
            raise ValueError("Bucket not set")
        return self.base_path / self.bucket_name

    def _get_path(self, remote_key: str) -> Path:
        """Get absolute local path for a remote key."""
        root = self._bucket_root().resolve()
        path = (root / remote_key).resolve()
        if root not in path.parents:
            raise ValidationError(f"Invalid object key: {remote_key}")
        return path

    def upload_stream(self, stream: BinaryIO, remote_key: str, size: int,
                      content_type: str,
                      progress_callback: Optional[ProgressCallback] = None,
                      cancel_event: Optional[threading.Event] = None) -> None:
        self.enforce_policy(remote_key, content_type, size)
        dest_path = self._get_path(remote_key)
        dest_path.parent.mkdir(parents=True, exist_ok=True)

        written = 0
        try:
            with open(dest_path, 'wb') as out:
                while True:
                    if cancel_event is not None and cancel_event.is_set():
                        raise UploadCancelled(f"Upload of {remote_key} cancelled")
                    chunk = stream.read(UPLOAD_CHUNK_SIZE)
                    if not chunk:
                        break
                    out.write(chunk)
                    written += len(chunk)
                    if progress_callback:
                        progress_callback(make_progress(written, size, remote_key))
            if written != size:
                raise TransientNetwork(
                    f"Upload of {remote_key} ended after {written} of {size} bytes"
                )
            if progress_callback and size == 0:
                progress_callback(make_progress(0, 0, remote_key))
        except (UploadCancelled, TransientNetwork):
            self._remove_partial(dest_path)
            raise
        except OSError as e:
            self._remove_partial(dest_path)
            raise TransientNetwork(f"Local upload of {remote_key} failed: {e}")

    @staticmethod
    def _remove_partial(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove partial object {path}: {e}")

    def delete_file(self, remote_key: str) -> bool:
        try:
            path = self._get_path(remote_key)
            if path.exists():
                os.remove(path)
            return True
        except OSError as e:
            logger.error(f"Local delete of {remote_key} failed: {e}")
            return False

    def file_exists(self, remote_key: str) -> bool:
        return self._get_path(remote_key).exists()

    def list_files(self, prefix: Optional[str] = None) -> List[Dict[str, Any]]:
        bucket_root = self._bucket_root()
        search_path = bucket_root / prefix if prefix else bucket_root
        if not search_path.exists():
            return []

        files = []
        for root, _, filenames in os.walk(search_path):
            for filename in filenames:
                full_path = Path(root) / filename
                stat = full_path.stat()
                files.append({
                    'key': full_path.relative_to(bucket_root).as_posix(),
                    'size': stat.st_size,
                    'modified': stat.st_mtime,
                })
        return files

    def create_signed_url(self, remote_key: str, expires_in: int = 3600) -> str:
        path = self._get_path(remote_key)
        if not path.exists():
            raise NotFound(f"No object at {remote_key}")

        expires = int(time.time()) + expires_in
        nonce = secrets.token_hex(8)
        signature = sign(f"{path}|{expires}|{nonce}", self._secret)
        query = urlencode({'expires': expires, 'nonce': nonce, 'signature': signature})
        return f"file://{quote(str(path))}?{query}"

    def verify_signed_url(self, url: str, now: Optional[float] = None) -> Optional[Path]:
        """
        Check a URL minted by create_signed_url().

        Returns:
            The object path when the signature holds and has not expired
        """
        parsed = urlparse(url)
        if parsed.scheme != 'file':
            return None
        params = {k: v[0] for k, v in parse_qs(parsed.query).items()}
        try:
            expires = int(params['expires'])
            nonce = params['nonce']
            signature = params['signature']
        except (KeyError, ValueError):
            return None

        path = Path(unquote(parsed.path))
        if not verify(f"{path}|{expires}|{nonce}", signature, self._secret):
            return None
        if (now if now is not None else time.time()) > expires:
            return None
        return path
