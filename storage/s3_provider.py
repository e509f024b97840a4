"""
S3-compatible storage provider implementation.

One boto3 client covers Cloudflare R2, Backblaze B2 (S3 API), AWS S3 and any
generic S3 endpoint; only the endpoint and region differ.
"""

import logging
import threading
from typing import Optional, Dict, Any, List, BinaryIO

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from shared.constants import (
    AWS_S3_ENDPOINT_TEMPLATE,
    BACKBLAZE_B2_ENDPOINT_TEMPLATE,
    CLOUDFLARE_R2_ENDPOINT_TEMPLATE,
    DEFAULT_NETWORK_TIMEOUT,
)
from shared.errors import Forbidden, NotFound, TransientNetwork, UploadCancelled
from shared.models import StorageProvider
from .storage_provider import BucketPolicy, ProgressCallback, S3StorageProvider, make_progress

logger = logging.getLogger(__name__)

ACCESS_DENIED_CODES = {'AccessDenied', 'Forbidden', '403', 'InvalidAccessKeyId',
                       'SignatureDoesNotMatch'}
NOT_FOUND_CODES = {'NoSuchKey', 'NoSuchBucket', 'NotFound', '404'}


def translate_client_error(e: Exception, action: str) -> Exception:
    """Map a botocore failure onto the domain error taxonomy."""
    if isinstance(e, ClientError):
        code = str(e.response.get('Error', {}).get('Code', ''))
        if code in ACCESS_DENIED_CODES:
            return Forbidden(f"{action} denied by storage: {code}")
        if code in NOT_FOUND_CODES:
            return NotFound(f"{action}: object not found")
    return TransientNetwork(f"{action} failed: {e}")


def resolve_endpoint(provider: StorageProvider, credentials: Dict[str, Any]) -> Optional[str]:
    """Endpoint URL for a provider, honouring an explicit endpoint."""
    if credentials.get('endpoint'):
        return credentials['endpoint']
    region = credentials.get('region') or 'us-east-1'
    if provider == StorageProvider.CLOUDFLARE_R2:
        return CLOUDFLARE_R2_ENDPOINT_TEMPLATE.format(account_id=credentials['account_id'])
    if provider == StorageProvider.BACKBLAZE_B2:
        return BACKBLAZE_B2_ENDPOINT_TEMPLATE.format(region=region)
    if provider == StorageProvider.AWS_S3:
        return AWS_S3_ENDPOINT_TEMPLATE.format(region=region)
    return None


class SizedStream:
    """
    Read-only view of a stream capped at its declared size.

    Bytes past the cap are never handed to the uploader; whether any were
    left over is recorded in `overflow`.
    """

    def __init__(self, stream: BinaryIO, limit: int):
        self._stream = stream
        self._limit = limit
        self.bytes_read = 0
        self.overflow = False

    def _peek_overflow(self) -> None:
        if not self.overflow and self._stream.read(1):
            self.overflow = True

    def read(self, amt: Optional[int] = -1) -> bytes:
        remaining = self._limit - self.bytes_read
        if remaining <= 0:
            self._peek_overflow()
            return b""
        if amt is None or amt < 0 or amt > remaining:
            amt = remaining
        data = self._stream.read(amt)
        self.bytes_read += len(data)
        return data

    def matches_declared_size(self) -> bool:
        if self.bytes_read >= self._limit:
            self._peek_overflow()
        return self.bytes_read == self._limit and not self.overflow


class S3CompatibleProvider(S3StorageProvider):
    """
    S3-compatible storage implementation using the boto3 S3 client.

    Signed URLs are SigV4 presigned GET requests generated locally.
    """

    def __init__(self, provider: StorageProvider = StorageProvider.GENERIC_S3):
        self.provider = provider
        self.s3_client = None
        self.bucket_name: Optional[str] = None
        self.endpoint_url: Optional[str] = None
        self.policy = BucketPolicy()

    def authenticate(self, credentials: Dict[str, Any]) -> bool:
        """
        Build the client and verify access.

        Args:
            credentials: Must contain:
                - access_key_id / secret_access_key
                - endpoint, or account_id (R2) / region (B2, S3)
                - bucket: Bucket name (optional, can be set later)
        """
        try:
            self.endpoint_url = resolve_endpoint(self.provider, credentials)
            self.bucket_name = credentials.get('bucket')
            region = 'auto' if self.provider == StorageProvider.CLOUDFLARE_R2 else credentials.get('region')

            self.s3_client = boto3.client(
                's3',
                endpoint_url=self.endpoint_url,
                aws_access_key_id=credentials['access_key_id'],
                aws_secret_access_key=credentials['secret_access_key'],
                region_name=region,
                config=Config(
                    signature_version='s3v4',
                    connect_timeout=DEFAULT_NETWORK_TIMEOUT,
                    read_timeout=DEFAULT_NETWORK_TIMEOUT,
                    retries={'max_attempts': 1},
                ),
            )

            if credentials.get('verify', True):
                if self.bucket_name:
                    self.s3_client.head_bucket(Bucket=self.bucket_name)
                else:
                    self.s3_client.list_buckets()
            return True

        except (ClientError, NoCredentialsError, BotoCoreError, KeyError) as e:
            logger.error(f"{self.provider.value} authentication failed: {e}")
            return False

    def create_bucket(self, bucket_name: str,
                      policy: Optional[BucketPolicy] = None) -> Dict[str, Any]:
        """Create bucket and adopt its policy."""
        try:
            self.s3_client.create_bucket(Bucket=bucket_name)
        except ClientError as e:
            code = e.response.get('Error', {}).get('Code')
            if code not in ('BucketAlreadyOwnedByYou', 'BucketAlreadyExists'):
                raise translate_client_error(e, "Create bucket")
        self.bucket_name = bucket_name
        self.policy = policy or BucketPolicy()

        if self.policy.public:
            # R2 and B2 expose public access only through their dashboards
            logger.warning(f"Bucket {bucket_name} must be made public from the provider dashboard")

        return {
            "bucket_name": bucket_name,
            "endpoint": self.endpoint_url,
            "url": f"{self.endpoint_url}/{bucket_name}",
            "policy": self.policy.to_dict(),
        }

    def bucket_exists(self, bucket_name: str) -> bool:
        try:
            self.s3_client.head_bucket(Bucket=bucket_name)
            return True
        except ClientError:
            return False

    def upload_stream(self, stream: BinaryIO, remote_key: str, size: int,
                      content_type: str,
                      progress_callback: Optional[ProgressCallback] = None,
                      cancel_event: Optional[threading.Event] = None) -> None:
        """
        Stream to S3 with progress; cancellation aborts from the callback.

        At most `size` bytes are read from the stream. A stream that is
        shorter or longer than declared leaves no object behind.
        """
        self.enforce_policy(remote_key, content_type, size)

        transferred = 0
        lock = threading.Lock()
        body = SizedStream(stream, size)

        # boto3 reports byte increments, possibly from several threads
        def progress(bytes_amount: int):
            nonlocal transferred
            if cancel_event is not None and cancel_event.is_set():
                raise UploadCancelled(f"Upload of {remote_key} cancelled")
            with lock:
                transferred += bytes_amount
                current = transferred
            if progress_callback:
                progress_callback(make_progress(current, size, remote_key))

        if cancel_event is not None and cancel_event.is_set():
            raise UploadCancelled(f"Upload of {remote_key} cancelled")

        try:
            self.s3_client.upload_fileobj(
                body, self.bucket_name, remote_key,
                ExtraArgs={'ContentType': content_type},
                Callback=progress,
            )
        except UploadCancelled:
            self.delete_file(remote_key)
            raise
        except (ClientError, BotoCoreError, OSError) as e:
            raise translate_client_error(e, f"Upload of {remote_key}")

        if not body.matches_declared_size():
            self.delete_file(remote_key)
            detail = "more than" if body.overflow else f"only {body.bytes_read} of"
            raise TransientNetwork(f"Upload of {remote_key} sent {detail} {size} declared bytes")

        if progress_callback and size == 0:
            progress_callback(make_progress(0, 0, remote_key))

    def delete_file(self, remote_key: str) -> bool:
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=remote_key)
            return True
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Delete of {remote_key} failed: {e}")
            return False

    def file_exists(self, remote_key: str) -> bool:
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=remote_key)
            return True
        except ClientError:
            return False

    def list_files(self, prefix: Optional[str] = None) -> List[Dict[str, Any]]:
        kwargs = {'Bucket': self.bucket_name}
        if prefix:
            kwargs['Prefix'] = prefix

        files = []
        try:
            paginator = self.s3_client.get_paginator('list_objects_v2')
            for page in paginator.paginate(**kwargs):
                for obj in page.get('Contents', []):
                    files.append({
                        'key': obj['Key'],
                        'size': obj['Size'],
                        'modified': obj['LastModified'].isoformat(),
                    })
        except (ClientError, BotoCoreError) as e:
            raise translate_client_error(e, "List objects")
        return files

    def create_signed_url(self, remote_key: str, expires_in: int = 3600) -> str:
        """Generate a presigned GET URL; a new signature on every call."""
        try:
            return self.s3_client.generate_presigned_url(
                'get_object',
                Params={'Bucket': self.bucket_name, 'Key': remote_key},
                ExpiresIn=expires_in,
            )
        except (ClientError, BotoCoreError) as e:
            raise translate_client_error(e, f"Signing {remote_key}")
