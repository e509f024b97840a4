"""Object storage providers and signed URL issuing."""

from .storage_provider import BucketPolicy, S3StorageProvider, UploadProgress
from .provider_factory import StorageProviderFactory
from .signed_urls import SignedURLIssuer

__all__ = ["BucketPolicy", "S3StorageProvider", "UploadProgress",
           "StorageProviderFactory", "SignedURLIssuer"]
