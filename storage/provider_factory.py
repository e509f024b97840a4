"""
Factory for creating storage provider instances.

Simplifies provider selection and initialization.
"""

from typing import Optional

from shared.config import VaultConfig
from shared.errors import TransientNetwork
from shared.models import StorageProvider
from .storage_provider import BucketPolicy, S3StorageProvider
from .s3_provider import S3CompatibleProvider
from .local_provider import LocalStorageProvider


class StorageProviderFactory:
    """Factory for creating storage provider instances."""

    @staticmethod
    def create(provider_type: StorageProvider) -> S3StorageProvider:
        """
        Create a storage provider instance.

        Raises:
            ValueError: If provider type is not supported
        """
        if provider_type == StorageProvider.LOCAL:
            return LocalStorageProvider()

        if provider_type in (StorageProvider.CLOUDFLARE_R2, StorageProvider.BACKBLAZE_B2,
                             StorageProvider.AWS_S3, StorageProvider.GENERIC_S3):
            return S3CompatibleProvider(provider_type)

        raise ValueError(f"Unknown provider type: {provider_type}")

    @staticmethod
    def from_config(config: VaultConfig,
                    policy: Optional[BucketPolicy] = None) -> S3StorageProvider:
        """
        Create, authenticate and bind a provider to the configured bucket.

        The bucket policy uses the configured upload ceiling unless one is given.
        """
        storage = StorageProviderFactory.create(config.provider)
        if not storage.authenticate(config.credentials()):
            raise TransientNetwork(
                f"Failed to authenticate {StorageProviderFactory.get_provider_name(config.provider)}"
            )
        policy = policy or BucketPolicy(max_object_bytes=config.max_upload_bytes)
        storage.create_bucket(config.bucket, policy)
        return storage

    @staticmethod
    def get_provider_name(provider_type: StorageProvider) -> str:
        """Get human-readable provider name."""
        names = {
            StorageProvider.CLOUDFLARE_R2: "Cloudflare R2",
            StorageProvider.BACKBLAZE_B2: "Backblaze B2",
            StorageProvider.AWS_S3: "Amazon S3",
            StorageProvider.GENERIC_S3: "Generic S3-Compatible",
            StorageProvider.LOCAL: "Local Storage",
        }
        return names.get(provider_type, "Unknown")
