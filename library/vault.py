"""
Wiring of the library components from one configuration.

Every limit in VaultConfig lands on the component that enforces it.
"""

import logging
from pathlib import Path
from typing import Optional

from shared.config import VaultConfig, load_config
from shared.database import DatabaseManager
from shared.events import StorageEventBus, storage_events
from storage.provider_factory import StorageProviderFactory
from storage.signed_urls import SignedURLIssuer
from storage.storage_provider import S3StorageProvider
from .duration import DurationProbe
from .presence import ListeningPresenceTracker
from .quota import QuotaAccountant
from .repository import ConfirmHook, FolderFileRepository
from .uploader import UploadPipeline

logger = logging.getLogger(__name__)


class Vault:
    """Storage, repository and accounting built from a VaultConfig."""

    def __init__(self, config: VaultConfig,
                 events: StorageEventBus = storage_events,
                 storage: Optional[S3StorageProvider] = None,
                 confirm: Optional[ConfirmHook] = None):
        self.config = config
        self.events = events
        self.storage = storage or StorageProviderFactory.from_config(config)
        self.db = DatabaseManager(config.db_path)
        self.repository = FolderFileRepository(self.db, events=events, storage=self.storage,
                                               confirm=confirm)
        self.quota = QuotaAccountant(self.repository, events=events,
                                     default_quota_bytes=config.default_quota_bytes)
        self.issuer = SignedURLIssuer(self.repository, self.storage,
                                      default_ttl=config.signed_url_ttl)
        self.duration_probe = DurationProbe(self.repository, timeout=config.duration_timeout,
                                            max_bytes=config.max_upload_bytes)
        self.uploader = UploadPipeline(
            self.repository, self.storage,
            issuer=self.issuer,
            duration_probe=self.duration_probe,
            quota=self.quota,
            events=events,
            policy=getattr(self.storage, 'policy', None),
            parallel_uploads=config.parallel_uploads,
        )
        logger.info(f"Vault ready on {StorageProviderFactory.get_provider_name(config.provider)} "
                    f"bucket {config.bucket}")

    @classmethod
    def from_config_file(cls, path: Optional[Path] = None, **kwargs) -> 'Vault':
        """Load config from disk and the environment, then build."""
        return cls(load_config(path), **kwargs)

    def presence_tracker(self) -> ListeningPresenceTracker:
        """A tracker for one listener, with the configured heartbeat cadence."""
        return ListeningPresenceTracker(self.repository,
                                        interval=self.config.heartbeat_interval,
                                        ttl=self.config.presence_ttl)

    def total_listeners(self, user_id: str) -> int:
        return self.repository.get_total_listeners_for_user(user_id, self.config.presence_ttl)

    def close(self) -> None:
        self.duration_probe.shutdown()
        self.quota.close()
