"""
Time-limited authorized links for playback and download.

Every call asks the object store for a fresh URL. Nothing is cached, so
each access re-validates current ownership or grants.
"""

import logging
from typing import Optional

from shared.constants import DEFAULT_SIGNED_URL_TTL, MAX_SIGNED_URL_TTL
from shared.errors import Forbidden, NotFound, TransientNetwork, ValidationError
from .storage_provider import S3StorageProvider

logger = logging.getLogger(__name__)


class SignedURLIssuer:
    """Checks permission on a storage path, then mints a signed URL."""

    def __init__(self, repository, storage: S3StorageProvider,
                 default_ttl: int = DEFAULT_SIGNED_URL_TTL):
        self.repository = repository
        self.storage = storage
        self.default_ttl = default_ttl

    def issue(self, actor_id: str, path: str, ttl_seconds: Optional[int] = None) -> str:
        """
        Request a new signed URL for a storage path.

        Args:
            actor_id: User asking for access
            path: Storage path of a committed file
            ttl_seconds: Lifetime, defaults to one hour

        Raises:
            ValidationError: ttl out of range
            NotFound: no committed file at path
            Forbidden: actor neither owns the file nor holds a read grant
            TransientNetwork: the store could not be reached
        """
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        if not 0 < ttl <= MAX_SIGNED_URL_TTL:
            raise ValidationError(f"ttl_seconds must be in (0, {MAX_SIGNED_URL_TTL}], got {ttl}")

        stored = self.repository.get_file_by_path(path)
        if stored is None:
            raise NotFound(f"No file at {path}")

        if stored.owner_id != actor_id and not self.repository.has_read_grant(stored.id, actor_id):
            logger.warning(f"User {actor_id} denied access to {path}")
            raise Forbidden(f"User {actor_id} may not read {path}")

        try:
            url = self.storage.create_signed_url(path, ttl)
        except (Forbidden, NotFound):
            raise
        except TransientNetwork as e:
            logger.error(f"Signing {path} failed: {e}")
            raise
        if not url:
            raise TransientNetwork(f"Storage returned no URL for {path}")

        logger.debug(f"Issued {ttl}s URL for {path} to {actor_id}")
        return url
