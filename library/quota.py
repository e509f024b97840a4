"""
Storage accounting per owner.

Usage is always re-derived from the repository. The cached figure is
dropped whenever the storage event bus moves to a new version, and is
never adjusted incrementally.
"""

import logging
import threading
from typing import Callable, Dict, Optional, Tuple

from shared.constants import DEFAULT_QUOTA_BYTES
from shared.errors import Blocked, QuotaExceeded
from shared.events import StorageEventBus, storage_events
from shared.models import StorageUsageSnapshot

logger = logging.getLogger(__name__)

BYTE_UNITS = ['B', 'KB', 'MB', 'GB', 'TB']


def format_bytes(num_bytes: int) -> str:
    """
    Human readable size, base 1024.

    Uses the largest unit whose scaled value is at least 1, two decimals
    (plain bytes stay integral): 0 -> "0 B", 1536 -> "1.50 KB".
    """
    if num_bytes < 0:
        raise ValueError(f"Negative size: {num_bytes}")
    if num_bytes < 1024:
        return f"{int(num_bytes)} B"

    value = float(num_bytes)
    unit = 0
    while value >= 1024 and unit < len(BYTE_UNITS) - 1:
        value /= 1024
        unit += 1
    # 1048575 bytes would otherwise print as "1024.00 KB"
    if round(value, 2) >= 1024 and unit < len(BYTE_UNITS) - 1:
        value /= 1024
        unit += 1
    return f"{value:.2f} {BYTE_UNITS[unit]}"


class QuotaAccountant:
    """Computes, caches and enforces per-owner storage usage."""

    def __init__(self, repository, events: StorageEventBus = storage_events,
                 default_quota_bytes: int = DEFAULT_QUOTA_BYTES):
        self.repository = repository
        self.events = events
        self.default_quota_bytes = default_quota_bytes
        self._lock = threading.Lock()
        # owner_id -> (version computed at, used bytes)
        self._cache: Dict[str, Tuple[int, int]] = {}
        self._unsubscribe = events.subscribe(self._on_storage_changed)

    def _on_storage_changed(self, version: int) -> None:
        with self._lock:
            self._cache.clear()
        logger.debug(f"Usage cache invalidated at version {version}")

    def close(self) -> None:
        """Stop listening to the event bus."""
        self._unsubscribe()

    def compute_usage(self, owner_id: str) -> int:
        """Sum of an owner's committed file sizes, regardless of folders."""
        version = self.events.version
        with self._lock:
            cached = self._cache.get(owner_id)
            if cached is not None and cached[0] == version:
                return cached[1]

        used = self.repository.sum_sizes(owner_id)
        with self._lock:
            # A bump that landed mid-query leaves the entry stale; it is
            # recomputed on the next call because the version differs.
            self._cache[owner_id] = (version, used)
        return used

    def refresh(self, owner_id: Optional[str] = None) -> None:
        """Drop the cached figure for one owner, or for everyone."""
        with self._lock:
            if owner_id is None:
                self._cache.clear()
            else:
                self._cache.pop(owner_id, None)

    def quota_limit(self, owner_id: str) -> int:
        profile = self.repository.get_profile(owner_id)
        if profile is not None and profile.quota_bytes is not None:
            return profile.quota_bytes
        return self.default_quota_bytes

    def remaining_bytes(self, owner_id: str) -> int:
        return max(self.quota_limit(owner_id) - self.compute_usage(owner_id), 0)

    def is_over_quota(self, owner_id: str) -> bool:
        return self.compute_usage(owner_id) > self.quota_limit(owner_id)

    def snapshot(self, owner_id: str) -> StorageUsageSnapshot:
        version = self.events.version
        return StorageUsageSnapshot(
            owner_id=owner_id,
            used_bytes=self.compute_usage(owner_id),
            limit_bytes=self.quota_limit(owner_id),
            version=version,
        )

    def check_quota(self, owner_id: str, incoming_bytes: int) -> None:
        """
        Raises:
            QuotaExceeded: incoming_bytes do not fit in the remaining quota
        """
        remaining = self.remaining_bytes(owner_id)
        if incoming_bytes > remaining:
            raise QuotaExceeded(
                f"Upload needs {format_bytes(incoming_bytes)} but only "
                f"{format_bytes(remaining)} of storage is left",
                required=incoming_bytes,
                remaining=remaining,
            )

    def delete_account(self, owner_id: str,
                       confirm: Optional[Callable[[str], bool]] = None) -> bool:
        """
        Delete an account once it holds no files.

        The file count is read first; files are never removed as a side
        effect of deleting the profile.

        Raises:
            Blocked: the owner still has files (count attached)

        Returns:
            True if deleted, False if the confirmation was declined
        """
        count = self.repository.count_files(owner_id)
        if count > 0:
            raise Blocked(
                count,
                f"You must delete all your files before you can delete your profile. "
                f"You currently have {count} files."
            )

        if confirm is not None and not confirm(f"Delete profile {owner_id}? This cannot be undone."):
            logger.info(f"Profile deletion for {owner_id} declined")
            return False

        self.repository.delete_user_profile(owner_id)
        self.refresh(owner_id)
        logger.info(f"Deleted profile {owner_id}")
        return True
