"""
Versioned "storage changed" signal.

The bus carries nothing but a monotonically increasing version. Consumers
react to a new version by re-reading ground truth from the repository, so
they can never apply a stale partial delta.
"""

import logging
import threading
from typing import Callable, List

logger = logging.getLogger(__name__)

Subscriber = Callable[[int], None]


class StorageEventBus:
    """Single-producer, multi-consumer version counter."""

    def __init__(self):
        self._version = 0
        self._lock = threading.Lock()
        self._subscribers: List[Subscriber] = []

    @property
    def version(self) -> int:
        with self._lock:
            return self._version

    def publish(self, reason: str = "") -> int:
        """
        Bump the version once and notify subscribers.

        Call exactly once per logical user action.

        Returns:
            The new version
        """
        with self._lock:
            self._version += 1
            version = self._version
            subscribers = list(self._subscribers)

        logger.debug(f"Storage version {version} ({reason or 'unspecified'})")
        for callback in subscribers:
            try:
                callback(version)
            except Exception as e:
                logger.error(f"Error in storage change subscriber {callback!r}: {e}")
        return version

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Register a callback receiving each new version.

        Returns:
            A callable that removes the subscription
        """
        with self._lock:
            if callback not in self._subscribers:
                self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)


# Process-wide channel; components accept an injected bus for isolation.
storage_events = StorageEventBus()
