"""
Listening presence.

While a track plays, a heartbeat keeps one listening_sessions row fresh for
the (track, user) pair. Stopping cancels the heartbeat and deletes the row;
rows whose heartbeat died without a stop are reaped once older than the TTL.
"""

import logging
import threading
import time
from typing import Callable, Optional

from shared.constants import HEARTBEAT_INTERVAL_SEC, PRESENCE_TTL_SEC
from shared.errors import IntegrityConflict

logger = logging.getLogger(__name__)


class _Heartbeat:
    """One armed pair. The pair is fixed when armed and never re-read."""

    def __init__(self, track_id: str, user_id: str):
        self.track_id = track_id
        self.user_id = user_id
        self.stop_event = threading.Event()
        self.stopped = False
        self.thread: Optional[threading.Thread] = None

    @property
    def pair(self):
        return (self.track_id, self.user_id)


class ListeningPresenceTracker:
    """Heartbeat-driven presence for the track one client is playing."""

    def __init__(self, repository, interval: float = HEARTBEAT_INTERVAL_SEC,
                 ttl: float = PRESENCE_TTL_SEC, clock: Callable[[], float] = time.time):
        self.repository = repository
        self.interval = interval
        self.ttl = ttl
        self.clock = clock
        self._current: Optional[_Heartbeat] = None
        # Guards start/stop sequencing
        self._control_lock = threading.Lock()
        # Serializes row writes against row deletes
        self._write_lock = threading.Lock()
        self._closed = False

    @property
    def current(self):
        """The (track_id, user_id) pair being tracked, or None."""
        heartbeat = self._current
        return heartbeat.pair if heartbeat else None

    def start(self, track_id: str, user_id: str) -> None:
        """Mark user_id as listening to track_id and keep the mark fresh."""
        with self._control_lock:
            if self._closed:
                raise RuntimeError("Presence tracker is closed")

            previous = self._current
            if previous is not None and previous.pair == (track_id, user_id):
                self._write(previous)
                return
            if previous is not None:
                logger.debug(f"Track change {previous.track_id} -> {track_id} for {user_id}")
                self._halt(previous)
                self._current = None

            heartbeat = _Heartbeat(track_id, user_id)
            self._write(heartbeat)
            heartbeat.thread = threading.Thread(
                target=self._beat,
                args=(heartbeat,),
                name=f"presence-{track_id}",
                daemon=True,
            )
            self._current = heartbeat
            heartbeat.thread.start()

    def stop(self, track_id: Optional[str] = None, user_id: Optional[str] = None) -> bool:
        """
        Stop presence for the current pair, or for an explicit pair.

        Returns:
            True if a row was removed
        """
        with self._control_lock:
            heartbeat = self._current
            if heartbeat is not None and (track_id is None or heartbeat.track_id == track_id) \
                    and (user_id is None or heartbeat.user_id == user_id):
                self._current = None
                return self._halt(heartbeat)

        if track_id is not None and user_id is not None:
            # Not the armed pair; clear a leftover row
            return self._delete(track_id, user_id)
        return False

    def pause(self) -> bool:
        """Playback paused: the listener no longer counts."""
        return self.stop()

    def close(self) -> None:
        """Stop everything. Called when the client goes away."""
        self.stop()
        with self._control_lock:
            self._closed = True

    def _beat(self, heartbeat: _Heartbeat) -> None:
        while not heartbeat.stop_event.wait(self.interval):
            self._write(heartbeat)

    def _write(self, heartbeat: _Heartbeat) -> None:
        with self._write_lock:
            if heartbeat.stopped:
                return
            try:
                self.repository.upsert_listening_session(heartbeat.track_id, heartbeat.user_id,
                                                         self.clock())
            except IntegrityConflict as e:
                logger.debug(f"Ignoring presence write for {heartbeat.pair}: {e}")
            except Exception as e:
                logger.error(f"Presence heartbeat for {heartbeat.pair} failed: {e}")

    def _halt(self, heartbeat: _Heartbeat) -> bool:
        """Disarm a heartbeat, then delete its exact row."""
        with self._write_lock:
            heartbeat.stopped = True
        heartbeat.stop_event.set()
        if heartbeat.thread is not None and heartbeat.thread is not threading.current_thread():
            heartbeat.thread.join()
        return self._delete(heartbeat.track_id, heartbeat.user_id)

    def _delete(self, track_id: str, user_id: str) -> bool:
        with self._write_lock:
            try:
                return self.repository.delete_listening_session(track_id, user_id)
            except Exception as e:
                logger.error(f"Could not clear presence for ({track_id}, {user_id}): {e}")
                return False

    def reap(self, now: Optional[float] = None) -> int:
        """Delete rows idle for longer than the TTL. Returns how many went."""
        now = self.clock() if now is None else now
        removed = self.repository.reap_listening_sessions(now - self.ttl)
        if removed:
            logger.info(f"Reaped {removed} stale listening sessions")
        return removed

    def listeners_for(self, owner_id: str) -> int:
        """How many distinct users are listening to owner_id's tracks right now."""
        return self.repository.get_total_listeners_for_user(owner_id, self.ttl)
