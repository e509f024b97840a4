import itertools
import logging
import time

import pytest

from library.presence import ListeningPresenceTracker


@pytest.fixture
def track(repository):
    return repository.create_track("alice", None, "Late Night Loop")


@pytest.fixture
def tracker(repository):
    presence = ListeningPresenceTracker(repository, interval=0.05, ttl=90)
    yield presence
    presence.close()


def test_start_writes_single_row(tracker, repository, track):
    tracker.start(track.id, "bob")
    tracker.start(track.id, "bob")

    sessions = repository.get_listening_sessions(track_id=track.id)
    assert [(s.track_id, s.user_id) for s in sessions] == [(track.id, "bob")]
    assert tracker.current == (track.id, "bob")


def test_stop_deletes_row(tracker, repository, track):
    tracker.start(track.id, "bob")
    assert tracker.stop() is True
    assert repository.get_listening_sessions(track_id=track.id) == []
    assert tracker.current is None


def test_heartbeat_refreshes_row(repository, track):
    clock = itertools.count(1000).__next__
    presence = ListeningPresenceTracker(repository, interval=0.02, clock=clock)
    try:
        presence.start(track.id, "bob")
        first = repository.get_listening_sessions(track.id, "bob")[0].last_active_at
        time.sleep(0.2)
        later = repository.get_listening_sessions(track.id, "bob")[0].last_active_at
        assert later > first
    finally:
        presence.close()


def test_no_write_after_stop(tracker, repository, track):
    tracker.start(track.id, "bob")
    tracker.stop()
    time.sleep(0.2)
    assert repository.get_listening_sessions(track_id=track.id) == []


def test_rapid_start_stop_cycles_leave_nothing(tracker, repository, track):
    for _ in range(25):
        tracker.start(track.id, "bob")
        tracker.stop()
    time.sleep(0.1)
    assert repository.get_listening_sessions(track_id=track.id) == []


def test_track_change_moves_presence(tracker, repository, track):
    other = repository.create_track("alice", None, "Sunrise")
    tracker.start(track.id, "bob")
    tracker.start(other.id, "bob")

    sessions = repository.get_listening_sessions(user_id="bob")
    assert [s.track_id for s in sessions] == [other.id]


def test_pause_clears_presence(tracker, repository, track):
    tracker.start(track.id, "bob")
    tracker.pause()
    assert repository.get_listening_sessions(user_id="bob") == []


def test_unknown_track_is_suppressed(tracker, repository, caplog):
    with caplog.at_level(logging.DEBUG):
        tracker.start("deleted-track", "bob")
        time.sleep(0.1)
    assert repository.get_listening_sessions(user_id="bob") == []
    assert not [r for r in caplog.records if r.levelno >= logging.ERROR]


def test_stop_explicit_pair_clears_leftover_row(tracker, repository, track):
    repository.upsert_listening_session(track.id, "carol")
    assert tracker.stop(track.id, "carol") is True
    assert repository.get_listening_sessions(user_id="carol") == []


def test_upsert_never_moves_backwards(repository, track):
    repository.upsert_listening_session(track.id, "bob", at=500.0)
    repository.upsert_listening_session(track.id, "bob", at=100.0)
    assert repository.get_listening_sessions(track.id, "bob")[0].last_active_at == 500.0


def test_reap_removes_stale_rows(repository, track):
    presence = ListeningPresenceTracker(repository, ttl=90)
    repository.upsert_listening_session(track.id, "stale", at=1000.0)
    repository.upsert_listening_session(track.id, "fresh", at=1950.0)

    assert presence.reap(now=2000.0) == 1
    assert [s.user_id for s in repository.get_listening_sessions(track.id)] == ["fresh"]


def test_listeners_for_owner(tracker, repository, track):
    tracker.start(track.id, "bob")
    repository.upsert_listening_session(track.id, "carol")
    assert tracker.listeners_for("alice") == 2
    assert tracker.listeners_for("bob") == 0


def test_closed_tracker_refuses_start(repository, track):
    presence = ListeningPresenceTracker(repository)
    presence.close()
    with pytest.raises(RuntimeError):
        presence.start(track.id, "bob")
