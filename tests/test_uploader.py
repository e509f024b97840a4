import io
import logging
import sqlite3
import threading

import pytest

from library.duration import DurationProbe
from library.uploader import BatchProgress, UploadBatch, UploadPipeline, guess_mime_type
from shared.errors import Forbidden, NotFound, QuotaExceeded, ValidationError
from shared.models import StoredFile, UploadBlob


def blob(name, data=b"x" * 100, size=None, mime_type=None):
    return UploadBlob(name=name, stream=io.BytesIO(data),
                      size=len(data) if size is None else size, mime_type=mime_type)


@pytest.fixture
def probe(repository):
    duration_probe = DurationProbe(repository, timeout=2, decoder=lambda reference: 187.6)
    yield duration_probe
    duration_probe.shutdown()


@pytest.fixture
def pipeline(repository, storage, issuer, probe, quota, bus):
    return UploadPipeline(repository, storage, issuer=issuer, duration_probe=probe,
                          quota=quota, events=bus)


def test_guess_mime_type():
    assert guess_mime_type("song.mp3") == "audio/mpeg"
    assert guess_mime_type("song.FLAC") == "audio/flac"
    assert guess_mime_type("sheet.pdf") == "application/pdf"
    assert guess_mime_type("noextension") is None


def test_batch_with_one_invalid_file(pipeline, quota, bus):
    signals = []
    bus.subscribe(signals.append)

    result = pipeline.upload("alice", [
        blob("beat.mp3", b"a" * 300),
        blob("virus.exe", b"b" * 50),
        blob("cover.png", b"c" * 200),
    ])

    assert sorted(f.name for f in result.committed) == ["beat.mp3", "cover.png"]
    assert [r.name for r in result.rejected] == ["virus.exe"]
    assert isinstance(result.rejected[0].error, ValidationError)
    assert result.failed == [] and result.cancelled == []
    assert signals == [1]
    assert result.version == 1
    assert quota.compute_usage("alice") == 500


def test_committed_files_are_listed_and_stored(pipeline, repository, storage):
    folder = repository.create_folder("alice", None, "Session")
    result = pipeline.upload("alice", [blob("take.mp3")], folder_id=folder.id)

    stored = result.committed[0]
    assert storage.file_exists(stored.storage_path)
    assert stored.storage_path.startswith("alice/")
    assert [i.name for i in repository.list("alice", folder.id)] == ["take.mp3"]


def test_oversized_file_rejected_before_storage(pipeline, storage, bus):
    policy_limit = pipeline.policy.max_object_bytes
    result = pipeline.upload("alice", [
        UploadBlob("huge.wav", io.BytesIO(b""), policy_limit + 1, "audio/x-wav"),
    ])
    assert result.committed == []
    assert len(result.rejected) == 1
    assert storage.list_files() == []
    assert bus.version == 0


def test_batch_quota_is_cumulative(pipeline, repository, bus):
    repository.ensure_profile("alice", quota_bytes=250)
    result = pipeline.upload("alice", [
        blob("one.mp3", b"x" * 100),
        blob("two.mp3", b"x" * 100),
        blob("three.mp3", b"x" * 100),
    ])

    assert len(result.committed) == 2
    assert [r.name for r in result.rejected] == ["three.mp3"]
    assert isinstance(result.rejected[0].error, QuotaExceeded)


def test_nothing_committed_means_no_signal(pipeline, bus):
    result = pipeline.upload("alice", [blob("notes.exe"), blob("", b"x")])
    assert result.committed == []
    assert len(result.rejected) == 2
    assert result.version is None
    assert bus.version == 0


def test_target_folder_must_be_owned(pipeline, repository):
    folder = repository.create_folder("bob", None, "Private")
    with pytest.raises(Forbidden):
        pipeline.upload("alice", [blob("a.mp3")], folder_id=folder.id)
    with pytest.raises(NotFound):
        pipeline.upload("alice", [blob("a.mp3")], folder_id="missing")


def test_failed_transfer_is_rolled_back(pipeline, repository, storage, bus):
    # Declared size larger than the stream: the transfer comes up short
    short = blob("short.mp3", b"x" * 10, size=100)
    result = pipeline.upload("alice", [short, blob("fine.mp3")])

    assert [f.name for f in result.committed] == ["fine.mp3"]
    assert [f.name for f in result.failed] == ["short.mp3"]
    assert repository.count_files("alice") == 1
    assert len(storage.list_files("alice")) == 1
    assert bus.version == 1


def test_cancelled_batch_commits_nothing(pipeline, repository, storage, bus):
    batch = UploadBatch()
    batch.cancel()
    result = pipeline.upload("alice", [blob("a.mp3"), blob("b.mp3")], batch=batch)

    assert result.committed == []
    assert sorted(result.cancelled) == ["a.mp3", "b.mp3"]
    assert repository.count_files("alice") == 0
    assert storage.list_files() == []
    assert bus.version == 0


def test_progress_reporting(pipeline):
    file_updates = []
    batch_updates = []
    lock = threading.Lock()

    def on_file(name, pct):
        with lock:
            file_updates.append((name, pct))

    def on_batch(pct):
        with lock:
            batch_updates.append(pct)

    pipeline.upload("alice", [blob("a.mp3", b"x" * 3000), blob("b.mp3", b"")],
                    on_file_progress=on_file, on_batch_progress=on_batch)

    assert all(0 <= pct <= 100 for _, pct in file_updates)
    assert {name for name, _ in file_updates} == {"a.mp3", "b.mp3"}
    assert all(0 <= pct <= 100 for pct in batch_updates)
    assert batch_updates[-1] == 100


def test_batch_progress_is_byte_weighted():
    tracker = BatchProgress()
    small = StoredFile(id="s", name="s.mp3", size=100, mime_type="audio/mpeg",
                       owner_id="alice", storage_path="alice/s.mp3")
    large = StoredFile(id="l", name="l.mp3", size=300, mime_type="audio/mpeg",
                       owner_id="alice", storage_path="alice/l.mp3")
    tracker.start([small, large])

    tracker.update("s", 100)
    assert tracker.overall() == pytest.approx(25.0)
    tracker.update("l", 50)
    assert tracker.overall() == pytest.approx(62.5)

    tracker.drop("l")
    assert tracker.overall() == pytest.approx(100.0)


def test_batch_progress_equal_weights_for_empty_files():
    tracker = BatchProgress()
    files = [StoredFile(id=str(i), name=f"{i}.mp3", size=0, mime_type="audio/mpeg",
                        owner_id="alice", storage_path=f"alice/{i}.mp3") for i in range(2)]
    tracker.start(files)
    tracker.update("0", 100)
    assert tracker.overall() == pytest.approx(50.0)


def test_audio_upload_links_track_and_recovers_duration(pipeline, repository):
    result = pipeline.upload("alice", [blob("Night Drive.mp3"), blob("cover.png")])

    assert len(result.duration_jobs) == 1
    job = result.duration_jobs[0]
    assert job.result(timeout=5) == 187

    audio = next(f for f in result.committed if f.is_audio)
    track = repository.get_track_for_file(audio.id)
    assert track.title == "Night Drive"
    assert track.duration_seconds == 187
    assert repository.get_file(audio.id).duration_seconds == 187


def test_upload_does_not_wait_for_duration(repository, storage, issuer, quota, bus):
    release = threading.Event()

    def slow_decoder(reference):
        release.wait(5)
        return 60.0

    probe = DurationProbe(repository, timeout=5, decoder=slow_decoder)
    pipeline = UploadPipeline(repository, storage, issuer=issuer, duration_probe=probe,
                              quota=quota, events=bus)
    try:
        result = pipeline.upload("alice", [blob("long.mp3")])
        stored = result.committed[0]
        assert repository.get_file(stored.id).duration_seconds is None
        assert not result.duration_jobs[0].done()
    finally:
        release.set()
        probe.shutdown(wait=True)


def test_closed_duration_pool_does_not_fail_the_upload(pipeline, repository, bus, caplog):
    pipeline.duration_probe.shutdown()
    with caplog.at_level(logging.WARNING):
        result = pipeline.upload("alice", [blob("after-close.mp3")])

    assert [f.name for f in result.committed] == ["after-close.mp3"]
    assert result.duration_jobs == []
    assert repository.get_track_for_file(result.committed[0].id) is not None
    assert bus.version == 1
    assert "not scheduled" in caplog.text


def test_signing_database_error_does_not_fail_the_upload(pipeline, issuer, monkeypatch):
    def locked(actor_id, path, ttl_seconds=None):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(issuer, "issue", locked)
    result = pipeline.upload("alice", [blob("locked.mp3")])

    assert [f.name for f in result.committed] == ["locked.mp3"]
    assert result.duration_jobs == []


def test_reservation_failure_discards_earlier_placeholders(pipeline, repository, storage, bus,
                                                           monkeypatch):
    real_reserve = repository.reserve_placeholder
    calls = []

    def reserve_twice(*args, **kwargs):
        calls.append(args)
        if len(calls) == 2:
            raise sqlite3.OperationalError("disk I/O error")
        return real_reserve(*args, **kwargs)

    monkeypatch.setattr(repository, "reserve_placeholder", reserve_twice)

    with pytest.raises(sqlite3.OperationalError):
        pipeline.upload("alice", [blob("a.mp3"), blob("b.mp3"), blob("c.mp3")])

    assert repository.count_files("alice") == 0
    assert storage.list_files() == []
    assert bus.version == 0
