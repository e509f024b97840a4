import pytest

from library.quota import QuotaAccountant, format_bytes
from shared.constants import DEFAULT_QUOTA_BYTES, GIB, MIB
from shared.errors import Blocked, QuotaExceeded


@pytest.mark.parametrize("num_bytes, expected", [
    (0, "0 B"),
    (512, "512 B"),
    (1023, "1023 B"),
    (1024, "1.00 KB"),
    (1536, "1.50 KB"),
    (1048575, "1.00 MB"),
    (5 * MIB, "5.00 MB"),
    (GIB, "1.00 GB"),
    (1024 * GIB, "1.00 TB"),
])
def test_format_bytes(num_bytes, expected):
    assert format_bytes(num_bytes) == expected


def test_format_bytes_rejects_negative():
    with pytest.raises(ValueError):
        format_bytes(-1)


def test_usage_is_idempotent(quota, make_file):
    make_file("alice", "a.mp3", b"x" * 100)
    first = quota.compute_usage("alice")
    assert first == 100
    assert quota.compute_usage("alice") == first
    assert quota.compute_usage("nobody") == 0


def test_usage_recomputed_only_on_new_version(quota, make_file, bus):
    make_file("alice", "a.mp3", b"x" * 100)
    assert quota.compute_usage("alice") == 100

    # Committed without a signal: the cached figure stands
    make_file("alice", "b.mp3", b"x" * 50)
    assert quota.compute_usage("alice") == 100

    bus.publish("test")
    assert quota.compute_usage("alice") == 150


def test_usage_after_delete_reflects_ground_truth(quota, repository, make_file):
    keep = make_file("alice", "keep.mp3", b"x" * 70)
    gone = make_file("alice", "gone.mp3", b"x" * 30)
    assert quota.compute_usage("alice") == 100

    repository.delete_file("alice", gone.id)
    assert quota.compute_usage("alice") == keep.size


def test_quota_limit_prefers_profile_override(quota, repository):
    assert quota.quota_limit("alice") == DEFAULT_QUOTA_BYTES
    repository.ensure_profile("alice", "Alice", quota_bytes=1000)
    assert quota.quota_limit("alice") == 1000


def test_check_quota(quota, repository, make_file):
    repository.ensure_profile("alice", quota_bytes=300)
    make_file("alice", "a.mp3", b"x" * 200)

    quota.check_quota("alice", 100)
    with pytest.raises(QuotaExceeded) as exc_info:
        quota.check_quota("alice", 101)
    assert exc_info.value.required == 101
    assert exc_info.value.remaining == 100


def test_snapshot(quota, repository, make_file):
    repository.ensure_profile("alice", quota_bytes=400)
    make_file("alice", "a.mp3", b"x" * 100)

    snapshot = quota.snapshot("alice")
    assert snapshot.used_bytes == 100
    assert snapshot.limit_bytes == 400
    assert snapshot.remaining_bytes == 300
    assert snapshot.percentage == 25
    assert not snapshot.is_over_quota


def test_delete_account_blocked_while_files_remain(quota, repository, make_file):
    repository.ensure_profile("alice")
    for i in range(3):
        make_file("alice", f"track{i}.mp3")

    with pytest.raises(Blocked) as exc_info:
        quota.delete_account("alice")
    assert exc_info.value.count == 3
    assert "3 files" in str(exc_info.value)
    assert repository.get_profile("alice") is not None
    assert repository.count_files("alice") == 3


def test_delete_account_with_no_files(quota, repository):
    repository.ensure_profile("alice")
    repository.create_folder("alice", None, "empty")

    assert quota.delete_account("alice") is True
    assert repository.get_profile("alice") is None
    assert repository.list("alice") == []


def test_delete_account_declined(quota, repository):
    repository.ensure_profile("alice")
    assert quota.delete_account("alice", confirm=lambda message: False) is False
    assert repository.get_profile("alice") is not None


def test_close_unsubscribes(repository, bus):
    accountant = QuotaAccountant(repository, events=bus)
    assert bus.subscriber_count == 1
    accountant.close()
    assert bus.subscriber_count == 0
