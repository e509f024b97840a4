import time

import pytest

from library.repository import FolderFileRepository, validate_name
from shared.errors import Blocked, Forbidden, NotFound, TransientNetwork, ValidationError
from shared.models import Folder, StoredFile


def test_validate_name_strips_and_rejects_bad_names():
    assert validate_name("  Stems ") == "Stems"
    for bad in ("", "   ", "a/b", "a\\b", "..", "x" * 256):
        with pytest.raises(ValidationError):
            validate_name(bad)


def test_list_puts_folders_first_and_sorts_by_name(repository, make_file):
    repository.create_folder("alice", None, "zeta")
    repository.create_folder("alice", None, "Alpha")
    make_file("alice", "b.mp3")
    make_file("alice", "A.mp3")

    items = repository.list("alice")
    assert [type(i) for i in items] == [Folder, Folder, StoredFile, StoredFile]
    assert [i.name for i in items] == ["Alpha", "zeta", "A.mp3", "b.mp3"]

    desc = repository.list("alice", direction="desc")
    assert [i.name for i in desc] == ["zeta", "Alpha", "b.mp3", "A.mp3"]


def test_list_by_size_keeps_folders_by_name(repository, make_file):
    repository.create_folder("alice", None, "b")
    repository.create_folder("alice", None, "a")
    make_file("alice", "big.mp3", b"x" * 300)
    make_file("alice", "small.mp3", b"x" * 10)

    names = [i.name for i in repository.list("alice", sort_key="size")]
    assert names == ["a", "b", "small.mp3", "big.mp3"]


def test_list_by_date_orders_by_creation(repository, make_file):
    # Names deliberately out of creation order
    for name in ("mid", "old"):
        repository.create_folder("alice", None, name)
        time.sleep(0.002)
    for name in ("b.mp3", "c.mp3", "a.mp3"):
        make_file("alice", name)
        time.sleep(0.002)

    asc = [i.name for i in repository.list("alice", sort_key="date")]
    assert asc == ["mid", "old", "b.mp3", "c.mp3", "a.mp3"]

    desc = [i.name for i in repository.list("alice", sort_key="date", direction="desc")]
    assert desc == ["old", "mid", "a.mp3", "c.mp3", "b.mp3"]


def test_list_by_size_descending(repository, make_file):
    repository.create_folder("alice", None, "a")
    repository.create_folder("alice", None, "b")
    make_file("alice", "small.mp3", b"x" * 10)
    make_file("alice", "big.mp3", b"x" * 300)
    make_file("alice", "medium.mp3", b"x" * 100)

    names = [i.name for i in repository.list("alice", sort_key="size", direction="desc")]
    assert names == ["b", "a", "big.mp3", "medium.mp3", "small.mp3"]


def test_list_rejects_unknown_sort_key(repository):
    with pytest.raises(ValidationError):
        repository.list("alice", sort_key="color")


def test_list_is_scoped_to_owner_and_folder(repository, make_file):
    folder = repository.create_folder("alice", None, "Beats")
    make_file("alice", "inside.mp3", folder_id=folder.id)
    make_file("bob", "other.mp3")

    assert [i.name for i in repository.list("alice")] == ["Beats"]
    assert [i.name for i in repository.list("alice", folder.id)] == ["inside.mp3"]
    with pytest.raises(Forbidden):
        repository.list("bob", folder.id)
    with pytest.raises(NotFound):
        repository.list("alice", "no-such-folder")


def test_duplicate_sibling_folder_names_rejected(repository):
    repository.create_folder("alice", None, "Mixes")
    with pytest.raises(ValidationError):
        repository.create_folder("alice", None, "mixes")
    # Same name is fine for another user or another parent
    repository.create_folder("bob", None, "Mixes")
    parent = repository.create_folder("alice", None, "Archive")
    repository.create_folder("alice", parent.id, "Mixes")


def test_move_folder_into_own_subtree_rejected(repository):
    top = repository.create_folder("alice", None, "top")
    child = repository.create_folder("alice", top.id, "child")
    with pytest.raises(ValidationError):
        repository.move_folder("alice", top.id, child.id)
    with pytest.raises(ValidationError):
        repository.move_folder("alice", top.id, top.id)

    other = repository.create_folder("alice", None, "other")
    moved = repository.move_folder("alice", child.id, other.id)
    assert moved.parent_id == other.id


def test_rename_and_move_file_require_ownership(repository, make_file):
    stored = make_file("alice", "take1.mp3")
    folder = repository.create_folder("alice", None, "Takes")

    with pytest.raises(Forbidden):
        repository.rename_file("bob", stored.id, "mine.mp3")

    renamed = repository.rename_file("alice", stored.id, "take-final.mp3")
    assert renamed.name == "take-final.mp3"
    moved = repository.move_file("alice", stored.id, folder.id)
    assert moved.folder_id == folder.id
    assert repository.get_file(stored.id).folder_id == folder.id


def test_delete_non_empty_folder_is_blocked(repository, make_file, bus):
    folder = repository.create_folder("alice", None, "Project")
    repository.create_folder("alice", folder.id, "Drums")
    make_file("alice", "vocal.wav", folder_id=folder.id, mime_type="audio/x-wav")

    with pytest.raises(Blocked) as exc_info:
        repository.delete_folder("alice", folder.id)
    assert exc_info.value.count == 2
    assert repository.get_folder(folder.id) is not None
    assert bus.version == 0


def test_cascade_delete_removes_subtree_and_signals_once(repository, make_file, storage, bus):
    folder = repository.create_folder("alice", None, "Project")
    sub = repository.create_folder("alice", folder.id, "Drums")
    top_file = make_file("alice", "vocal.mp3", folder_id=folder.id)
    nested = make_file("alice", "kick.mp3", folder_id=sub.id)

    assert repository.delete_folder("alice", folder.id, cascade=True) is True

    assert bus.version == 1
    assert repository.get_folder(folder.id) is None
    assert repository.get_folder(sub.id) is None
    assert repository.get_file(top_file.id) is None
    assert repository.get_file(nested.id) is None
    assert not storage.file_exists(nested.storage_path)
    assert repository.sum_sizes("alice") == 0


def test_cascade_delete_failing_midway_keeps_rows_and_objects_in_step(repository, make_file,
                                                                      storage, bus, monkeypatch):
    folder = repository.create_folder("alice", None, "Project")
    first = make_file("alice", "first.mp3", folder_id=folder.id)
    time.sleep(0.002)
    second = make_file("alice", "second.mp3", folder_id=folder.id)

    real_delete = storage.delete_file
    calls = []

    def flaky_delete(remote_key):
        calls.append(remote_key)
        if len(calls) == 2:
            return False
        return real_delete(remote_key)

    monkeypatch.setattr(storage, "delete_file", flaky_delete)

    with pytest.raises(TransientNetwork):
        repository.delete_folder("alice", folder.id, cascade=True)

    assert repository.get_file(first.id) is None
    assert not storage.file_exists(first.storage_path)
    assert repository.get_file(second.id) is not None
    assert storage.file_exists(second.storage_path)
    assert [i.name for i in repository.list("alice", folder.id)] == ["second.mp3"]
    assert repository.get_folder(folder.id) is not None
    assert repository.sum_sizes("alice") == second.size
    assert bus.version == 1


def test_delete_empty_folder(repository, bus):
    folder = repository.create_folder("alice", None, "Empty")
    assert repository.delete_folder("alice", folder.id) is True
    assert repository.get_folder(folder.id) is None
    assert bus.version == 1


def test_declined_confirmation_changes_nothing(db, bus, storage, make_file):
    prompts = []

    def decline(message):
        prompts.append(message)
        return False

    repository = FolderFileRepository(db, events=bus, storage=storage, confirm=decline)
    stored = make_file("alice", "keep.mp3")

    assert repository.delete_file("alice", stored.id) is False
    assert prompts and "keep.mp3" in prompts[0]
    assert repository.get_file(stored.id) is not None
    assert storage.file_exists(stored.storage_path)
    assert bus.version == 0


def test_delete_file_removes_object_and_row(repository, make_file, storage, bus):
    stored = make_file("alice", "gone.mp3")
    with pytest.raises(Forbidden):
        repository.delete_file("bob", stored.id)

    assert repository.delete_file("alice", stored.id) is True
    assert repository.get_file(stored.id) is None
    assert not storage.file_exists(stored.storage_path)
    assert bus.version == 1


def test_placeholders_are_invisible_until_committed(repository):
    stored = repository.reserve_placeholder("alice", "pending.mp3", 500, "audio/mpeg")

    assert repository.list("alice") == []
    assert repository.sum_sizes("alice") == 0
    assert repository.count_files("alice") == 1
    assert repository.get_file_by_path(stored.storage_path) is None

    committed = repository.commit_placeholder(stored.id)
    assert committed.size == 500
    assert repository.sum_sizes("alice") == 500
    with pytest.raises(NotFound):
        repository.commit_placeholder(stored.id)


def test_discard_placeholder(repository):
    stored = repository.reserve_placeholder("alice", "dropped.mp3", 10, "audio/mpeg")
    assert repository.discard_placeholder(stored.id) is True
    assert repository.discard_placeholder(stored.id) is False
    assert repository.count_files("alice") == 0


def test_sum_sizes_spans_all_folders(repository, make_file):
    folder = repository.create_folder("alice", None, "deep")
    make_file("alice", "a.mp3", b"x" * 100)
    make_file("alice", "b.mp3", b"x" * 250, folder_id=folder.id)
    make_file("bob", "c.mp3", b"x" * 999)
    assert repository.sum_sizes("alice") == 350


def test_duration_updates_validate_input(repository, make_file):
    stored = make_file("alice", "song.mp3")
    track = repository.create_track("alice", stored.id, "song")

    repository.update_audio_duration(track.id, 187)
    repository.update_file_duration_seconds(stored.id, 187)
    assert repository.get_track(track.id).duration_seconds == 187
    assert repository.get_file(stored.id).duration_seconds == 187

    with pytest.raises(ValidationError):
        repository.update_file_duration_seconds(stored.id, -1)
    with pytest.raises(NotFound):
        repository.update_audio_duration("missing-track", 10)


def test_search_all_spans_record_types(repository, make_file):
    make_file("alice", "sunset groove.mp3")
    repository.create_folder("alice", None, "Groove Kits")
    repository.create_project("bob", "groove album")

    results = repository.search_all("groove")
    assert {r['type'] for r in results} == {'file', 'folder', 'project'}
    assert repository.search_all("   ") == []


def test_toggle_bookmark(repository):
    project_id = repository.create_project("alice", "EP")
    assert repository.toggle_bookmark("bob", project_id) is True
    assert repository.toggle_bookmark("bob", project_id) is False
    with pytest.raises(NotFound):
        repository.toggle_bookmark("bob", "no-such-project")


def test_read_grants(repository, make_file):
    stored = make_file("alice", "shared.mp3")
    assert not repository.has_read_grant(stored.id, "bob")
    repository.grant_read("alice", stored.id, "bob")
    assert repository.has_read_grant(stored.id, "bob")
    assert repository.revoke_read("alice", stored.id, "bob") is True
    assert not repository.has_read_grant(stored.id, "bob")
    with pytest.raises(Forbidden):
        repository.grant_read("bob", stored.id, "carol")
