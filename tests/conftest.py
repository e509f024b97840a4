import io

import pytest

from library.quota import QuotaAccountant
from library.repository import FolderFileRepository
from shared.database import DatabaseManager
from shared.events import StorageEventBus
from storage.local_provider import LocalStorageProvider
from storage.signed_urls import SignedURLIssuer
from storage.storage_provider import BucketPolicy


@pytest.fixture
def db(tmp_path):
    return DatabaseManager(str(tmp_path / "library.db"))


@pytest.fixture
def bus():
    return StorageEventBus()


@pytest.fixture
def storage(tmp_path):
    provider = LocalStorageProvider()
    assert provider.authenticate({'base_path': str(tmp_path / "objects"), 'signing_secret': "test-secret"})
    provider.create_bucket("project_files", BucketPolicy())
    return provider


@pytest.fixture
def repository(db, bus, storage):
    return FolderFileRepository(db, events=bus, storage=storage)


@pytest.fixture
def quota(repository, bus):
    accountant = QuotaAccountant(repository, events=bus)
    yield accountant
    accountant.close()


@pytest.fixture
def issuer(repository, storage):
    return SignedURLIssuer(repository, storage)


@pytest.fixture
def make_file(repository, storage):
    """Store bytes and commit a file row for them, without signalling."""
    def _make(owner_id, name, data=b"x" * 100, folder_id=None, mime_type="audio/mpeg"):
        stored = repository.reserve_placeholder(owner_id, name, len(data), mime_type, folder_id)
        storage.upload_stream(io.BytesIO(data), stored.storage_path, len(data), mime_type)
        return repository.commit_placeholder(stored.id)
    return _make
