import threading

import pytest

import attachment_store.db.models  # noqa: F401  registers tables on Base
from attachment_store.db.session import Base, make_engine, make_session_factory
from attachment_store.events import UploadNotifier
from attachment_store.pipeline.store import AttachmentStore
from attachment_store.storage.disks import DiskRegistry, LocalDisk, WriteResult
from attachment_store.storage.locks import KeyLockRegistry
from attachment_store.storage.paths import HashPathGenerator


class CountingDisk(LocalDisk):
    """LocalDisk that records successful writes and deletes."""

    def __init__(self, name, root, base_url=None):
        super().__init__(name, root, base_url=base_url)
        self._lock = threading.Lock()
        self.writes = []
        self.deletes = []

    def write_exclusive(self, key, data):
        result = super().write_exclusive(key, data)
        if result is WriteResult.WRITTEN:
            with self._lock:
                self.writes.append(key)
        return result

    def delete(self, key):
        removed = super().delete(key)
        if removed:
            with self._lock:
                self.deletes.append(key)
        return removed


@pytest.fixture
def disk(tmp_path):
    disk = CountingDisk("local", str(tmp_path / "disk"))
    disk.ensure_root()
    return disk


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'meta.db'}", timeout=30)
    Base.metadata.create_all(engine)
    yield make_session_factory(engine=engine)
    engine.dispose()


@pytest.fixture
def notifier():
    return UploadNotifier()


@pytest.fixture
def make_store(session_factory, disk, notifier):
    def factory(**kwargs):
        kwargs.setdefault("path_generator", HashPathGenerator())
        kwargs.setdefault("locks", KeyLockRegistry(timeout=10))
        kwargs.setdefault("notifier", notifier)
        disks = kwargs.pop("disks", None) or DiskRegistry({disk.name: disk})
        return AttachmentStore(session_factory=session_factory, disks=disks, **kwargs)

    return factory


@pytest.fixture
def store(make_store):
    return make_store()
