import io

import pytest
from sqlalchemy.exc import OperationalError

from attachment_store.errors import PlacementError, SizeMismatchError, StorageWriteError
from attachment_store.pipeline import store as store_module
from attachment_store.storage.locks import KeyLockRegistry
from attachment_store.storage.paths import PlacementDecision
from attachment_store.util.hashing import sha256_bytes


class AbortedStream(io.RawIOBase):
    def __init__(self):
        super().__init__()
        self.calls = 0

    def read(self, size=-1):
        self.calls += 1
        if self.calls > 1:
            raise ConnectionResetError("client went away")
        return b"he"


class FixedGenerator:
    def __init__(self, key, duplicate):
        self.key = key
        self.duplicate = duplicate
        self.calls = 0

    def resolve(self, disk, content_hash, original_name, upload_path_hint, allow_duplicates=False):
        self.calls += 1
        return PlacementDecision(physical_key=self.key, is_duplicate_of_existing=self.duplicate)


def test_hello_scenario(store, disk):
    r1 = store.ingest(io.BytesIO(b"hello"), "a.txt", mime="text/plain", size=5)
    r2 = store.ingest(io.BytesIO(b"hello"), "b.txt", mime="text/plain", size=5)

    assert r1.id != r2.id
    assert r1.physical_key == r2.physical_key
    assert disk.writes == [r1.physical_key]
    assert r1.content_hash == sha256_bytes(b"hello")

    store.remove(r1.id)
    assert disk.exists(r1.physical_key)

    store.remove(r2.id)
    assert not disk.exists(r1.physical_key)


def test_record_metadata(store):
    record = store.ingest(b"hello", "a.txt", mime="text/plain", size=5, upload_path_hint="docs")
    assert record.original_name == "a.txt"
    assert record.mime == "text/plain"
    assert record.size == 5
    assert record.disk_name == "local"
    assert record.duplicate_mode is False
    assert record.upload_path_hint == "docs"
    assert record.physical_key.startswith("docs/")
    assert store.get(record.id) == record


def test_size_defaults_to_bytes_read(store):
    record = store.ingest(b"abc", "a.txt")
    assert record.size == 3


def test_allow_duplicates_stores_independent_copies(store, disk):
    first = store.ingest(b"hello", "a.txt", size=5, allow_duplicates=True)
    second = store.ingest(b"hello", "a.txt", size=5, allow_duplicates=True)

    assert first.physical_key != second.physical_key
    assert disk.writes == [first.physical_key, second.physical_key]
    assert first.duplicate_mode and second.duplicate_mode
    assert first.content_hash == second.content_hash


def test_store_level_duplicate_policy(make_store, disk):
    store = make_store(allow_duplicates=True)
    first = store.ingest(b"hello", "a.txt")
    second = store.ingest(b"hello", "a.txt")
    assert first.physical_key != second.physical_key
    assert len(disk.writes) == 2


def test_same_hint_dedupes_different_hints_do_not(store, disk):
    a = store.ingest(b"hello", "a.txt", upload_path_hint="invoices")
    b = store.ingest(b"hello", "b.txt", upload_path_hint="invoices")
    c = store.ingest(b"hello", "c.txt", upload_path_hint="avatars")
    assert a.physical_key == b.physical_key
    assert c.physical_key != a.physical_key
    assert len(disk.writes) == 2


def test_size_mismatch_leaves_no_trace(store, disk):
    with pytest.raises(SizeMismatchError) as excinfo:
        store.ingest(io.BytesIO(b"hell"), "a.txt", size=5)

    assert excinfo.value.expected == 5
    assert excinfo.value.actual == 4
    assert not excinfo.value.retryable
    assert store.list_records() == []
    assert list(disk.iter_keys()) == []


def test_aborted_stream_is_size_mismatch(store, disk, notifier):
    events = []
    notifier.subscribe(events.append)

    with pytest.raises(SizeMismatchError):
        store.ingest(AbortedStream(), "a.txt", size=5)

    assert store.list_records() == []
    assert disk.writes == []
    assert events == []


def test_unknown_disk_is_placement_error(store):
    with pytest.raises(PlacementError):
        store.ingest(b"hello", "a.txt", disk_name="s3")


def test_write_failure_leaves_no_row(store, disk, monkeypatch):
    def fail(key, data):
        raise StorageWriteError("quota exceeded")

    monkeypatch.setattr(disk, "write_exclusive", fail)

    with pytest.raises(StorageWriteError):
        store.ingest(b"hello", "a.txt")
    assert store.list_records() == []


def test_metadata_failure_removes_written_bytes(store, disk, monkeypatch):
    def fail(self, payload):
        raise OperationalError("INSERT", {}, Exception("database is locked"))

    monkeypatch.setattr(store_module.AttachmentRepository, "insert", fail)

    with pytest.raises(StorageWriteError):
        store.ingest(b"hello", "a.txt")
    assert list(disk.iter_keys()) == []


def test_metadata_failure_on_link_keeps_shared_bytes(store, disk, monkeypatch):
    first = store.ingest(b"hello", "a.txt")

    def fail(self, payload):
        raise OperationalError("INSERT", {}, Exception("database is locked"))

    monkeypatch.setattr(store_module.AttachmentRepository, "insert", fail)

    with pytest.raises(StorageWriteError):
        store.ingest(b"hello", "b.txt")
    assert disk.exists(first.physical_key)
    assert [r.id for r in store.list_records()] == [first.id]


def test_upload_event_follows_commit(store, notifier):
    seen = []

    @notifier.subscribe
    def check(event):
        seen.append((event.record, store.get(event.record.id)))

    record = store.ingest(b"hello", "a.txt")
    assert seen == [(record, record)]


def test_subscriber_failure_does_not_roll_back(store, notifier):
    @notifier.subscribe
    def explode(event):
        raise RuntimeError("boom")

    record = store.ingest(b"hello", "a.txt")
    assert store.get(record.id) == record


def test_stale_duplicate_decision_rewrites_bytes(make_store, disk):
    key = "attachments/stale"
    store = make_store(path_generator=FixedGenerator(key, duplicate=True))

    record = store.ingest(b"hello", "a.txt")
    assert record.physical_key == key
    assert disk.writes == [key]
    assert disk.read_bytes(key) == b"hello"


def test_lost_write_race_links_instead(make_store, disk, tmp_path):
    key = "attachments/raced"
    target = tmp_path / "disk" / "attachments" / "raced"
    target.parent.mkdir(parents=True)
    target.write_bytes(b"hello")
    store = make_store(path_generator=FixedGenerator(key, duplicate=False))

    record = store.ingest(b"hello", "a.txt")
    assert record.physical_key == key
    assert disk.writes == []


def test_duplicate_mode_retries_are_bounded(make_store, disk, tmp_path):
    key = "attachments/taken"
    target = tmp_path / "disk" / "attachments" / "taken"
    target.parent.mkdir(parents=True)
    target.write_bytes(b"other")
    generator = FixedGenerator(key, duplicate=False)
    store = make_store(path_generator=generator, max_key_attempts=3)

    with pytest.raises(PlacementError):
        store.ingest(b"hello", "a.txt", allow_duplicates=True)
    assert generator.calls == 3
    assert store.list_records() == []
    assert target.read_bytes() == b"other"


def test_lock_timeout_is_storage_write_error(make_store):
    store = make_store(locks=KeyLockRegistry(timeout=0.01))
    key = store.path_generator.resolve(store.disks.get("local"), sha256_bytes(b"hello"), "a.txt", None).physical_key

    with store.locks.hold("local", key):
        with pytest.raises(StorageWriteError):
            store.ingest(b"hello", "a.txt")
    assert store.list_records() == []


def test_hint_shaped_like_shard_path_keeps_bytes_readable(store):
    hello_hash = sha256_bytes(b"hello")
    other = store.ingest(b"other", "b.txt", upload_path_hint=f"attachments/2c/f2/{hello_hash}")
    hello = store.ingest(b"hello", "a.txt")

    assert store.read_bytes(other.id) == b"other"
    assert store.read_bytes(hello.id) == b"hello"


def test_reserved_hint_segment_is_placement_error(store, disk):
    with pytest.raises(PlacementError):
        store.ingest(b"other", "b.txt", upload_path_hint="attachments/_blobs/2c/f2")
    assert store.list_records() == []
    assert list(disk.iter_keys()) == []


def test_directory_in_place_of_bytes_is_not_linked(make_store, disk, tmp_path):
    key = "attachments/occupied"
    (tmp_path / "disk" / "attachments" / "occupied").mkdir(parents=True)
    store = make_store(path_generator=FixedGenerator(key, duplicate=False))

    with pytest.raises(StorageWriteError):
        store.ingest(b"hello", "a.txt")
    assert store.list_records() == []


def test_null_byte_in_hint_is_placement_error(store):
    with pytest.raises(PlacementError):
        store.ingest(b"hello", "a.txt", upload_path_hint="a\x00b")
    assert store.list_records() == []


class EndlessStream(io.RawIOBase):
    def __init__(self):
        super().__init__()
        self.bytes_read = 0

    def read(self, size=-1):
        if size is None or size < 0:
            size = 1024
        self.bytes_read += size
        return b"x" * size


def test_oversized_stream_fails_without_draining(store, disk):
    source = EndlessStream()
    with pytest.raises(SizeMismatchError) as excinfo:
        store.ingest(source, "big.bin", size=5)

    assert source.bytes_read == 6
    assert excinfo.value.actual == 6
    assert store.list_records() == []
    assert disk.writes == []
