"""Deduplicating attachment store: ingest and reference-counted removal."""

from __future__ import annotations

from datetime import datetime
import logging
import uuid
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from attachment_store.config import AppConfig
from attachment_store.db.repo import AttachmentRecord, AttachmentRepository
from attachment_store.db.session import Base, make_engine, make_session_factory
from attachment_store.errors import (
    NotFoundError,
    PlacementError,
    SizeMismatchError,
    StorageWriteError,
)
from attachment_store.events import UploadNotifier
from attachment_store.storage.disks import Disk, DiskRegistry, LocalDisk, WriteResult
from attachment_store.storage.locks import KeyLockRegistry, LockTimeout
from attachment_store.storage.paths import PathGenerator, PlacementDecision, make_path_generator
from attachment_store.util.hashing import ByteSource, DEFAULT_CHUNK_SIZE, HashedContent, hash_stream
from attachment_store.util.time import utcnow


logger = logging.getLogger(__name__)


def make_attachment_id() -> str:
    return uuid.uuid4().hex


class AttachmentStore:
    def __init__(
        self,
        session_factory,
        disks: DiskRegistry,
        path_generator: PathGenerator,
        locks: KeyLockRegistry | None = None,
        notifier: UploadNotifier | None = None,
        default_disk: str = "local",
        allow_duplicates: bool = False,
        max_key_attempts: int = 5,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        clock: Callable[[], datetime] = utcnow,
        engine=None,
    ) -> None:
        self.session_factory = session_factory
        self.disks = disks
        self.path_generator = path_generator
        self.locks = locks if locks is not None else KeyLockRegistry()
        self.notifier = notifier if notifier is not None else UploadNotifier()
        self.default_disk = default_disk
        self.allow_duplicates = allow_duplicates
        self.max_key_attempts = max_key_attempts
        self.chunk_size = chunk_size
        self.clock = clock
        self.engine = engine

    def close(self) -> None:
        """Dispose the engine this store owns, if any."""
        if self.engine is not None:
            self.engine.dispose()

    # -- ingest -----------------------------------------------------------

    def ingest(
        self,
        source: ByteSource,
        original_name: str | None,
        mime: str | None = None,
        size: int | None = None,
        disk_name: str | None = None,
        upload_path_hint: str | None = None,
        allow_duplicates: bool | None = None,
    ) -> AttachmentRecord:
        disk_name = disk_name or self.default_disk
        if allow_duplicates is None:
            allow_duplicates = self.allow_duplicates

        content = self._read(source, size)
        disk = self.disks.get(disk_name)

        # Only duplicate-allowance mode can lose a key to a concurrent writer
        # and need a fresh one; the default policy links instead.
        attempts = self.max_key_attempts if allow_duplicates else 1
        record = None
        for _ in range(attempts):
            decision = self.path_generator.resolve(
                disk,
                content.sha256,
                original_name,
                upload_path_hint,
                allow_duplicates=allow_duplicates,
            )
            record = self._place_and_record(
                disk,
                decision,
                content,
                original_name=original_name,
                mime=mime,
                upload_path_hint=upload_path_hint,
                allow_duplicates=allow_duplicates,
            )
            if record is not None:
                break
        if record is None:
            raise PlacementError(
                f"No free key for {content.sha256} on disk {disk_name!r} after {attempts} attempts"
            )

        self.notifier.emit(record, self.clock())
        return record

    def _read(self, source: ByteSource, size: int | None) -> HashedContent:
        try:
            content = hash_stream(source, self.chunk_size, limit=size)
        except (OSError, ValueError) as exc:
            raise SizeMismatchError(
                f"Byte source aborted while reading: {exc}", expected=size
            ) from exc
        if size is not None and content.size_bytes != size:
            # An oversized stream stops at size + 1 bytes.
            read = f"more than {size}" if content.size_bytes > size else str(content.size_bytes)
            raise SizeMismatchError(
                f"Declared size {size} but read {read} bytes",
                expected=size,
                actual=content.size_bytes,
            )
        return content

    def _place_and_record(
        self,
        disk: Disk,
        decision: PlacementDecision,
        content: HashedContent,
        *,
        original_name: str | None,
        mime: str | None,
        upload_path_hint: str | None,
        allow_duplicates: bool,
    ) -> AttachmentRecord | None:
        key = decision.physical_key
        try:
            with self.locks.hold(disk.name, key):
                wrote = False
                # A concurrent remove may have deleted the bytes between
                # resolve() and taking the lock.
                if decision.is_duplicate_of_existing and self._exists(disk, key):
                    logger.info("Linking %s to existing %s:%s", original_name, disk.name, key)
                else:
                    try:
                        result = disk.write_exclusive(key, content.data)
                    except OSError as exc:
                        raise StorageWriteError(f"Failed to write {disk.name}:{key}: {exc}") from exc
                    if result is WriteResult.ALREADY_EXISTS:
                        if allow_duplicates:
                            logger.debug("Key %s:%s taken, retrying placement", disk.name, key)
                            return None
                        logger.info("Lost write race on %s:%s, linking instead", disk.name, key)
                    else:
                        wrote = True
                        logger.info(
                            "Stored %s as %s:%s (%d bytes)",
                            original_name,
                            disk.name,
                            key,
                            content.size_bytes,
                        )
                try:
                    return self._insert(
                        disk,
                        key,
                        content,
                        original_name=original_name,
                        mime=mime,
                        upload_path_hint=upload_path_hint,
                        allow_duplicates=allow_duplicates,
                    )
                except Exception as exc:
                    if wrote:
                        self._discard(disk, key)
                    if isinstance(exc, SQLAlchemyError):
                        raise StorageWriteError(f"Failed to record attachment metadata: {exc}") from exc
                    raise
        except LockTimeout as exc:
            raise StorageWriteError(str(exc)) from exc

    def _exists(self, disk: Disk, key: str) -> bool:
        try:
            return disk.exists(key)
        except OSError as exc:
            raise StorageWriteError(f"Disk {disk.name!r} unreachable: {exc}") from exc

    def _insert(
        self,
        disk: Disk,
        key: str,
        content: HashedContent,
        *,
        original_name: str | None,
        mime: str | None,
        upload_path_hint: str | None,
        allow_duplicates: bool,
    ) -> AttachmentRecord:
        payload = {
            "attachment_id": make_attachment_id(),
            "disk_name": disk.name,
            "physical_key": key,
            "content_hash": content.sha256,
            "original_name": original_name,
            "mime": mime,
            "size_bytes": content.size_bytes,
            "upload_path_hint": upload_path_hint,
            "duplicate_mode": allow_duplicates,
            "created_at": self.clock(),
        }
        with self.session_factory() as session:
            return AttachmentRepository(session).insert(payload)

    def _discard(self, disk: Disk, key: str) -> None:
        try:
            disk.delete(key)
        except (OSError, ValueError):
            logger.warning("Could not clean up %s:%s after failed ingest", disk.name, key, exc_info=True)

    # -- removal ----------------------------------------------------------

    def remove(self, record_id: str) -> None:
        """Delete a record, and its bytes once nothing else references them."""
        record = self.get(record_id)
        try:
            with self.locks.hold(record.disk_name, record.physical_key):
                with self.session_factory() as session:
                    repo = AttachmentRepository(session)
                    if not repo.delete(record_id):
                        repo.rollback()
                        raise NotFoundError(f"Attachment {record_id} not found")
                    remaining = repo.count_by_key(record.disk_name, record.physical_key)
                    repo.commit()
                logger.info(
                    "Removed attachment %s (%d references left on %s:%s)",
                    record_id,
                    remaining,
                    record.disk_name,
                    record.physical_key,
                )
                if remaining == 0:
                    self._delete_physical(record)
        except LockTimeout as exc:
            raise StorageWriteError(str(exc)) from exc
        except SQLAlchemyError as exc:
            raise StorageWriteError(f"Failed to remove attachment metadata: {exc}") from exc

    def _delete_physical(self, record: AttachmentRecord) -> None:
        try:
            disk = self.disks.get(record.disk_name)
            if not disk.delete(record.physical_key):
                logger.warning("Physical file %s:%s was already gone", record.disk_name, record.physical_key)
        except (OSError, ValueError, PlacementError):
            logger.warning(
                "Failed to delete physical file %s:%s",
                record.disk_name,
                record.physical_key,
                exc_info=True,
            )

    # -- queries ----------------------------------------------------------

    def get(self, record_id: str) -> AttachmentRecord:
        try:
            with self.session_factory() as session:
                record = AttachmentRepository(session).get(record_id)
        except SQLAlchemyError as exc:
            raise NotFoundError(f"Attachment {record_id} lookup failed: {exc}") from exc
        if record is None:
            raise NotFoundError(f"Attachment {record_id} not found")
        return record

    def list_records(
        self,
        disk_name: str | None = None,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[AttachmentRecord]:
        with self.session_factory() as session:
            return AttachmentRepository(session).list(disk_name=disk_name, since=since, limit=limit)

    def references(self, disk_name: str, physical_key: str) -> int:
        with self.session_factory() as session:
            return AttachmentRepository(session).count_by_key(disk_name, physical_key)

    def read_bytes(self, record_id: str) -> bytes:
        record = self.get(record_id)
        disk = self.disks.get(record.disk_name)
        try:
            return disk.read_bytes(record.physical_key)
        except FileNotFoundError as exc:
            raise NotFoundError(f"Bytes for attachment {record_id} are missing") from exc

    def url_for(self, record_id: str, check_exists: bool = True) -> str:
        """Public URL of the bytes behind ``record_id``.

        ``check_exists`` costs an extra round trip on remote disks.
        """
        record = self.get(record_id)
        disk = self.disks.get(record.disk_name)
        if check_exists and not disk.exists(record.physical_key):
            raise NotFoundError(f"Bytes for attachment {record_id} are missing")
        return disk.url_for(record.physical_key)

    def find_orphans(self, disk_name: str | None = None) -> list[tuple[str, str]]:
        """Physical keys present on disk that no record references."""
        names = [disk_name] if disk_name else self.disks.names()
        with self.session_factory() as session:
            referenced = set(AttachmentRepository(session).iter_keys(disk_name))
        orphans = []
        for name in names:
            for key in self.disks.get(name).iter_keys():
                if (name, key) not in referenced:
                    orphans.append((name, key))
        return orphans

    def find_missing(self, disk_name: str | None = None) -> list[AttachmentRecord]:
        """Records whose physical bytes are gone."""
        missing = []
        for record in self.list_records(disk_name=disk_name):
            disk = self.disks.get(record.disk_name)
            if not disk.exists(record.physical_key):
                missing.append(record)
        return missing


def build_store(config: AppConfig, notifier: UploadNotifier | None = None) -> AttachmentStore:
    engine = make_engine(config.db_url, timeout=config.db_timeout)
    Base.metadata.create_all(engine)
    session_factory = make_session_factory(engine=engine)

    disks = DiskRegistry()
    for name, root in config.disk_roots().items():
        disk = LocalDisk(name, root, base_url=config.base_url if name == config.default_disk else None)
        disk.ensure_root()
        disks.register(disk)

    return AttachmentStore(
        session_factory=session_factory,
        disks=disks,
        path_generator=make_path_generator(
            config.path_strategy,
            default_prefix=config.default_prefix,
            max_attempts=config.max_key_attempts,
        ),
        locks=KeyLockRegistry(timeout=config.lock_timeout),
        notifier=notifier,
        default_disk=config.default_disk,
        allow_duplicates=config.allow_duplicates,
        max_key_attempts=config.max_key_attempts,
        chunk_size=config.chunk_size,
        engine=engine,
    )
