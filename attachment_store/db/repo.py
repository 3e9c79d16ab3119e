"""Repository layer for attachment metadata."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterator

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from attachment_store.db.models import Attachment


@dataclass(frozen=True)
class AttachmentRecord:
    id: str
    disk_name: str
    physical_key: str
    content_hash: str
    original_name: str | None
    mime: str | None
    size: int
    duplicate_mode: bool
    created_at: datetime
    upload_path_hint: str | None = None

    @classmethod
    def from_row(cls, row: Attachment) -> "AttachmentRecord":
        return cls(
            id=row.attachment_id,
            disk_name=row.disk_name,
            physical_key=row.physical_key,
            content_hash=row.content_hash,
            original_name=row.original_name,
            mime=row.mime,
            size=row.size_bytes,
            duplicate_mode=row.duplicate_mode,
            created_at=row.created_at,
            upload_path_hint=row.upload_path_hint,
        )


class AttachmentRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def insert(self, payload: dict) -> AttachmentRecord:
        row = Attachment(**payload)
        self.session.add(row)
        self.session.commit()
        return AttachmentRecord.from_row(row)

    def get(self, attachment_id: str) -> AttachmentRecord | None:
        row = self.session.get(Attachment, attachment_id)
        return AttachmentRecord.from_row(row) if row else None

    def delete(self, attachment_id: str) -> bool:
        stmt = delete(Attachment).where(Attachment.attachment_id == attachment_id)
        result = self.session.execute(stmt)
        return result.rowcount > 0

    def count_by_key(self, disk_name: str, physical_key: str) -> int:
        stmt = select(func.count()).select_from(Attachment).where(
            Attachment.disk_name == disk_name,
            Attachment.physical_key == physical_key,
        )
        return self.session.execute(stmt).scalar_one()

    def list(
        self,
        disk_name: str | None = None,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[AttachmentRecord]:
        stmt = select(Attachment).order_by(Attachment.created_at.asc(), Attachment.attachment_id.asc())
        if disk_name:
            stmt = stmt.where(Attachment.disk_name == disk_name)
        if since:
            stmt = stmt.where(Attachment.created_at >= since)
        if limit:
            stmt = stmt.limit(limit)
        return [AttachmentRecord.from_row(row) for row in self.session.execute(stmt).scalars()]

    def iter_keys(self, disk_name: str | None = None) -> Iterator[tuple[str, str]]:
        stmt = select(Attachment.disk_name, Attachment.physical_key).distinct()
        if disk_name:
            stmt = stmt.where(Attachment.disk_name == disk_name)
        for disk, key in self.session.execute(stmt):
            yield disk, key

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()
