"""Database models."""

from __future__ import annotations

from datetime import datetime
from sqlalchemy import (
    String,
    DateTime,
    Boolean,
    BigInteger,
    Text,
    Index,
)
from sqlalchemy.orm import Mapped, mapped_column

from attachment_store.db.session import Base
from attachment_store.util.time import utcnow


class Attachment(Base):
    __tablename__ = "attachments"
    __table_args__ = (
        Index("ix_attachments_disk_key", "disk_name", "physical_key"),
        Index("ix_attachments_content_hash", "content_hash"),
    )

    attachment_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    disk_name: Mapped[str] = mapped_column(String(64))
    physical_key: Mapped[str] = mapped_column(String(512))
    content_hash: Mapped[str] = mapped_column(String(64))
    original_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    mime: Mapped[str | None] = mapped_column(String(128), nullable=True)
    size_bytes: Mapped[int] = mapped_column(BigInteger)
    upload_path_hint: Mapped[str | None] = mapped_column(Text, nullable=True)
    duplicate_mode: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
