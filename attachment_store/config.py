"""Configuration loading for the attachment store."""

from __future__ import annotations

from dataclasses import dataclass, field
import os


@dataclass(frozen=True)
class AppConfig:
    db_url: str
    storage_root: str
    disks: dict[str, str] = field(default_factory=dict)
    default_disk: str = "local"
    base_url: str | None = None
    default_prefix: str = "attachments"
    path_strategy: str = "hash"
    allow_duplicates: bool = False
    max_key_attempts: int = 5
    lock_timeout: float = 30.0
    db_timeout: float = 30.0
    chunk_size: int = 1024 * 1024
    log_level: str = "INFO"
    log_file: str | None = None

    def disk_roots(self) -> dict[str, str]:
        roots = {self.default_disk: self.storage_root}
        roots.update(self.disks)
        return roots


def _parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def parse_disks(value: str | None) -> dict[str, str]:
    """Parse ``name=path;name=path`` into a mapping."""
    disks: dict[str, str] = {}
    if not value:
        return disks
    for item in value.split(";"):
        item = item.strip()
        if not item:
            continue
        name, sep, path = item.partition("=")
        if not sep or not name.strip() or not path.strip():
            raise ValueError(f"Invalid disk entry: {item!r}")
        disks[name.strip()] = path.strip()
    return disks


def load_config() -> AppConfig:
    return AppConfig(
        db_url=os.getenv("ATTACHMENT_STORE_DB_URL", "sqlite:///attachment_store.db"),
        storage_root=os.getenv("ATTACHMENT_STORE_STORAGE_ROOT", "attachment_storage"),
        disks=parse_disks(os.getenv("ATTACHMENT_STORE_DISKS")),
        default_disk=os.getenv("ATTACHMENT_STORE_DEFAULT_DISK", "local"),
        base_url=os.getenv("ATTACHMENT_STORE_BASE_URL") or None,
        default_prefix=os.getenv("ATTACHMENT_STORE_DEFAULT_PREFIX", "attachments"),
        path_strategy=os.getenv("ATTACHMENT_STORE_PATH_STRATEGY", "hash"),
        allow_duplicates=_parse_bool(os.getenv("ATTACHMENT_STORE_ALLOW_DUPLICATES")),
        max_key_attempts=int(os.getenv("ATTACHMENT_STORE_MAX_KEY_ATTEMPTS", "5")),
        lock_timeout=float(os.getenv("ATTACHMENT_STORE_LOCK_TIMEOUT", "30")),
        db_timeout=float(os.getenv("ATTACHMENT_STORE_DB_TIMEOUT", "30")),
        chunk_size=int(os.getenv("ATTACHMENT_STORE_CHUNK_SIZE", str(1024 * 1024))),
        log_level=os.getenv("ATTACHMENT_STORE_LOG_LEVEL", "INFO"),
        log_file=os.getenv("ATTACHMENT_STORE_LOG_FILE") or None,
    )
