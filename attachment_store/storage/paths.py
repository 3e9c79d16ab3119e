"""Placement strategies mapping content hashes to physical keys."""

from __future__ import annotations

from dataclasses import dataclass
import uuid
from typing import Protocol

from attachment_store.errors import PlacementError
from attachment_store.storage.disks import Disk


DEFAULT_PREFIX = "attachments"

# Separates the caller-chosen prefix from the content shard tree. Hints may not
# contain it, so no hint can reach into another prefix's shards.
BLOB_SEGMENT = "_blobs"


@dataclass(frozen=True)
class PlacementDecision:
    physical_key: str
    is_duplicate_of_existing: bool


class PathGenerator(Protocol):
    def resolve(
        self,
        disk: Disk,
        content_hash: str,
        original_name: str | None,
        upload_path_hint: str | None,
        allow_duplicates: bool = False,
    ) -> PlacementDecision:
        ...


def sanitize_hint(hint: str | None) -> str:
    if not hint:
        return ""
    parts = [p for p in hint.replace("\\", "/").split("/") if p not in ("", ".", "..")]
    for part in parts:
        if part == BLOB_SEGMENT:
            raise PlacementError(f"Path hint may not contain the reserved segment {BLOB_SEGMENT!r}")
        if any(ord(ch) < 32 or ch == "\x7f" for ch in part):
            raise PlacementError(f"Path hint contains control characters: {hint!r}")
    return "/".join(parts)


def _sharded_key(prefix: str, content_hash: str, suffix: str = "") -> str:
    return f"{prefix}/{BLOB_SEGMENT}/{content_hash[:2]}/{content_hash[2:4]}/{content_hash}{suffix}"


def _place(disk: Disk, prefix: str, content_hash: str, allow_duplicates: bool, max_attempts: int) -> PlacementDecision:
    try:
        if not allow_duplicates:
            key = _sharded_key(prefix, content_hash)
            return PlacementDecision(physical_key=key, is_duplicate_of_existing=disk.exists(key))

        for _ in range(max_attempts):
            key = _sharded_key(prefix, content_hash, f"-{uuid.uuid4().hex[:12]}")
            if not disk.exists(key):
                return PlacementDecision(physical_key=key, is_duplicate_of_existing=False)
    except OSError as exc:
        raise PlacementError(f"Disk {disk.name!r} unreachable: {exc}") from exc
    except ValueError as exc:
        raise PlacementError(f"Invalid key on disk {disk.name!r}: {exc}") from exc
    raise PlacementError(f"No free key for {content_hash} after {max_attempts} attempts")


class HashPathGenerator:
    """Default strategy: ``<hint or prefix>/_blobs/<aa>/<bb>/<sha256>``.

    The upload path hint is part of the key, so identical content only dedupes
    within the same hint.
    """

    def __init__(self, default_prefix: str = DEFAULT_PREFIX, max_attempts: int = 5) -> None:
        self.default_prefix = sanitize_hint(default_prefix) or DEFAULT_PREFIX
        self.max_attempts = max_attempts

    def resolve(
        self,
        disk: Disk,
        content_hash: str,
        original_name: str | None,
        upload_path_hint: str | None,
        allow_duplicates: bool = False,
    ) -> PlacementDecision:
        prefix = sanitize_hint(upload_path_hint) or self.default_prefix
        return _place(disk, prefix, content_hash, allow_duplicates, self.max_attempts)


class SharedHashPathGenerator:
    """Ignores the upload path hint so identical content dedupes deployment-wide."""

    def __init__(self, default_prefix: str = DEFAULT_PREFIX, max_attempts: int = 5) -> None:
        self.default_prefix = sanitize_hint(default_prefix) or DEFAULT_PREFIX
        self.max_attempts = max_attempts

    def resolve(
        self,
        disk: Disk,
        content_hash: str,
        original_name: str | None,
        upload_path_hint: str | None,
        allow_duplicates: bool = False,
    ) -> PlacementDecision:
        return _place(disk, self.default_prefix, content_hash, allow_duplicates, self.max_attempts)


PATH_STRATEGIES = {
    "hash": HashPathGenerator,
    "shared": SharedHashPathGenerator,
}


def make_path_generator(strategy: str, default_prefix: str = DEFAULT_PREFIX, max_attempts: int = 5) -> PathGenerator:
    try:
        factory = PATH_STRATEGIES[strategy]
    except KeyError:
        raise ValueError(f"Unknown path strategy: {strategy!r}") from None
    return factory(default_prefix=default_prefix, max_attempts=max_attempts)
