"""Hash helpers."""

from __future__ import annotations

from dataclasses import dataclass
import hashlib
from typing import BinaryIO, Union


ByteSource = Union[bytes, bytearray, memoryview, BinaryIO]

DEFAULT_CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class HashedContent:
    data: bytes
    sha256: str
    size_bytes: int


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def hash_stream(
    source: ByteSource,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    limit: int | None = None,
) -> HashedContent:
    """Read ``source`` and fingerprint it.

    ``source`` may be an in-memory buffer or a binary file object. With
    ``limit`` set, a file object is read up to ``limit + 1`` bytes at most, so
    callers can tell an oversized stream from one of exactly ``limit`` bytes
    without draining it. Errors raised by the file object propagate unchanged.
    """
    if isinstance(source, (bytes, bytearray, memoryview)):
        data = bytes(source)
        return HashedContent(data=data, sha256=sha256_bytes(data), size_bytes=len(data))

    hasher = hashlib.sha256()
    chunks: list[bytes] = []
    size = 0
    budget = None if limit is None else limit + 1
    while budget is None or size < budget:
        want = chunk_size if budget is None else min(chunk_size, budget - size)
        chunk = source.read(want)
        if not chunk:
            break
        hasher.update(chunk)
        chunks.append(chunk)
        size += len(chunk)
    return HashedContent(data=b"".join(chunks), sha256=hasher.hexdigest(), size_bytes=size)
