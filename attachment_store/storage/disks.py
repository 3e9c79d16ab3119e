"""Physical storage backends ("disks")."""

from __future__ import annotations

from enum import Enum
import logging
import os
from pathlib import Path
import tempfile
from typing import Iterator, Protocol
from urllib.parse import quote

from attachment_store.errors import PlacementError, StorageWriteError


logger = logging.getLogger(__name__)

TEMP_PREFIX = ".tmp-"


class WriteResult(str, Enum):
    WRITTEN = "written"
    ALREADY_EXISTS = "already_exists"


class Disk(Protocol):
    name: str

    def exists(self, key: str) -> bool:
        ...

    def write_exclusive(self, key: str, data: bytes) -> WriteResult:
        """Create ``key`` with ``data`` unless it already exists.

        Raises StorageWriteError for any other failure.
        """
        ...

    def delete(self, key: str) -> bool:
        """Remove ``key``. Returns False if it did not exist."""
        ...

    def read_bytes(self, key: str) -> bytes:
        ...

    def url_for(self, key: str) -> str:
        ...

    def iter_keys(self) -> Iterator[str]:
        ...


class LocalDisk:
    """Disk backed by a directory on the local filesystem.

    Keys are POSIX-style paths relative to ``root``.
    """

    def __init__(self, name: str, root: str, base_url: str | None = None) -> None:
        self.name = name
        self.root = Path(root).expanduser().resolve()
        self.base_url = base_url.rstrip("/") if base_url else None

    def ensure_root(self) -> None:
        os.makedirs(self.root, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        path = (self.root / Path(key)).resolve()
        root_str = str(self.root)
        if not str(path).startswith(root_str + os.sep):
            raise ValueError(f"Invalid storage key (path traversal): {key!r}")
        return path

    def exists(self, key: str) -> bool:
        return self._path_for(key).is_file()

    def write_exclusive(self, key: str, data: bytes) -> WriteResult:
        path = self._path_for(key)
        tmp_name = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                dir=path.parent, prefix=TEMP_PREFIX, delete=False
            ) as handle:
                tmp_name = handle.name
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            # os.link refuses to replace an existing target, which makes the
            # final step an exclusive create.
            try:
                os.link(tmp_name, path)
            except FileExistsError:
                if not path.is_file():
                    raise StorageWriteError(
                        f"Cannot write {key!r} on disk {self.name!r}: a non-file already occupies it"
                    ) from None
                return WriteResult.ALREADY_EXISTS
        except OSError as exc:
            raise StorageWriteError(f"Failed to write {key!r} on disk {self.name!r}: {exc}") from exc
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except FileNotFoundError:
                    pass
                except OSError:
                    logger.warning("Could not remove temp file %s", tmp_name)
        return WriteResult.WRITTEN

    def delete(self, key: str) -> bool:
        path = self._path_for(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def read_bytes(self, key: str) -> bytes:
        return self._path_for(key).read_bytes()

    def url_for(self, key: str) -> str:
        if self.base_url:
            return f"{self.base_url}/{quote(key)}"
        return self._path_for(key).as_uri()

    def iter_keys(self) -> Iterator[str]:
        if not self.root.exists():
            return
        for path in sorted(self.root.rglob("*")):
            if path.is_file() and not path.name.startswith(TEMP_PREFIX):
                yield path.relative_to(self.root).as_posix()


class DiskRegistry:
    def __init__(self, disks: dict[str, Disk] | None = None) -> None:
        self._disks: dict[str, Disk] = dict(disks or {})

    def register(self, disk: Disk) -> None:
        self._disks[disk.name] = disk

    def get(self, name: str) -> Disk:
        try:
            return self._disks[name]
        except KeyError:
            raise PlacementError(f"Unknown disk: {name!r}") from None

    def names(self) -> list[str]:
        return list(self._disks)
