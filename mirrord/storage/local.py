from __future__ import annotations

import errno
import logging
import os
import stat
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, Iterator
from uuid import uuid4

from mirrord.content.types import ContentItem, from_epoch_ns, to_epoch_us
from mirrord.core.errors import (
    FatalTransferError,
    ListingError,
    RetryableTransferError,
    SourceVanishedError,
    TransferError,
)
from mirrord.core.path_safety import PathSafetyError, resolve_under_root
from mirrord.storage.base import DestinationEndpoint, StagedObject

logger = logging.getLogger(__name__)

_FATAL_ERRNOS = {
    errno.EACCES,
    errno.EPERM,
    errno.EROFS,
    errno.ENOSPC,
    getattr(errno, "EDQUOT", errno.ENOSPC),
    errno.ENOTDIR,
    errno.EISDIR,
}


def _translate_os_error(exc: OSError, *, action: str, key: str) -> TransferError:
    message = f"{action} {key}: {exc.strerror or exc}"
    if isinstance(exc, FileNotFoundError) and action == "read":
        return SourceVanishedError(message)
    if exc.errno in _FATAL_ERRNOS:
        return FatalTransferError(message)
    return RetryableTransferError(message)


def _modified_at(stat_result: os.stat_result) -> datetime:
    return from_epoch_ns(stat_result.st_mtime_ns)


def _read_file(path: Path, chunk_size: int) -> Iterator[bytes]:
    with path.open("rb") as handle:
        while True:
            chunk = handle.read(chunk_size)
            if not chunk:
                return
            yield chunk


class LocalStagedObject(StagedObject):
    def __init__(self, *, key: str, final_path: Path, staging_path: Path):
        self.key = key
        self._final_path = final_path
        self._staging_path = staging_path
        self._handle: BinaryIO | None = staging_path.open("xb")
        self._committed = False

    @property
    def staging_path(self) -> Path:
        return self._staging_path

    def write(self, chunk: bytes) -> None:
        if self._handle is None:
            raise FatalTransferError(f"Staged object for {self.key} is closed")
        try:
            self._handle.write(chunk)
        except OSError as exc:
            raise _translate_os_error(exc, action="write", key=self.key) from exc

    def close(self) -> None:
        if self._handle is None:
            return
        handle, self._handle = self._handle, None
        try:
            handle.flush()
            os.fsync(handle.fileno())
        except OSError as exc:
            raise _translate_os_error(exc, action="write", key=self.key) from exc
        finally:
            handle.close()

    def read_back(self, chunk_size: int) -> Iterator[bytes]:
        if self._handle is not None:
            raise FatalTransferError(f"Staged object for {self.key} is still open for writing")
        return _read_file(self._staging_path, chunk_size)

    def commit(self, *, modified_at: datetime | None = None) -> ContentItem:
        self.close()
        try:
            self._final_path.parent.mkdir(parents=True, exist_ok=True)
            if modified_at is not None:
                mtime_ns = to_epoch_us(modified_at) * 1000
                os.utime(self._staging_path, ns=(mtime_ns, mtime_ns))
            os.replace(self._staging_path, self._final_path)
            stat_result = self._final_path.stat()
        except OSError as exc:
            raise _translate_os_error(exc, action="publish", key=self.key) from exc
        self._committed = True
        return ContentItem(key=self.key, size=stat_result.st_size, modified_at=_modified_at(stat_result))

    def discard(self) -> None:
        if self._handle is not None:
            handle, self._handle = self._handle, None
            handle.close()
        if not self._committed:
            self._staging_path.unlink(missing_ok=True)


class LocalDirectory(DestinationEndpoint):
    def __init__(self, root: Path, *, staging_dir_name: str = ".mirrord-staging", create: bool = False):
        self.root = root.resolve(strict=False)
        self.staging_dir_name = staging_dir_name
        self.create = create
        self.endpoint_id = f"local:{self.root.as_posix()}"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LocalDirectory):
            return NotImplemented
        return (self.root, self.staging_dir_name, self.create) == (other.root, other.staging_dir_name, other.create)

    def __hash__(self) -> int:
        return hash((self.root, self.staging_dir_name, self.create))

    def __repr__(self) -> str:
        return f"LocalDirectory({self.root.as_posix()!r})"

    @property
    def staging_root(self) -> Path:
        return self.root / self.staging_dir_name

    def _path_for(self, key: str, *, action: str) -> Path:
        try:
            path = resolve_under_root(self.root, key)
        except PathSafetyError as exc:
            raise FatalTransferError(f"{action} {key}: {exc}") from exc
        if path == self.staging_root or self.staging_root in path.parents:
            raise FatalTransferError(f"{action} {key}: key collides with the staging area")
        return path

    def list(self) -> list[ContentItem]:
        if not self.root.exists():
            if self.create:
                return []
            raise ListingError(f"Endpoint root does not exist: {self.root.as_posix()}")
        if not self.root.is_dir():
            raise ListingError(f"Endpoint root is not a directory: {self.root.as_posix()}", retryable=False)

        def _on_error(exc: OSError) -> None:
            raise ListingError(f"Failed to list {exc.filename}: {exc.strerror or exc}") from exc

        items: list[ContentItem] = []
        for dirpath, dirnames, filenames in os.walk(self.root, onerror=_on_error, followlinks=False):
            current = Path(dirpath)
            if current == self.root and self.staging_dir_name in dirnames:
                dirnames.remove(self.staging_dir_name)
            dirnames.sort()
            for filename in sorted(filenames):
                path = current / filename
                try:
                    stat_result = path.stat(follow_symlinks=False)
                except FileNotFoundError:
                    continue
                except OSError as exc:
                    raise ListingError(f"Failed to stat {path.as_posix()}: {exc.strerror or exc}") from exc
                if not stat.S_ISREG(stat_result.st_mode):
                    continue
                key = path.relative_to(self.root).as_posix()
                items.append(ContentItem(key=key, size=stat_result.st_size, modified_at=_modified_at(stat_result)))
        return items

    def read(self, key: str, *, chunk_size: int) -> Iterator[bytes]:
        path = self._path_for(key, action="read")
        try:
            handle = path.open("rb")
        except OSError as exc:
            raise _translate_os_error(exc, action="read", key=key) from exc
        return self._iter_handle(handle, key=key, chunk_size=chunk_size)

    def _iter_handle(self, handle: BinaryIO, *, key: str, chunk_size: int) -> Iterator[bytes]:
        with handle:
            while True:
                try:
                    chunk = handle.read(chunk_size)
                except OSError as exc:
                    raise _translate_os_error(exc, action="read", key=key) from exc
                if not chunk:
                    return
                yield chunk

    def stage(self, key: str) -> LocalStagedObject:
        final_path = self._path_for(key, action="stage")
        staging_path = self.staging_root / f"{uuid4().hex}.part"
        try:
            self.staging_root.mkdir(parents=True, exist_ok=True)
            return LocalStagedObject(key=key, final_path=final_path, staging_path=staging_path)
        except OSError as exc:
            raise _translate_os_error(exc, action="stage", key=key) from exc

    def delete(self, key: str) -> None:
        path = self._path_for(key, action="delete")
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise _translate_os_error(exc, action="delete", key=key) from exc
        self._prune_empty_parents(path.parent)

    def _prune_empty_parents(self, directory: Path) -> None:
        while directory != self.root and self.root in directory.parents:
            try:
                directory.rmdir()
            except OSError:
                return
            directory = directory.parent

    def recover(self) -> int:
        if not self.staging_root.is_dir():
            return 0
        removed = 0
        for leftover in self.staging_root.glob("*.part"):
            leftover.unlink(missing_ok=True)
            removed += 1
        if removed:
            logger.warning("Removed %d stale staging files under %s", removed, self.staging_root.as_posix())
        return removed

    def describe(self) -> str:
        return self.root.as_posix()
