from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, Iterator

from mirrord.content.types import ContentItem


class StagedObject(ABC):
    """Bytes written under a staging name, invisible until ``commit``."""

    key: str

    @abstractmethod
    def write(self, chunk: bytes) -> None: ...

    @abstractmethod
    def close(self) -> None:
        """Flush and close the write side; further writes are rejected."""

    @abstractmethod
    def read_back(self, chunk_size: int) -> Iterator[bytes]: ...

    @abstractmethod
    def commit(self, *, modified_at: datetime | None = None) -> ContentItem:
        """Publish the staged bytes under the final key in a single step."""

    @abstractmethod
    def discard(self) -> None:
        """Remove the staged bytes. Safe to call more than once."""


class SourceEndpoint(ABC):
    endpoint_id: str

    @abstractmethod
    def list(self) -> list[ContentItem]:
        """Enumerate every item; raises ListingError when enumeration fails."""

    @abstractmethod
    def read(self, key: str, *, chunk_size: int) -> Iterator[bytes]: ...

    def describe(self) -> str:
        return self.endpoint_id


class DestinationEndpoint(SourceEndpoint):
    supports_delete: bool = True

    @abstractmethod
    def stage(self, key: str) -> StagedObject: ...

    @abstractmethod
    def delete(self, key: str) -> None: ...

    def recover(self) -> int:
        return 0

    def write(self, key: str, chunks: Iterable[bytes], *, modified_at: datetime | None = None) -> ContentItem:
        staged = self.stage(key)
        try:
            for chunk in chunks:
                staged.write(chunk)
            staged.close()
            return staged.commit(modified_at=modified_at)
        except BaseException:
            staged.discard()
            raise
