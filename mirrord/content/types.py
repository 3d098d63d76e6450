from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from mirrord.db.models import HashAlgorithm

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True, slots=True)
class Fingerprint:
    size: int
    digest: str
    algorithm: HashAlgorithm

    def matches(self, other: "Fingerprint") -> bool:
        return (
            self.algorithm == other.algorithm
            and self.size == other.size
            and self.digest == other.digest
        )

    def __str__(self) -> str:
        return f"{self.algorithm.value}:{self.digest}:{self.size}"


@dataclass(frozen=True, slots=True)
class ContentItem:
    key: str
    size: int
    modified_at: datetime | None = None
    fingerprint: Fingerprint | None = None

    @property
    def mtime_us(self) -> int | None:
        if self.modified_at is None:
            return None
        return to_epoch_us(self.modified_at)


def to_epoch_us(value: datetime) -> int:
    return (value - _EPOCH) // timedelta(microseconds=1)


def from_epoch_ns(value: int) -> datetime:
    seconds, remainder = divmod(value, 1_000_000_000)
    return _EPOCH + timedelta(seconds=seconds, microseconds=remainder // 1000)
