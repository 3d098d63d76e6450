from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable

from mirrord.content.addresser import Comparison
from mirrord.content.types import ContentItem
from mirrord.core.errors import ListingError, UnsafePlanError
from mirrord.jobs.types import DeletionPolicy

logger = logging.getLogger(__name__)

CompareFn = Callable[[ContentItem, ContentItem], Comparison]


@dataclass(slots=True)
class TransferPlan:
    to_add: list[ContentItem] = field(default_factory=list)
    to_update: list[ContentItem] = field(default_factory=list)
    to_delete: list[ContentItem] = field(default_factory=list)
    noop: list[str] = field(default_factory=list)

    @property
    def noop_count(self) -> int:
        return len(self.noop)

    @property
    def transfer_count(self) -> int:
        return len(self.to_add) + len(self.to_update)

    @property
    def planned_count(self) -> int:
        return self.transfer_count + len(self.to_delete)

    @property
    def is_empty(self) -> bool:
        return self.planned_count == 0

    def add_keys(self) -> set[str]:
        return {item.key for item in self.to_add}

    def update_keys(self) -> set[str]:
        return {item.key for item in self.to_update}

    def delete_keys(self) -> set[str]:
        return {item.key for item in self.to_delete}


def index_listing(listing: Iterable[ContentItem], *, side: str) -> dict[str, ContentItem]:
    indexed: dict[str, ContentItem] = {}
    for item in listing:
        if item.key in indexed:
            raise ListingError(f"Duplicate key in {side} listing: {item.key}", retryable=False)
        indexed[item.key] = item
    return indexed


def metadata_compare(source_item: ContentItem, dest_item: ContentItem) -> Comparison:
    """Listing-only comparison used when no content addresser is wired in."""
    if source_item.size != dest_item.size:
        return Comparison(equivalent=False, source=source_item)
    if source_item.fingerprint is not None and dest_item.fingerprint is not None:
        return Comparison(equivalent=source_item.fingerprint.matches(dest_item.fingerprint), source=source_item)
    source_mtime = source_item.mtime_us
    return Comparison(equivalent=source_mtime is not None and source_mtime == dest_item.mtime_us, source=source_item)


def plan(
    source_listing: Iterable[ContentItem],
    destination_listing: Iterable[ContentItem],
    deletion: DeletionPolicy,
    *,
    compare: CompareFn | None = None,
    allow_empty_source: bool = False,
) -> TransferPlan:
    """Partition both listings into add, update, delete and no-op work.

    ``compare`` decides equivalence for keys present on both sides. The
    source item it hands back (possibly carrying a freshly computed
    fingerprint) is what lands in ``to_update``.
    """
    source = index_listing(source_listing, side="source")
    destination = index_listing(destination_listing, side="destination")
    comparator = compare or metadata_compare

    if (
        not source
        and destination
        and deletion == DeletionPolicy.MIRROR
        and not allow_empty_source
    ):
        raise UnsafePlanError(
            f"Source listing is empty while {len(destination)} destination items would be deleted; "
            "set allow_empty_source to permit this"
        )

    result = TransferPlan()
    for key in sorted(source):
        source_item = source[key]
        dest_item = destination.get(key)
        if dest_item is None:
            result.to_add.append(source_item)
            continue

        comparison = comparator(source_item, dest_item)
        if comparison.equivalent:
            result.noop.append(key)
        else:
            result.to_update.append(comparison.source)

    if deletion == DeletionPolicy.MIRROR:
        result.to_delete = [destination[key] for key in sorted(destination) if key not in source]

    logger.debug(
        "Planned %d adds, %d updates, %d deletes, %d unchanged",
        len(result.to_add),
        len(result.to_update),
        len(result.to_delete),
        result.noop_count,
    )
    return result
