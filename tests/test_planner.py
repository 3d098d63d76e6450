from __future__ import annotations

import random
from datetime import timedelta

import pytest

from mirrord.content.addresser import ContentAddresser
from mirrord.content.types import ContentItem, Fingerprint
from mirrord.core.errors import ListingError, UnsafePlanError
from mirrord.db.models import HashAlgorithm
from mirrord.jobs.types import DeletionPolicy
from mirrord.planning.planner import plan
from tests.fakes import T0, MemoryEndpoint


def _item(key: str, digest: str, *, size: int = 10, offset_seconds: int = 0) -> ContentItem:
    return ContentItem(
        key=key,
        size=size,
        modified_at=T0 + timedelta(seconds=offset_seconds),
        fingerprint=Fingerprint(size=size, digest=digest, algorithm=HashAlgorithm.BLAKE3),
    )


def test_plan_example_scenario() -> None:
    source = [_item("a", "hash1"), _item("b", "hash2")]
    destination = [_item("a", "hash1"), _item("c", "hash3")]

    result = plan(source, destination, DeletionPolicy.MIRROR)

    assert result.add_keys() == {"b"}
    assert result.update_keys() == set()
    assert result.delete_keys() == {"c"}
    assert result.noop == ["a"]
    assert result.noop_count == 1


def test_plan_partitions_every_key_exactly_once() -> None:
    rng = random.Random(7)
    keys = [f"dir{n % 5}/file{n}.bin" for n in range(200)]
    source = []
    destination = []
    for key in keys:
        roll = rng.random()
        if roll < 0.3:
            source.append(_item(key, f"s-{key}"))
        elif roll < 0.5:
            destination.append(_item(key, f"d-{key}"))
        elif roll < 0.75:
            source.append(_item(key, f"same-{key}"))
            destination.append(_item(key, f"same-{key}", offset_seconds=5))
        else:
            source.append(_item(key, f"new-{key}"))
            destination.append(_item(key, f"old-{key}"))

    result = plan(source, destination, DeletionPolicy.MIRROR)

    add, update, delete, noop = result.add_keys(), result.update_keys(), result.delete_keys(), set(result.noop)
    assert not (add & update) and not (add & delete) and not (update & delete)
    assert not (noop & (add | update | delete))
    source_keys = {item.key for item in source}
    destination_keys = {item.key for item in destination}
    assert add | update | noop == source_keys
    assert delete == destination_keys - source_keys
    assert [item.key for item in result.to_add] == sorted(add)


def test_append_only_never_deletes() -> None:
    source = [_item("keep", "1")]
    destination = [_item("keep", "1"), _item("extra-1", "2"), _item("extra-2", "3")]

    result = plan(source, destination, DeletionPolicy.APPEND_ONLY)

    assert result.to_delete == []
    assert result.noop == ["keep"]


def test_empty_source_with_deletion_requires_explicit_opt_in() -> None:
    destination = [_item("a", "1"), _item("b", "2")]

    with pytest.raises(UnsafePlanError):
        plan([], destination, DeletionPolicy.MIRROR)

    confirmed = plan([], destination, DeletionPolicy.MIRROR, allow_empty_source=True)
    assert confirmed.delete_keys() == {"a", "b"}


def test_empty_source_without_deletion_is_a_noop_plan() -> None:
    result = plan([], [_item("a", "1")], DeletionPolicy.APPEND_ONLY)
    assert result.is_empty


def test_equal_fingerprint_wins_over_differing_mtime() -> None:
    source = [_item("a", "same", offset_seconds=0)]
    destination = [_item("a", "same", offset_seconds=3600)]

    result = plan(source, destination, DeletionPolicy.MIRROR)

    assert result.noop == ["a"]
    assert result.to_update == []


def test_metadata_only_comparison_updates_when_mtime_differs() -> None:
    source = [ContentItem(key="a", size=4, modified_at=T0)]
    destination = [ContentItem(key="a", size=4, modified_at=T0 + timedelta(seconds=1))]

    result = plan(source, destination, DeletionPolicy.APPEND_ONLY)

    assert result.update_keys() == {"a"}


def test_duplicate_keys_in_a_listing_are_rejected() -> None:
    with pytest.raises(ListingError):
        plan([_item("a", "1"), _item("a", "2")], [], DeletionPolicy.APPEND_ONLY)


def test_addresser_comparison_hashes_ambiguous_items_and_carries_fingerprint() -> None:
    source = MemoryEndpoint("src", {"same": b"payload", "changed": b"new-bytes"})
    destination = MemoryEndpoint("dst", {"same": b"payload", "changed": b"old-bytes"})
    destination.put("same", b"payload", modified_at=T0 + timedelta(days=1))
    addresser = ContentAddresser(HashAlgorithm.SHA256)

    result = plan(
        source.list(),
        destination.list(),
        DeletionPolicy.MIRROR,
        compare=lambda s, d: addresser.compare(s, source, d, destination),
    )

    assert result.noop == ["same"]
    assert [item.key for item in result.to_update] == ["changed"]
    planned = result.to_update[0].fingerprint
    assert planned is not None
    assert planned == addresser.fingerprint_chunks([b"new-bytes"])
