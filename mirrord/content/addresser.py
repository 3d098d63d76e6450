from __future__ import annotations

import hashlib
import logging
from contextlib import closing
from dataclasses import dataclass, replace
from typing import Any, Iterable

from blake3 import blake3
from sqlalchemy.exc import SQLAlchemyError

from mirrord.content.cache import FingerprintCache, FingerprintCacheError
from mirrord.content.types import ContentItem, Fingerprint
from mirrord.db.models import HashAlgorithm
from mirrord.storage.base import SourceEndpoint

logger = logging.getLogger(__name__)

_CACHE_ERRORS = (SQLAlchemyError, FingerprintCacheError)


class StreamingFingerprint:
    def __init__(self, algorithm: HashAlgorithm):
        self.algorithm = algorithm
        self.size = 0
        self._hasher: Any = blake3() if algorithm == HashAlgorithm.BLAKE3 else hashlib.sha256()

    def update(self, chunk: bytes) -> None:
        self._hasher.update(chunk)
        self.size += len(chunk)

    def finish(self) -> Fingerprint:
        return Fingerprint(size=self.size, digest=self._hasher.hexdigest(), algorithm=self.algorithm)


@dataclass(frozen=True, slots=True)
class Comparison:
    equivalent: bool
    source: ContentItem


class ContentAddresser:
    """Decides whether two copies of an item hold the same bytes.

    Size is compared first since it is free. When sizes agree, known
    fingerprints are compared; missing ones are computed by streaming the
    item (and remembered in the fingerprint cache, keyed by size and mtime).
    With ``trust_mtime`` an equal size and mtime is accepted without hashing.
    """

    def __init__(
        self,
        algorithm: HashAlgorithm = HashAlgorithm.BLAKE3,
        *,
        chunk_size: int = 1024 * 1024,
        trust_mtime: bool = False,
        cache: FingerprintCache | None = None,
    ):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be greater than zero")
        self.algorithm = algorithm
        self.chunk_size = chunk_size
        self.trust_mtime = trust_mtime
        self._cache = cache

    def start(self) -> StreamingFingerprint:
        return StreamingFingerprint(self.algorithm)

    def fingerprint_chunks(self, chunks: Iterable[bytes]) -> Fingerprint:
        stream = self.start()
        for chunk in chunks:
            stream.update(chunk)
        return stream.finish()

    def fingerprint(self, item: ContentItem, endpoint: SourceEndpoint) -> Fingerprint:
        if item.fingerprint is not None and item.fingerprint.algorithm == self.algorithm:
            return item.fingerprint

        cached = self._lookup(endpoint, item)
        if cached is not None:
            return cached

        with closing(endpoint.read(item.key, chunk_size=self.chunk_size)) as chunks:
            result = self.fingerprint_chunks(chunks)

        self._store(endpoint, item, result)
        return result

    # The cache only saves re-reads, so its failures are logged and never fail a transfer.

    def _lookup(self, endpoint: SourceEndpoint, item: ContentItem) -> Fingerprint | None:
        if self._cache is None:
            return None
        try:
            return self._cache.lookup(endpoint.endpoint_id, item, self.algorithm)
        except _CACHE_ERRORS as exc:
            logger.warning("Fingerprint cache lookup failed for %s: %s", item.key, exc)
            return None

    def _store(self, endpoint: SourceEndpoint, item: ContentItem, fingerprint: Fingerprint) -> None:
        if self._cache is None:
            return
        try:
            self._cache.store(endpoint.endpoint_id, item, fingerprint)
        except _CACHE_ERRORS as exc:
            logger.warning("Could not cache the fingerprint of %s: %s", item.key, exc)

    def remember(self, endpoint: SourceEndpoint, item: ContentItem, fingerprint: Fingerprint) -> None:
        if fingerprint.algorithm == self.algorithm:
            self._store(endpoint, item, fingerprint)

    def forget(self, endpoint: SourceEndpoint, key: str) -> None:
        if self._cache is None:
            return
        try:
            self._cache.forget(endpoint.endpoint_id, key)
        except _CACHE_ERRORS as exc:
            logger.warning("Could not drop the cached fingerprint of %s: %s", key, exc)

    def prune(self, endpoint: SourceEndpoint, live_keys: set[str]) -> int:
        """Drop cached fingerprints for keys missing from the endpoint's latest listing."""
        if self._cache is None:
            return 0
        try:
            return self._cache.prune(endpoint.endpoint_id, live_keys)
        except _CACHE_ERRORS as exc:
            logger.warning("Could not prune cached fingerprints of %s: %s", endpoint.endpoint_id, exc)
            return 0

    @staticmethod
    def equivalent(a: Fingerprint, b: Fingerprint) -> bool:
        return a.matches(b)

    @staticmethod
    def quick_match(a: ContentItem, b: ContentItem) -> bool | None:
        if a.size != b.size:
            return False
        if a.mtime_us is not None and a.mtime_us == b.mtime_us:
            return True
        return None

    def compare(
        self,
        source_item: ContentItem,
        source: SourceEndpoint,
        dest_item: ContentItem,
        destination: SourceEndpoint,
    ) -> Comparison:
        quick = self.quick_match(source_item, dest_item)
        if quick is False:
            return Comparison(equivalent=False, source=source_item)

        known_source = source_item.fingerprint
        known_dest = dest_item.fingerprint
        if known_source is not None and known_dest is not None and known_source.algorithm == known_dest.algorithm:
            return Comparison(equivalent=self.equivalent(known_source, known_dest), source=source_item)

        if quick is True and self.trust_mtime:
            return Comparison(equivalent=True, source=source_item)

        source_fp = self.fingerprint(source_item, source)
        dest_fp = self.fingerprint(dest_item, destination)
        same = self.equivalent(source_fp, dest_fp)
        if not same:
            logger.debug("Content differs for %s (%s != %s)", source_item.key, source_fp, dest_fp)
        return Comparison(equivalent=same, source=replace(source_item, fingerprint=source_fp))
