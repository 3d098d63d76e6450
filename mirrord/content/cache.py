from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from mirrord.content.types import ContentItem, Fingerprint
from mirrord.db.models import CachedFingerprint, HashAlgorithm


class FingerprintCacheError(RuntimeError):
    pass


class FingerprintCache:
    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def lookup(self, endpoint_id: str, item: ContentItem, algorithm: HashAlgorithm) -> Fingerprint | None:
        mtime_us = item.mtime_us
        if mtime_us is None:
            return None
        with self._session_factory() as session:
            row = session.scalar(
                select(CachedFingerprint).where(
                    CachedFingerprint.endpoint_id == endpoint_id,
                    CachedFingerprint.item_key == item.key,
                    CachedFingerprint.hash_algorithm == algorithm,
                )
            )
            if row is None:
                return None
            if row.size_bytes != item.size or row.mtime_us != mtime_us:
                return None
            return Fingerprint(size=row.size_bytes, digest=row.digest, algorithm=row.hash_algorithm)

    def store(self, endpoint_id: str, item: ContentItem, fingerprint: Fingerprint) -> None:
        mtime_us = item.mtime_us
        if mtime_us is None or fingerprint.size != item.size:
            return
        with self._session_factory() as session:
            for _ in range(2):
                row = session.scalar(
                    select(CachedFingerprint).where(
                        CachedFingerprint.endpoint_id == endpoint_id,
                        CachedFingerprint.item_key == item.key,
                        CachedFingerprint.hash_algorithm == fingerprint.algorithm,
                    )
                )
                if row is None:
                    row = CachedFingerprint(
                        endpoint_id=endpoint_id,
                        item_key=item.key,
                        hash_algorithm=fingerprint.algorithm,
                    )
                    session.add(row)
                row.size_bytes = fingerprint.size
                row.mtime_us = mtime_us
                row.digest = fingerprint.digest
                row.hashed_at = self._now()
                try:
                    session.commit()
                    return
                except IntegrityError:
                    session.rollback()
            raise FingerprintCacheError(f"Could not store fingerprint for {endpoint_id}:{item.key}")

    def forget(self, endpoint_id: str, key: str) -> None:
        with self._session_factory() as session:
            session.execute(
                delete(CachedFingerprint).where(
                    CachedFingerprint.endpoint_id == endpoint_id,
                    CachedFingerprint.item_key == key,
                )
            )
            session.commit()

    def prune(self, endpoint_id: str, live_keys: set[str]) -> int:
        with self._session_factory() as session:
            rows = list(
                session.scalars(select(CachedFingerprint).where(CachedFingerprint.endpoint_id == endpoint_id)).all()
            )
            stale = [row for row in rows if row.item_key not in live_keys]
            for row in stale:
                session.delete(row)
            session.commit()
            return len(stale)
