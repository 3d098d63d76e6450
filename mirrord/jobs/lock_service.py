from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from mirrord.db.models import JobLock


def job_lock_key(job_name: str) -> str:
    return f"mirror:{job_name}"


class JobLockService:
    """Lease rows that keep two processes from running the same mirror job.

    A lease expires after ``ttl_seconds`` unless refreshed, so a crashed
    holder never blocks the job for longer than one TTL.
    """

    def __init__(self, session_factory: sessionmaker[Session], *, ttl_seconds: int):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be greater than zero")
        self._session_factory = session_factory
        self._ttl = timedelta(seconds=ttl_seconds)

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def acquire(self, lock_key: str, owner_run_id: str) -> bool:
        now = self._now()
        with self._session_factory() as session:
            session.execute(
                delete(JobLock).where(
                    JobLock.lock_key == lock_key,
                    JobLock.expires_at <= now,
                )
            )
            session.add(
                JobLock(
                    lock_key=lock_key,
                    owner_run_id=owner_run_id,
                    acquired_at=now,
                    heartbeat_at=now,
                    expires_at=now + self._ttl,
                )
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
            return True

    def refresh(self, lock_key: str, owner_run_id: str) -> bool:
        now = self._now()
        with self._session_factory() as session:
            lock = session.scalar(
                select(JobLock).where(
                    JobLock.lock_key == lock_key,
                    JobLock.owner_run_id == owner_run_id,
                )
            )
            if lock is None:
                return False
            lock.heartbeat_at = now
            lock.expires_at = now + self._ttl
            session.commit()
            return True

    def release(self, lock_key: str, owner_run_id: str) -> None:
        with self._session_factory() as session:
            session.execute(
                delete(JobLock).where(
                    JobLock.lock_key == lock_key,
                    JobLock.owner_run_id == owner_run_id,
                )
            )
            session.commit()

    def holder(self, lock_key: str) -> str | None:
        now = self._now()
        with self._session_factory() as session:
            lock = session.scalar(select(JobLock).where(JobLock.lock_key == lock_key))
            if lock is None:
                return None
            expires_at = lock.expires_at
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            if expires_at <= now:
                return None
            return lock.owner_run_id

    def cleanup_expired(self) -> int:
        with self._session_factory() as session:
            result = session.execute(delete(JobLock).where(JobLock.expires_at <= self._now()))
            session.commit()
            return int(result.rowcount or 0)
