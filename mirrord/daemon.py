from __future__ import annotations

import logging
import signal
import threading
from pathlib import Path
from typing import Iterable

from sqlalchemy.orm import Session, sessionmaker

from mirrord.content.addresser import ContentAddresser
from mirrord.content.cache import FingerprintCache
from mirrord.core.config import Settings, get_settings
from mirrord.core.errors import ConfigurationError
from mirrord.db.init_db import initialize_database
from mirrord.db.models import HashAlgorithm, RunTrigger
from mirrord.db.session import get_session_factory
from mirrord.jobs.config import MirrorFile, load_mirror_file
from mirrord.jobs.events import CompositeEventSink, HistoryEventSink, JobEventSink, LoggingEventSink
from mirrord.jobs.history import RunHistoryService
from mirrord.jobs.lock_service import JobLockService
from mirrord.jobs.runner import JobRunner
from mirrord.jobs.scheduler import JobScheduler
from mirrord.jobs.types import JobRunReport, JobState, JobStatusSnapshot, MirrorJob, TriggerResult

logger = logging.getLogger(__name__)


def build_addresser(settings: Settings, session_factory: sessionmaker[Session] | None) -> ContentAddresser:
    return ContentAddresser(
        HashAlgorithm(settings.hash_algorithm),
        chunk_size=settings.read_chunk_bytes,
        trust_mtime=settings.trust_mtime,
        cache=FingerprintCache(session_factory) if session_factory is not None else None,
    )


class MirrorDaemon:
    """Top-level process object: wires jobs, persistence and the scheduler together.

    Without a session factory the daemon runs purely in memory: no
    fingerprint cache, no cross-process leases and no run history.
    """

    def __init__(
        self,
        settings: Settings,
        jobs: Iterable[MirrorJob],
        *,
        session_factory: sessionmaker[Session] | None = None,
        admin_token: str | None = None,
        config_path: Path | None = None,
        sinks: Iterable[JobEventSink] = (),
    ):
        self.settings = settings
        self.admin_token = admin_token if admin_token is not None else settings.admin_token
        self.config_path = config_path
        self._session_factory = session_factory
        self._addresser = build_addresser(settings, session_factory)
        self._lock_service = (
            JobLockService(session_factory, ttl_seconds=settings.job_lock_ttl_seconds)
            if session_factory is not None
            else None
        )
        self.history = RunHistoryService(session_factory) if session_factory is not None else None

        event_sinks: list[JobEventSink] = [LoggingEventSink()]
        if self.history is not None:
            event_sinks.append(HistoryEventSink(self.history))
        event_sinks.extend(sinks)
        self.scheduler = JobScheduler(jobs, self.make_runner, sink=CompositeEventSink(event_sinks))
        self._stop_requested = threading.Event()
        self._started = False

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "MirrorDaemon":
        settings = settings or get_settings()
        mirror_file = load_mirror_file(settings.config_path, settings)
        initialize_database()
        return cls(
            settings,
            mirror_file.jobs,
            session_factory=get_session_factory(),
            admin_token=mirror_file.admin_token,
            config_path=mirror_file.path,
        )

    def make_runner(self, job: MirrorJob) -> JobRunner:
        return JobRunner(
            job,
            self._addresser,
            lock_service=self._lock_service,
            heartbeat_seconds=self.settings.job_lock_heartbeat_seconds,
        )

    @property
    def running(self) -> bool:
        return self._started and not self.scheduler.stopping

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        if self._lock_service is not None:
            expired = self._lock_service.cleanup_expired()
            if expired:
                logger.info("Cleared %d expired job leases", expired)
        self.scheduler.start()
        logger.info("Mirror daemon started with jobs: %s", ", ".join(self.scheduler.job_names()))

    def shutdown(self, timeout: float | None = None) -> bool:
        grace = self.settings.shutdown_grace_seconds if timeout is None else timeout
        logger.info("Shutting down; waiting up to %.1fs for runs to stop", grace)
        self._stop_requested.set()
        return self.scheduler.stop(timeout=grace)

    def request_stop(self) -> None:
        self._stop_requested.set()

    def run_forever(self) -> None:
        """Run until SIGINT or SIGTERM; SIGHUP reloads the mirror file."""
        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGINT, lambda _signum, _frame: self.request_stop())
            signal.signal(signal.SIGTERM, lambda _signum, _frame: self.request_stop())
            if hasattr(signal, "SIGHUP"):
                signal.signal(signal.SIGHUP, lambda _signum, _frame: self._reload_from_signal())
        self.start()
        try:
            while not self._stop_requested.wait(1.0):
                pass
        finally:
            self.shutdown()

    def _reload_from_signal(self) -> None:
        threading.Thread(target=self._safe_reload, name="mirror-reload", daemon=True).start()

    def _safe_reload(self) -> None:
        try:
            self.reload()
        except ConfigurationError as exc:
            logger.error("Reload rejected, keeping the current jobs: %s", exc)

    def reload(self) -> MirrorFile:
        if self.config_path is None:
            raise RuntimeError("This daemon was not created from a mirror file")
        mirror_file = load_mirror_file(self.config_path, self.settings)
        self.scheduler.reload(mirror_file.jobs)
        self.admin_token = mirror_file.admin_token
        return mirror_file

    # queries

    def jobs(self) -> list[MirrorJob]:
        return [self.scheduler.job(name) for name in self.scheduler.job_names()]

    def job(self, name: str) -> MirrorJob:
        return self.scheduler.job(name)

    def job_states(self) -> dict[str, JobState]:
        return {snapshot.name: snapshot.state for snapshot in self.scheduler.statuses()}

    def status(self, name: str) -> JobStatusSnapshot:
        return self.scheduler.status(name)

    def statuses(self) -> list[JobStatusSnapshot]:
        return self.scheduler.statuses()

    def latest_report(self, name: str) -> JobRunReport | None:
        return self.scheduler.last_report(name)

    # control

    def request_rerun(self, name: str) -> TriggerResult:
        return self.scheduler.trigger(name, trigger=RunTrigger.MANUAL)

    def pause(self, name: str) -> None:
        self.scheduler.pause(name)

    def resume(self, name: str) -> None:
        self.scheduler.resume(name)

    def cancel(self, name: str) -> bool:
        return self.scheduler.cancel(name)
