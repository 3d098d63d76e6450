from __future__ import annotations

import os
import threading
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy.orm import sessionmaker

import mirrord.db.session as db_session_module
from mirrord.content.addresser import ContentAddresser
from mirrord.core.config import get_settings
from mirrord.core.errors import JobLockedError
from mirrord.db.init_db import initialize_database
from mirrord.db.models import RunStatus
from mirrord.db.session import build_engine
from mirrord.jobs.history import RunHistoryService
from mirrord.jobs.lock_service import JobLockService, job_lock_key
from mirrord.jobs.runner import JobRunner
from mirrord.jobs.types import MirrorJob
from tests.fakes import MemoryEndpoint


def setup_env(tmp_path: Path) -> JobLockService:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["MIRRORD_STATE_ROOT"] = state_root.as_posix()
    os.environ["MIRRORD_JOB_LOCK_TTL_SECONDS"] = "30"

    get_settings.cache_clear()
    db_session_module.reset_engine()
    initialize_database()
    return JobLockService(db_session_module.get_session_factory(), ttl_seconds=30)


def test_two_runs_cannot_hold_the_same_lease(tmp_path: Path) -> None:
    service = setup_env(tmp_path)
    barrier = threading.Barrier(2)
    results: dict[str, bool] = {}
    lock = threading.Lock()

    def acquire(run_id: str) -> None:
        barrier.wait(timeout=2)
        acquired = service.acquire(job_lock_key("docs"), run_id)
        with lock:
            results[run_id] = acquired

    threads = [threading.Thread(target=acquire, args=(run_id,)) for run_id in ("run-a", "run-b")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(results.values()) == [False, True]
    winner = next(run_id for run_id, acquired in results.items() if acquired)
    assert service.holder(job_lock_key("docs")) == winner


def test_leases_are_per_job(tmp_path: Path) -> None:
    service = setup_env(tmp_path)

    assert service.acquire(job_lock_key("docs"), "run-a") is True
    assert service.acquire(job_lock_key("media"), "run-b") is True


def test_release_and_refresh_only_apply_to_the_owner(tmp_path: Path) -> None:
    service = setup_env(tmp_path)
    key = job_lock_key("docs")
    service.acquire(key, "run-a")

    assert service.refresh(key, "run-b") is False
    service.release(key, "run-b")
    assert service.holder(key) == "run-a"

    assert service.refresh(key, "run-a") is True
    service.release(key, "run-a")
    assert service.holder(key) is None
    assert service.acquire(key, "run-b") is True


def test_expired_lease_can_be_taken_over(tmp_path: Path) -> None:
    service = setup_env(tmp_path)
    key = job_lock_key("docs")
    service.acquire(key, "crashed-run")

    later = service._now() + timedelta(seconds=31)
    service._now = lambda: later  # type: ignore[method-assign]

    assert service.holder(key) is None
    assert service.acquire(key, "run-b") is True
    assert service.holder(key) == "run-b"


def test_cleanup_expired_removes_only_stale_leases(tmp_path: Path) -> None:
    service = setup_env(tmp_path)
    service.acquire(job_lock_key("stale"), "run-a")
    later = service._now() + timedelta(seconds=31)
    service._now = lambda: later  # type: ignore[method-assign]
    service.acquire(job_lock_key("fresh"), "run-b")

    assert service.cleanup_expired() == 1
    assert service.holder(job_lock_key("fresh")) == "run-b"


def test_runner_refuses_to_start_while_another_process_holds_the_lease(tmp_path: Path) -> None:
    service = setup_env(tmp_path)
    job = MirrorJob(name="docs", source=MemoryEndpoint("src", {"a": b"1"}), destination=MemoryEndpoint("dst"))
    runner = JobRunner(job, ContentAddresser(), lock_service=service)
    service.acquire(job_lock_key("docs"), "other-process")

    with pytest.raises(JobLockedError):
        runner.run()

    service.release(job_lock_key("docs"), "other-process")
    report = runner.run()
    assert report.status == RunStatus.COMPLETED
    assert service.holder(job_lock_key("docs")) is None


def test_run_history_is_recorded_newest_first(tmp_path: Path) -> None:
    setup_env(tmp_path)
    history = RunHistoryService(db_session_module.get_session_factory())
    source = MemoryEndpoint("src", {"a": b"1", "b": b"2"})
    runner = JobRunner(MirrorJob(name="docs", source=source, destination=MemoryEndpoint("dst")), ContentAddresser())

    first = runner.run()
    history.record(first)
    second = runner.run()
    history.record(second)

    runs = history.list_runs("docs")
    assert [run["run_id"] for run in runs] == [second.run_id, first.run_id]
    assert runs[1]["succeeded"] == 2
    assert runs[0]["noop"] == 2
    assert runs[0]["started_at"].tzinfo is not None
    assert history.latest("docs")["run_id"] == second.run_id
    assert history.list_runs("other") == []


def test_in_memory_state_database_is_shared_across_threads() -> None:
    engine = initialize_database(build_engine("sqlite://"))
    service = JobLockService(sessionmaker(bind=engine, expire_on_commit=False), ttl_seconds=30)
    results: list[bool] = []

    thread = threading.Thread(target=lambda: results.append(service.acquire(job_lock_key("docs"), "run-a")))
    thread.start()
    thread.join()

    assert results == [True]
    assert service.holder(job_lock_key("docs")) == "run-a"
    engine.dispose()
