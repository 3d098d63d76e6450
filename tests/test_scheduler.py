from __future__ import annotations

import dataclasses
import threading
import time

import pytest

from mirrord.content.addresser import ContentAddresser
from mirrord.db.models import RunStatus, RunTrigger
from mirrord.jobs.runner import JobRunner
from mirrord.jobs.scheduler import JobNotFoundError, JobScheduler
from mirrord.jobs.types import (
    IntervalSchedule,
    JobRunReport,
    JobState,
    MirrorJob,
    OverlapPolicy,
    RetrySettings,
    TriggerResult,
)
from tests.fakes import BrokenListing, MemoryEndpoint

NO_WAIT = RetrySettings(max_attempts=2, base_delay_seconds=0.0, max_delay_seconds=0.0)


class RecordingSink:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.states: list[tuple[str, JobState]] = []
        self.reports: list[JobRunReport] = []

    def on_state_change(self, job_name: str, state: JobState) -> None:
        with self.lock:
            self.states.append((job_name, state))

    def on_run_finished(self, report: JobRunReport) -> None:
        with self.lock:
            self.reports.append(report)


class Gate:
    """Blocks source reads until opened and tracks how many runs overlap."""

    def __init__(self) -> None:
        self.opened = threading.Event()
        self.entered = threading.Event()

    def __call__(self, _key: str) -> None:
        self.entered.set()
        assert self.opened.wait(timeout=10)


def runner_factory(job: MirrorJob) -> JobRunner:
    return JobRunner(job, ContentAddresser(), sleep=lambda _delay: None)


def gated_job(name: str, gate: Gate, **options) -> MirrorJob:
    source = MemoryEndpoint(f"{name}-src", {"item": b"payload"})
    source.read_hook = gate
    return MirrorJob(name=name, source=source, destination=MemoryEndpoint(f"{name}-dst"), retry=NO_WAIT, **options)


def plain_job(name: str, **options) -> MirrorJob:
    return MirrorJob(
        name=name,
        source=MemoryEndpoint(f"{name}-src", {"a": b"1", "b": b"2"}),
        destination=MemoryEndpoint(f"{name}-dst"),
        retry=NO_WAIT,
        **options,
    )


def test_concurrent_triggers_start_exactly_one_run() -> None:
    gate = Gate()
    scheduler = JobScheduler([gated_job("solo", gate)], runner_factory)
    barrier = threading.Barrier(8)
    results: list[TriggerResult] = []
    lock = threading.Lock()

    def fire() -> None:
        barrier.wait(timeout=5)
        outcome = scheduler.trigger("solo")
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=fire) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(TriggerResult.STARTED) == 1
    assert results.count(TriggerResult.SKIPPED) == 7
    assert gate.entered.wait(timeout=5)
    assert scheduler.status("solo").running is True

    gate.opened.set()
    assert scheduler.wait_until_idle("solo", timeout=10)
    status = scheduler.status("solo")
    assert status.run_count == 1
    assert status.skipped_triggers == 7
    assert status.state == JobState.IDLE
    assert status.last_report is not None and status.last_report.status == RunStatus.COMPLETED
    scheduler.stop(timeout=5)


def test_queue_policy_keeps_exactly_one_pending_run() -> None:
    gate = Gate()
    sink = RecordingSink()
    scheduler = JobScheduler([gated_job("queued", gate, overlap=OverlapPolicy.QUEUE)], runner_factory, sink=sink)

    assert scheduler.trigger("queued") == TriggerResult.STARTED
    assert gate.entered.wait(timeout=5)
    assert scheduler.trigger("queued") == TriggerResult.QUEUED
    assert scheduler.trigger("queued") == TriggerResult.QUEUED
    assert scheduler.status("queued").pending is True

    gate.opened.set()
    assert scheduler.wait_until_idle("queued", timeout=10)

    assert scheduler.status("queued").run_count == 2
    assert [report.trigger for report in sink.reports] == [RunTrigger.MANUAL, RunTrigger.QUEUED]
    assert sink.reports[1].noop == 1
    scheduler.stop(timeout=5)


def test_jobs_are_isolated_from_each_other() -> None:
    gate = Gate()
    scheduler = JobScheduler([gated_job("slow", gate), plain_job("fast")], runner_factory)

    scheduler.trigger("slow")
    assert gate.entered.wait(timeout=5)
    scheduler.trigger("fast")

    assert scheduler.wait_until_idle("fast", timeout=10)
    assert scheduler.status("fast").last_report.status == RunStatus.COMPLETED
    assert scheduler.status("slow").running is True

    gate.opened.set()
    assert scheduler.wait_until_idle("slow", timeout=10)
    scheduler.stop(timeout=5)


def test_listing_failure_moves_job_to_failed_and_spares_others() -> None:
    broken = MirrorJob(name="broken", source=BrokenListing("src"), destination=MemoryEndpoint("dst"), retry=NO_WAIT)
    scheduler = JobScheduler([broken, plain_job("healthy")], runner_factory)

    scheduler.trigger("broken")
    scheduler.trigger("healthy")
    assert scheduler.wait_all_idle(timeout=10)

    assert scheduler.status("broken").state == JobState.FAILED
    assert scheduler.status("broken").last_report.status == RunStatus.FAILED
    assert scheduler.status("healthy").state == JobState.IDLE
    scheduler.stop(timeout=5)


def test_pause_blocks_scheduled_triggers_but_not_manual_reruns() -> None:
    scheduler = JobScheduler([plain_job("paused")], runner_factory)
    scheduler.pause("paused")

    assert scheduler.trigger("paused", trigger=RunTrigger.SCHEDULE) == TriggerResult.PAUSED
    assert scheduler.trigger("paused") == TriggerResult.STARTED
    assert scheduler.wait_until_idle("paused", timeout=10)

    scheduler.resume("paused")
    assert scheduler.status("paused").paused is False
    scheduler.stop(timeout=5)


def test_disabled_and_unknown_jobs() -> None:
    scheduler = JobScheduler([plain_job("off", enabled=False)], runner_factory)

    assert scheduler.trigger("off") == TriggerResult.DISABLED
    with pytest.raises(JobNotFoundError):
        scheduler.trigger("missing")


def test_cancel_stops_dispatching_new_items() -> None:
    started = threading.Event()
    source = MemoryEndpoint("src", {f"k{n:03d}": b"x" for n in range(200)})

    def slow_read(_key: str) -> None:
        started.set()
        time.sleep(0.01)

    source.read_hook = slow_read
    job = MirrorJob(name="big", source=source, destination=MemoryEndpoint("dst"), concurrency=2, retry=NO_WAIT)
    scheduler = JobScheduler([job], runner_factory)

    scheduler.trigger("big")
    assert started.wait(timeout=5)
    assert scheduler.cancel("big") is True
    assert scheduler.wait_until_idle("big", timeout=10)

    report = scheduler.last_report("big")
    assert report.status == RunStatus.CANCELLED
    assert report.partial is True
    assert 0 < len(report.results) < 200
    assert scheduler.cancel("big") is False


def test_stop_cancels_in_flight_runs_within_the_grace_period() -> None:
    source = MemoryEndpoint("src", {f"k{n:03d}": b"x" for n in range(200)})
    started = threading.Event()

    def slow_read(_key: str) -> None:
        started.set()
        time.sleep(0.01)

    source.read_hook = slow_read
    job = MirrorJob(name="long", source=source, destination=MemoryEndpoint("dst"), concurrency=1, retry=NO_WAIT)
    scheduler = JobScheduler([job], runner_factory)
    scheduler.start()
    scheduler.trigger("long")
    assert started.wait(timeout=5)

    assert scheduler.stop(timeout=5) is True
    assert scheduler.last_report("long").status == RunStatus.CANCELLED
    assert scheduler.trigger("long") == TriggerResult.SKIPPED


@pytest.mark.integration
def test_interval_schedule_fires_repeatedly() -> None:
    sink = RecordingSink()
    job = plain_job("ticker", schedule=IntervalSchedule(0.05))
    scheduler = JobScheduler([job], runner_factory, sink=sink)
    scheduler.start()

    deadline = time.monotonic() + 5
    while time.monotonic() < deadline and len(sink.reports) < 2:
        time.sleep(0.02)
    scheduler.stop(timeout=5)

    assert len(sink.reports) >= 2
    assert all(report.trigger == RunTrigger.SCHEDULE for report in sink.reports)
    assert sink.reports[0].succeeded == 2


def test_run_on_start_triggers_immediately() -> None:
    sink = RecordingSink()
    scheduler = JobScheduler([plain_job("eager", run_on_start=True)], runner_factory, sink=sink)
    scheduler.start()
    assert scheduler.wait_until_idle("eager", timeout=10)
    scheduler.stop(timeout=5)

    assert sink.reports[0].trigger == RunTrigger.STARTUP
    assert ("eager", JobState.RUNNING) in sink.states


def test_reload_adds_replaces_and_removes_jobs() -> None:
    keep = plain_job("keep")
    scheduler = JobScheduler([keep, plain_job("drop")], runner_factory)
    scheduler.start()
    scheduler.trigger("keep")
    assert scheduler.wait_until_idle("keep", timeout=10)

    scheduler.reload([keep, plain_job("added")])

    assert scheduler.job_names() == ["added", "keep"]
    assert scheduler.status("keep").run_count == 1
    with pytest.raises(JobNotFoundError):
        scheduler.status("drop")
    assert scheduler.trigger("added") == TriggerResult.STARTED
    assert scheduler.wait_until_idle("added", timeout=10)
    scheduler.stop(timeout=5)


def test_trigger_queued_during_reload_runs_after_the_old_run() -> None:
    gate = Gate()
    sink = RecordingSink()
    job = gated_job("q", gate, overlap=OverlapPolicy.QUEUE)
    scheduler = JobScheduler([job], runner_factory, sink=sink)

    assert scheduler.trigger("q") == TriggerResult.STARTED
    assert gate.entered.wait(timeout=5)

    scheduler.reload([dataclasses.replace(job, concurrency=2)])
    assert scheduler.job("q").concurrency == 2
    assert scheduler.trigger("q") == TriggerResult.QUEUED

    gate.opened.set()
    assert scheduler.wait_until_idle("q", timeout=10)

    status = scheduler.status("q")
    assert status.pending is False
    assert status.run_count == 2
    assert status.state == JobState.IDLE
    assert [report.trigger for report in sink.reports] == [RunTrigger.MANUAL, RunTrigger.QUEUED]
    assert scheduler.stop(timeout=5) is True


def test_reload_of_running_job_goes_idle_without_a_queued_trigger() -> None:
    gate = Gate()
    job = gated_job("r", gate)
    scheduler = JobScheduler([job], runner_factory)

    scheduler.trigger("r")
    assert gate.entered.wait(timeout=5)
    scheduler.reload([dataclasses.replace(job, concurrency=3)])
    assert scheduler.status("r").running is True
    assert scheduler.trigger("r") == TriggerResult.SKIPPED

    gate.opened.set()
    assert scheduler.wait_until_idle("r", timeout=10)
    status = scheduler.status("r")
    assert status.run_count == 1
    assert status.last_report.status == RunStatus.COMPLETED
    scheduler.stop(timeout=5)
