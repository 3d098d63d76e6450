from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable
from uuid import uuid4

from mirrord.core.errors import JobLockedError, error_code
from mirrord.db.models import RunStatus, RunTrigger
from mirrord.jobs.events import JobEventSink, LoggingEventSink
from mirrord.jobs.runner import JobRunner
from mirrord.jobs.types import (
    JobRunReport,
    JobState,
    JobStatusSnapshot,
    MirrorJob,
    OverlapPolicy,
    TriggerResult,
)

logger = logging.getLogger(__name__)

RunnerFactory = Callable[[MirrorJob], JobRunner]


class JobNotFoundError(KeyError):
    pass


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(eq=False)
class _JobHandle:
    job: MirrorJob
    runner: JobRunner
    condition: threading.Condition = field(default_factory=threading.Condition)
    state: JobState = JobState.IDLE
    running: bool = False
    pending_trigger: RunTrigger | None = None
    paused: bool = False
    retired: bool = False
    run_count: int = 0
    skipped_triggers: int = 0
    last_report: JobRunReport | None = None
    next_run_at: datetime | None = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    wake: threading.Event = field(default_factory=threading.Event)
    supervisor: threading.Thread | None = None
    run_thread: threading.Thread | None = None


class JobScheduler:
    """Owns the configured mirror jobs and decides when each one runs.

    Every scheduled job gets a supervisor thread that sleeps until the next
    fire time and then calls ``trigger``. A trigger starts a run thread only
    when none is in flight for that job; otherwise the job's overlap policy
    either drops the trigger or keeps exactly one pending run. All state of a
    job lives in its handle and is guarded by the handle's condition, so jobs
    never contend with each other.
    """

    def __init__(
        self,
        jobs: Iterable[MirrorJob],
        runner_factory: RunnerFactory,
        *,
        sink: JobEventSink | None = None,
    ):
        self._runner_factory = runner_factory
        self._sink: JobEventSink = sink or LoggingEventSink()
        self._handles: dict[str, _JobHandle] = {}
        self._retired: list[_JobHandle] = []
        self._registry_lock = threading.Lock()
        self._stopping = threading.Event()
        self._started = False
        for job in jobs:
            if job.name in self._handles:
                raise ValueError(f"Duplicate job name: {job.name}")
            self._handles[job.name] = _JobHandle(job=job, runner=runner_factory(job))

    # lifecycle

    def start(self) -> None:
        with self._registry_lock:
            if self._started:
                return
            self._started = True
            handles = list(self._handles.values())
        for handle in handles:
            self._arm(handle)
        for handle in handles:
            if handle.job.enabled and handle.job.run_on_start:
                self.trigger(handle.job.name, trigger=RunTrigger.STARTUP)
        logger.info("Scheduler started with %d jobs", len(handles))

    def stop(self, timeout: float | None = None) -> bool:
        """Cancel in-flight runs and wait for every job thread to exit.

        Returns False when some thread was still alive at the deadline.
        """
        self._stopping.set()
        with self._registry_lock:
            handles = list(self._handles.values()) + self._retired
        for handle in handles:
            with handle.condition:
                handle.pending_trigger = None
                handle.cancel_event.set()
                handle.wake.set()
                handle.condition.notify_all()

        deadline = None if timeout is None else time.monotonic() + timeout
        clean = True
        for handle in handles:
            for thread in (handle.run_thread, handle.supervisor):
                if thread is None or thread is threading.current_thread():
                    continue
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                thread.join(remaining)
                if thread.is_alive():
                    clean = False
        if not clean:
            logger.warning("Scheduler stopped with runs still in flight after %.1fs", timeout or 0.0)
        else:
            logger.info("Scheduler stopped")
        return clean

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    # triggers

    def _handle(self, name: str) -> _JobHandle:
        with self._registry_lock:
            handle = self._handles.get(name)
        if handle is None:
            raise JobNotFoundError(name)
        return handle

    def job_names(self) -> list[str]:
        with self._registry_lock:
            return sorted(self._handles)

    def job(self, name: str) -> MirrorJob:
        return self._handle(name).job

    def trigger(self, name: str, *, trigger: RunTrigger = RunTrigger.MANUAL) -> TriggerResult:
        handle = self._handle(name)
        with handle.condition:
            if self._stopping.is_set() or handle.retired:
                return TriggerResult.SKIPPED
            if not handle.job.enabled:
                return TriggerResult.DISABLED
            if handle.paused and trigger == RunTrigger.SCHEDULE:
                return TriggerResult.PAUSED

            if handle.running:
                if handle.job.overlap == OverlapPolicy.QUEUE:
                    if handle.pending_trigger is None:
                        handle.pending_trigger = trigger
                        logger.info("Queued a %s run behind the active one", trigger.value, extra={"job": name})
                    return TriggerResult.QUEUED
                handle.skipped_triggers += 1
                logger.info(
                    "Skipped %s trigger because a run is already in progress",
                    trigger.value,
                    extra={"job": name, "trigger": trigger.value},
                )
                return TriggerResult.SKIPPED

            handle.running = True
            handle.state = JobState.RUNNING
            handle.cancel_event = threading.Event()
            handle.run_thread = threading.Thread(
                target=self._run_loop,
                args=(handle, trigger),
                name=f"mirror-run-{name}",
                daemon=True,
            )
            handle.run_thread.start()
        self._sink.on_state_change(name, JobState.RUNNING)
        return TriggerResult.STARTED

    def _run_loop(self, handle: _JobHandle, trigger: RunTrigger) -> None:
        while True:
            report = self._run_once(handle, trigger)
            if report is not None:
                with handle.condition:
                    handle.last_report = report
                    handle.run_count += 1
                # sinks see the report before waiters see the job go idle
                self._sink.on_run_finished(report)
            with handle.condition:
                next_trigger = handle.pending_trigger
                handle.pending_trigger = None
                finished = next_trigger is None or self._stopping.is_set() or handle.retired
                if not finished:
                    handle.cancel_event = threading.Event()
                    trigger = RunTrigger.QUEUED
                    handle.condition.notify_all()
                else:
                    handle.running = False
                    if report is not None:
                        handle.state = JobState.FAILED if report.status == RunStatus.FAILED else JobState.IDLE
                    elif handle.state == JobState.RUNNING:
                        handle.state = JobState.IDLE
                    state = handle.state
                    handle.condition.notify_all()
            if finished:
                self._sink.on_state_change(handle.job.name, state)
                return

    def _run_once(self, handle: _JobHandle, trigger: RunTrigger) -> JobRunReport | None:
        job = handle.job
        try:
            return handle.runner.run(trigger=trigger, cancel_event=handle.cancel_event)
        except JobLockedError as exc:
            with handle.condition:
                handle.skipped_triggers += 1
            logger.info("Skipped run: %s", exc, extra={"job": job.name, "trigger": trigger.value})
            return None
        except Exception as exc:
            logger.exception("Run of %s crashed", job.name, extra={"job": job.name, "trigger": trigger.value})
            now = _now()
            return JobRunReport(
                run_id=str(uuid4()),
                job_name=job.name,
                trigger=trigger,
                status=RunStatus.FAILED,
                started_at=now,
                finished_at=now,
                error_code=error_code(exc),
                error_message=str(exc),
            )

    # supervision

    def _arm(self, handle: _JobHandle) -> None:
        if not handle.job.enabled or handle.job.schedule is None:
            return
        handle.supervisor = threading.Thread(
            target=self._supervise,
            args=(handle,),
            name=f"mirror-supervisor-{handle.job.name}",
            daemon=True,
        )
        handle.supervisor.start()

    def _supervise(self, handle: _JobHandle) -> None:
        schedule = handle.job.schedule
        if schedule is None:
            return
        fire_at = schedule.next_after(_now())
        while not self._stopping.is_set() and not handle.retired:
            with handle.condition:
                handle.next_run_at = fire_at
            delay = (fire_at - _now()).total_seconds()
            if delay > 0 and handle.wake.wait(delay):
                handle.wake.clear()
                continue
            if self._stopping.is_set() or handle.retired:
                break
            self.trigger(handle.job.name, trigger=RunTrigger.SCHEDULE)
            fire_at = schedule.next_after(max(fire_at, _now()))
        with handle.condition:
            handle.next_run_at = None

    # control

    def pause(self, name: str) -> None:
        handle = self._handle(name)
        with handle.condition:
            handle.paused = True
        logger.info("Paused", extra={"job": name})

    def resume(self, name: str) -> None:
        handle = self._handle(name)
        with handle.condition:
            handle.paused = False
        logger.info("Resumed", extra={"job": name})

    def cancel(self, name: str) -> bool:
        handle = self._handle(name)
        with handle.condition:
            handle.pending_trigger = None
            if not handle.running:
                return False
            handle.cancel_event.set()
        logger.info("Cancellation requested", extra={"job": name})
        return True

    def reload(self, jobs: Iterable[MirrorJob]) -> None:
        """Replace the job set. Runs in flight finish under their old definition."""
        incoming = {}
        for job in jobs:
            if job.name in incoming:
                raise ValueError(f"Duplicate job name: {job.name}")
            incoming[job.name] = job

        with self._registry_lock:
            current = dict(self._handles)
            started = self._started

        retired = [handle for name, handle in current.items() if name not in incoming]
        for handle in retired:
            with handle.condition:
                handle.retired = True
                handle.pending_trigger = None
                handle.cancel_event.set()
                handle.wake.set()

        replaced: list[_JobHandle] = []
        next_handles: dict[str, _JobHandle] = {}
        for name, job in incoming.items():
            old = current.get(name)
            if old is not None and old.job == job:
                next_handles[name] = old
                continue
            handle = _JobHandle(job=job, runner=self._runner_factory(job))
            if old is not None:
                with old.condition:
                    old.retired = True
                    old.pending_trigger = None
                    old.wake.set()
                    handle.paused = old.paused
                    handle.last_report = old.last_report
                    handle.run_count = old.run_count
                    handle.skipped_triggers = old.skipped_triggers
                    if old.running:
                        # the new handle waits for the old run before its first trigger
                        handle.running = True
                        handle.state = JobState.RUNNING
                        handle.run_thread = threading.Thread(
                            target=self._adopt,
                            args=(old, handle),
                            name=f"mirror-adopt-{name}",
                            daemon=True,
                        )
            next_handles[name] = handle
            replaced.append(handle)

        with self._registry_lock:
            self._handles = next_handles
            self._retired = [handle for handle in self._retired if handle.running]
            self._retired.extend(retired)
            self._retired.extend(current[handle.job.name] for handle in replaced if handle.job.name in current)

        for handle in replaced:
            if handle.run_thread is not None and not handle.run_thread.is_alive():
                handle.run_thread.start()
            if started:
                self._arm(handle)
        logger.info(
            "Reloaded jobs: %d kept, %d replaced or added, %d removed",
            len(next_handles) - len(replaced),
            len(replaced),
            len(retired),
        )

    def _adopt(self, old: _JobHandle, new: _JobHandle) -> None:
        with old.condition:
            while old.running:
                old.condition.wait()
            report = old.last_report
        with new.condition:
            new.last_report = report
            new.run_count = old.run_count
            queued = new.pending_trigger is not None and not self._stopping.is_set() and not new.retired
            new.pending_trigger = None
            if queued:
                new.cancel_event = threading.Event()
            else:
                new.running = False
                failed = report is not None and report.status == RunStatus.FAILED
                new.state = JobState.FAILED if failed else JobState.IDLE
                state = new.state
            new.condition.notify_all()
        if queued:
            # a trigger that arrived during the reload runs under the new definition
            self._run_loop(new, RunTrigger.QUEUED)
        else:
            self._sink.on_state_change(new.job.name, state)

    # queries

    def status(self, name: str) -> JobStatusSnapshot:
        handle = self._handle(name)
        with handle.condition:
            schedule = handle.job.schedule
            return JobStatusSnapshot(
                name=handle.job.name,
                state=handle.state,
                enabled=handle.job.enabled,
                paused=handle.paused,
                running=handle.running,
                pending=handle.pending_trigger is not None,
                schedule=None if schedule is None else schedule.describe(),
                next_run_at=handle.next_run_at,
                run_count=handle.run_count,
                skipped_triggers=handle.skipped_triggers,
                last_report=handle.last_report,
            )

    def statuses(self) -> list[JobStatusSnapshot]:
        return [self.status(name) for name in self.job_names()]

    def last_report(self, name: str) -> JobRunReport | None:
        handle = self._handle(name)
        with handle.condition:
            return handle.last_report

    def wait_until_idle(self, name: str, timeout: float | None = None) -> bool:
        handle = self._handle(name)
        with handle.condition:
            return handle.condition.wait_for(lambda: not handle.running, timeout=timeout)

    def wait_all_idle(self, timeout: float | None = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        for name in self.job_names():
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if not self.wait_until_idle(name, remaining):
                return False
        return True
