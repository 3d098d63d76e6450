from __future__ import annotations

import logging
import threading
from typing import Iterable, Protocol

from mirrord.db.models import RunStatus
from mirrord.jobs.history import RunHistoryService
from mirrord.jobs.types import JobRunReport, JobState

logger = logging.getLogger(__name__)


class JobEventSink(Protocol):
    def on_state_change(self, job_name: str, state: JobState) -> None: ...

    def on_run_finished(self, report: JobRunReport) -> None: ...


class LoggingEventSink:
    def on_state_change(self, job_name: str, state: JobState) -> None:
        logger.debug("Job %s is now %s", job_name, state.value, extra={"job": job_name})

    def on_run_finished(self, report: JobRunReport) -> None:
        level = logging.INFO if report.status == RunStatus.COMPLETED else logging.WARNING
        logger.log(
            level,
            "Run %s of %s finished %s: %d planned, %d ok, %d failed, %d skipped, %d unchanged, %d bytes in %.2fs",
            report.run_id,
            report.job_name,
            report.status.value,
            report.planned,
            report.succeeded,
            report.failed,
            report.skipped,
            report.noop,
            report.bytes_transferred,
            report.duration_seconds,
            extra={"job": report.job_name, "run_id": report.run_id, "trigger": report.trigger.value},
        )


class HistoryEventSink:
    def __init__(self, history: RunHistoryService):
        self._history = history

    def on_state_change(self, job_name: str, state: JobState) -> None:
        return None

    def on_run_finished(self, report: JobRunReport) -> None:
        self._history.record(report)


class CompositeEventSink:
    """Fans events out to several sinks; one failing sink does not starve the rest."""

    def __init__(self, sinks: Iterable[JobEventSink]):
        self._sinks = list(sinks)
        self._lock = threading.Lock()

    def on_state_change(self, job_name: str, state: JobState) -> None:
        with self._lock:
            for sink in self._sinks:
                try:
                    sink.on_state_change(job_name, state)
                except Exception:
                    logger.exception("Event sink %r failed on state change", sink, extra={"job": job_name})

    def on_run_finished(self, report: JobRunReport) -> None:
        with self._lock:
            for sink in self._sinks:
                try:
                    sink.on_run_finished(report)
                except Exception:
                    logger.exception(
                        "Event sink %r failed to record run %s",
                        sink,
                        report.run_id,
                        extra={"job": report.job_name, "run_id": report.run_id},
                    )
