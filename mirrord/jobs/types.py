from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from croniter import croniter

from mirrord.content.types import Fingerprint
from mirrord.db.models import RunStatus, RunTrigger
from mirrord.storage.base import DestinationEndpoint, SourceEndpoint


class DeletionPolicy(str, Enum):
    MIRROR = "mirror"
    APPEND_ONLY = "append-only"


class DeleteMode(str, Enum):
    BEST_EFFORT = "best-effort"
    TRANSACTIONAL = "transactional"


class OverlapPolicy(str, Enum):
    SKIP = "skip"
    QUEUE = "queue"


class JobState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    FAILED = "failed"


class TransferAction(str, Enum):
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"


class TransferOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED_RETRYABLE = "failed-retryable"
    FAILED_FATAL = "failed-fatal"
    SKIPPED = "skipped"


class TriggerResult(str, Enum):
    STARTED = "started"
    QUEUED = "queued"
    SKIPPED = "skipped"
    PAUSED = "paused"
    DISABLED = "disabled"


@dataclass(frozen=True, slots=True)
class IntervalSchedule:
    seconds: float

    def __post_init__(self) -> None:
        if self.seconds <= 0:
            raise ValueError("Interval must be greater than zero seconds")

    def next_after(self, moment: datetime) -> datetime:
        return moment + timedelta(seconds=self.seconds)

    def describe(self) -> str:
        return f"every {self.seconds:g}s"


@dataclass(frozen=True, slots=True)
class CronSchedule:
    """Five-field cron, or six fields with seconds first (`sec min hour dom mon dow`)."""

    expression: str

    def __post_init__(self) -> None:
        fields = len(self.expression.split())
        if fields not in (5, 6):
            raise ValueError(
                f"Invalid cron expression: {self.expression} (use 5 fields, or 6 with seconds first)"
            )
        try:
            croniter(self.expression, datetime.now(tz=timezone.utc), second_at_beginning=self.seconds_first)
        except (ValueError, KeyError) as exc:
            raise ValueError(f"Invalid cron expression: {self.expression}") from exc

    @property
    def seconds_first(self) -> bool:
        return len(self.expression.split()) == 6

    def next_after(self, moment: datetime) -> datetime:
        return croniter(self.expression, moment, second_at_beginning=self.seconds_first).get_next(datetime)

    def describe(self) -> str:
        return f"cron {self.expression}"


Schedule = IntervalSchedule | CronSchedule


@dataclass(frozen=True, slots=True)
class RetrySettings:
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0


@dataclass(frozen=True)
class MirrorJob:
    name: str
    source: SourceEndpoint
    destination: DestinationEndpoint
    schedule: Schedule | None = None
    concurrency: int = 4
    deletion: DeletionPolicy = DeletionPolicy.APPEND_ONLY
    delete_mode: DeleteMode = DeleteMode.BEST_EFFORT
    allow_empty_source: bool = False
    overlap: OverlapPolicy = OverlapPolicy.SKIP
    enabled: bool = True
    retry: RetrySettings = field(default_factory=RetrySettings)
    serve: bool = False
    run_on_start: bool = False

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ValueError("MirrorJob name cannot be blank")
        if self.concurrency < 1:
            raise ValueError(f"MirrorJob {self.name}: concurrency must be >= 1")
        if self.retry.max_attempts < 1:
            raise ValueError(f"MirrorJob {self.name}: retry.max_attempts must be >= 1")


@dataclass(frozen=True, slots=True)
class TransferResult:
    key: str
    action: TransferAction
    outcome: TransferOutcome
    bytes_transferred: int = 0
    elapsed_seconds: float = 0.0
    attempts: int = 0
    fingerprint: Fingerprint | None = None
    error_code: str | None = None
    error_message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == TransferOutcome.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.outcome in {TransferOutcome.FAILED_RETRYABLE, TransferOutcome.FAILED_FATAL}


@dataclass(slots=True)
class JobRunReport:
    run_id: str
    job_name: str
    trigger: RunTrigger
    status: RunStatus
    started_at: datetime
    finished_at: datetime
    planned: int = 0
    noop: int = 0
    results: list[TransferResult] = field(default_factory=list)
    error_code: str | None = None
    error_message: str | None = None

    @property
    def partial(self) -> bool:
        return self.status == RunStatus.CANCELLED

    @property
    def duration_seconds(self) -> float:
        return max(0.0, (self.finished_at - self.started_at).total_seconds())

    @property
    def succeeded(self) -> int:
        return sum(1 for item in self.results if item.succeeded)

    @property
    def failed(self) -> int:
        return sum(1 for item in self.results if item.failed)

    @property
    def skipped(self) -> int:
        return sum(1 for item in self.results if item.outcome == TransferOutcome.SKIPPED)

    @property
    def deleted(self) -> int:
        return sum(1 for item in self.results if item.succeeded and item.action == TransferAction.DELETE)

    @property
    def bytes_transferred(self) -> int:
        return sum(item.bytes_transferred for item in self.results)

    @property
    def failures(self) -> list[TransferResult]:
        return [item for item in self.results if item.failed]

    def result_for(self, key: str) -> TransferResult | None:
        for item in self.results:
            if item.key == key:
                return item
        return None


@dataclass(frozen=True, slots=True)
class JobStatusSnapshot:
    name: str
    state: JobState
    enabled: bool
    paused: bool
    running: bool
    pending: bool
    schedule: str | None
    next_run_at: datetime | None
    run_count: int
    skipped_triggers: int
    last_report: JobRunReport | None


def transfer_result_to_dict(result: TransferResult) -> dict[str, Any]:
    return {
        "key": result.key,
        "action": result.action.value,
        "outcome": result.outcome.value,
        "bytes_transferred": result.bytes_transferred,
        "elapsed_seconds": result.elapsed_seconds,
        "attempts": result.attempts,
        "fingerprint": None if result.fingerprint is None else str(result.fingerprint),
        "error_code": result.error_code,
        "error_message": result.error_message,
    }


def report_to_dict(report: JobRunReport, *, include_results: bool = False) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "run_id": report.run_id,
        "job_name": report.job_name,
        "trigger": report.trigger.value,
        "status": report.status.value,
        "partial": report.partial,
        "planned": report.planned,
        "succeeded": report.succeeded,
        "failed": report.failed,
        "skipped": report.skipped,
        "noop": report.noop,
        "deleted": report.deleted,
        "bytes_transferred": report.bytes_transferred,
        "started_at": report.started_at,
        "finished_at": report.finished_at,
        "duration_seconds": report.duration_seconds,
        "error_code": report.error_code,
        "error_message": report.error_message,
        "failures": [transfer_result_to_dict(item) for item in report.failures],
    }
    if include_results:
        payload["results"] = [transfer_result_to_dict(item) for item in report.results]
    return payload


def status_to_dict(snapshot: JobStatusSnapshot) -> dict[str, Any]:
    return {
        "name": snapshot.name,
        "state": snapshot.state.value,
        "enabled": snapshot.enabled,
        "paused": snapshot.paused,
        "running": snapshot.running,
        "pending": snapshot.pending,
        "schedule": snapshot.schedule,
        "next_run_at": snapshot.next_run_at,
        "run_count": snapshot.run_count,
        "skipped_triggers": snapshot.skipped_triggers,
        "last_report": None if snapshot.last_report is None else report_to_dict(snapshot.last_report),
    }
