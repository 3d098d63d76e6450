from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel


class TransferResultResponse(BaseModel):
    key: str
    action: str
    outcome: str
    bytes_transferred: int
    elapsed_seconds: float
    attempts: int
    fingerprint: str | None
    error_code: str | None
    error_message: str | None


class RunReportResponse(BaseModel):
    run_id: str
    job_name: str
    trigger: str
    status: str
    partial: bool
    planned: int
    succeeded: int
    failed: int
    skipped: int
    noop: int
    deleted: int
    bytes_transferred: int
    started_at: datetime
    finished_at: datetime
    duration_seconds: float
    error_code: str | None
    error_message: str | None
    failures: list[dict[str, Any]]
    results: list[TransferResultResponse] | None = None


class JobStatusResponse(BaseModel):
    name: str
    state: str
    enabled: bool
    paused: bool
    running: bool
    pending: bool
    schedule: str | None
    next_run_at: datetime | None
    run_count: int
    skipped_triggers: int
    last_report: RunReportResponse | None
    source: str
    destination: str
    deletion: str
    concurrency: int
    serve_path: str | None


class JobListResponse(BaseModel):
    items: list[JobStatusResponse]


class RunHistoryResponse(BaseModel):
    items: list[RunReportResponse]


class TriggerResponse(BaseModel):
    name: str
    result: str


class ControlResponse(BaseModel):
    name: str
    state: str
    paused: bool
    running: bool
