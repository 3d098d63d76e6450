from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from mirrord.db.models import JobRun
from mirrord.jobs.types import JobRunReport, transfer_result_to_dict


class RunHistoryService:
    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def record(self, report: JobRunReport) -> None:
        with self._session_factory() as session:
            session.add(
                JobRun(
                    id=report.run_id,
                    job_name=report.job_name,
                    trigger=report.trigger,
                    status=report.status,
                    partial=report.partial,
                    planned_count=report.planned,
                    succeeded_count=report.succeeded,
                    failed_count=report.failed,
                    skipped_count=report.skipped,
                    noop_count=report.noop,
                    deleted_count=report.deleted,
                    bytes_transferred=report.bytes_transferred,
                    failures=[transfer_result_to_dict(item) for item in report.failures],
                    error_code=report.error_code,
                    error_message=report.error_message,
                    started_at=report.started_at,
                    finished_at=report.finished_at,
                    duration_seconds=report.duration_seconds,
                )
            )
            session.commit()

    def list_runs(self, job_name: str, *, limit: int = 20) -> list[dict[str, Any]]:
        bounded_limit = max(1, min(limit, 200))
        with self._session_factory() as session:
            rows = session.scalars(
                select(JobRun)
                .where(JobRun.job_name == job_name)
                .order_by(JobRun.started_at.desc(), JobRun.id.desc())
                .limit(bounded_limit)
            ).all()
            return [run_to_dict(row) for row in rows]

    def latest(self, job_name: str) -> dict[str, Any] | None:
        runs = self.list_runs(job_name, limit=1)
        return runs[0] if runs else None


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def run_to_dict(row: JobRun) -> dict[str, Any]:
    return {
        "run_id": row.id,
        "job_name": row.job_name,
        "trigger": row.trigger.value,
        "status": row.status.value,
        "partial": row.partial,
        "planned": row.planned_count,
        "succeeded": row.succeeded_count,
        "failed": row.failed_count,
        "skipped": row.skipped_count,
        "noop": row.noop_count,
        "deleted": row.deleted_count,
        "bytes_transferred": row.bytes_transferred,
        "started_at": _coerce_utc(row.started_at),
        "finished_at": _coerce_utc(row.finished_at),
        "duration_seconds": row.duration_seconds,
        "error_code": row.error_code,
        "error_message": row.error_message,
        "failures": list(row.failures or []),
    }
