from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from mirrord.api.deps import get_daemon, require_admin
from mirrord.api.schemas.jobs import (
    ControlResponse,
    JobListResponse,
    JobStatusResponse,
    RunHistoryResponse,
    RunReportResponse,
    TriggerResponse,
)
from mirrord.daemon import MirrorDaemon
from mirrord.jobs.scheduler import JobNotFoundError
from mirrord.jobs.types import JobStatusSnapshot, TriggerResult, report_to_dict, status_to_dict

router = APIRouter(prefix="/jobs", tags=["jobs"])


def _job_response(daemon: MirrorDaemon, snapshot: JobStatusSnapshot) -> JobStatusResponse:
    job = daemon.job(snapshot.name)
    payload = status_to_dict(snapshot)
    payload.update(
        source=job.source.describe(),
        destination=job.destination.describe(),
        deletion=job.deletion.value,
        concurrency=job.concurrency,
        serve_path=f"/mirrors/{job.name}/" if job.serve else None,
    )
    return JobStatusResponse.model_validate(payload)


def _snapshot(daemon: MirrorDaemon, name: str) -> JobStatusSnapshot:
    try:
        return daemon.status(name)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job not found: {name}") from exc


def _control_response(snapshot: JobStatusSnapshot) -> ControlResponse:
    return ControlResponse(
        name=snapshot.name,
        state=snapshot.state.value,
        paused=snapshot.paused,
        running=snapshot.running,
    )


@router.get("", response_model=JobListResponse)
def list_jobs(daemon: MirrorDaemon = Depends(get_daemon)) -> JobListResponse:
    return JobListResponse(items=[_job_response(daemon, snapshot) for snapshot in daemon.statuses()])


@router.get("/{name}", response_model=JobStatusResponse)
def get_job(name: str, daemon: MirrorDaemon = Depends(get_daemon)) -> JobStatusResponse:
    return _job_response(daemon, _snapshot(daemon, name))


@router.get("/{name}/report", response_model=RunReportResponse)
def get_latest_report(
    name: str,
    include_results: bool = Query(default=False),
    daemon: MirrorDaemon = Depends(get_daemon),
) -> RunReportResponse:
    report = _snapshot(daemon, name).last_report
    if report is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {name} has not run yet")
    return RunReportResponse.model_validate(report_to_dict(report, include_results=include_results))


@router.get("/{name}/runs", response_model=RunHistoryResponse)
def list_runs(
    name: str,
    limit: int = Query(default=20, ge=1, le=200),
    daemon: MirrorDaemon = Depends(get_daemon),
) -> RunHistoryResponse:
    _snapshot(daemon, name)
    if daemon.history is None:
        return RunHistoryResponse(items=[])
    runs = daemon.history.list_runs(name, limit=limit)
    return RunHistoryResponse(items=[RunReportResponse.model_validate(run) for run in runs])


@router.post("/{name}/run", response_model=TriggerResponse, dependencies=[Depends(require_admin)])
def run_job(name: str, daemon: MirrorDaemon = Depends(get_daemon)) -> TriggerResponse:
    _snapshot(daemon, name)
    result = daemon.request_rerun(name)
    if result == TriggerResult.DISABLED:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Job {name} is disabled")
    return TriggerResponse(name=name, result=result.value)


@router.post("/{name}/pause", response_model=ControlResponse, dependencies=[Depends(require_admin)])
def pause_job(name: str, daemon: MirrorDaemon = Depends(get_daemon)) -> ControlResponse:
    _snapshot(daemon, name)
    daemon.pause(name)
    return _control_response(daemon.status(name))


@router.post("/{name}/resume", response_model=ControlResponse, dependencies=[Depends(require_admin)])
def resume_job(name: str, daemon: MirrorDaemon = Depends(get_daemon)) -> ControlResponse:
    _snapshot(daemon, name)
    daemon.resume(name)
    return _control_response(daemon.status(name))


@router.post("/{name}/cancel", response_model=ControlResponse, dependencies=[Depends(require_admin)])
def cancel_job(name: str, daemon: MirrorDaemon = Depends(get_daemon)) -> ControlResponse:
    _snapshot(daemon, name)
    if not daemon.cancel(name):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Job {name} has no run in progress")
    return _control_response(daemon.status(name))
