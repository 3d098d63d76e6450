from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from mirrord.api.deps import get_daemon
from mirrord.daemon import MirrorDaemon
from mirrord.jobs.types import JobState

router = APIRouter(tags=["health"])


@router.get("/health")
def get_health(daemon: MirrorDaemon = Depends(get_daemon)) -> dict[str, object]:
    states = daemon.job_states()
    failed = sorted(name for name, state in states.items() if state == JobState.FAILED)
    return {
        "status": "degraded" if failed else "ok",
        "service": daemon.settings.app_name,
        "environment": daemon.settings.environment,
        "running": daemon.running,
        "jobs": {name: state.value for name, state in states.items()},
        "failed_jobs": failed,
        "timestamp": datetime.now(tz=timezone.utc),
    }
