from __future__ import annotations

import threading
from contextlib import asynccontextmanager
from pathlib import PurePath

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import PlainTextResponse

from mirrord.api.routes.health import router as health_router
from mirrord.api.routes.jobs import router as jobs_router
from mirrord.core.logging import configure_logging
from mirrord.daemon import MirrorDaemon
from mirrord.jobs.scheduler import JobNotFoundError
from mirrord.storage.local import LocalDirectory


class MirrorStaticFiles(StaticFiles):
    """Read-only view of a mirror destination that never exposes staging files."""

    def __init__(self, *, directory: str, hidden_dir: str):
        super().__init__(directory=directory, html=True, check_dir=False)
        self._hidden_dir = hidden_dir

    async def get_response(self, path: str, scope):  # type: ignore[no-untyped-def]
        parts = PurePath(path).parts
        if parts and parts[0] == self._hidden_dir:
            raise StarletteHTTPException(status_code=404)
        return await super().get_response(path, scope)


class ServedMirrors:
    """Routes `/mirrors/{name}` to the job's current destination on every request."""

    def __init__(self, daemon: MirrorDaemon):
        self._daemon = daemon
        self._apps: dict[tuple[str, str, str], MirrorStaticFiles] = {}
        self._lock = threading.Lock()

    def _resolve(self, name: str) -> MirrorStaticFiles | None:
        try:
            job = self._daemon.job(name)
        except JobNotFoundError:
            return None
        destination = job.destination
        if not job.serve or not isinstance(destination, LocalDirectory):
            return None
        key = (name, destination.root.as_posix(), destination.staging_dir_name)
        with self._lock:
            app = self._apps.get(key)
            if app is None:
                app = MirrorStaticFiles(directory=key[1], hidden_dir=key[2])
                self._apps[key] = app
            return app

    async def __call__(self, scope, receive, send):  # type: ignore[no-untyped-def]
        app = self._resolve(scope.get("path_params", {}).get("name", ""))
        if app is None:
            await PlainTextResponse("Not Found", status_code=404)(scope, receive, send)
            return
        await app(scope, receive, send)


def create_app(daemon: MirrorDaemon | None = None) -> FastAPI:
    daemon = daemon or MirrorDaemon.from_settings()

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        configure_logging(daemon.settings.log_level, daemon.settings.log_format)
        daemon.start()
        try:
            yield
        finally:
            daemon.shutdown()

    app = FastAPI(title=daemon.settings.app_name, lifespan=lifespan)
    app.state.daemon = daemon
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(jobs_router, prefix="/api/v1")

    app.mount("/mirrors/{name}", ServedMirrors(daemon), name="mirrors")
    return app
