from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Sequence

import uvicorn

from mirrord.api.app import create_app
from mirrord.core.config import Settings, get_settings
from mirrord.core.errors import ConfigurationError, MirrorError
from mirrord.core.logging import configure_logging
from mirrord.daemon import MirrorDaemon, build_addresser
from mirrord.db.init_db import initialize_database
from mirrord.db.models import RunStatus
from mirrord.db.session import get_session_factory
from mirrord.jobs.config import MirrorFile, load_mirror_file
from mirrord.jobs.history import RunHistoryService
from mirrord.jobs.lock_service import JobLockService
from mirrord.jobs.runner import JobRunner
from mirrord.jobs.types import report_to_dict

logger = logging.getLogger(__name__)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="mirror", description="Configuration-driven content mirroring daemon")
    parser.add_argument("--config", default=None, help="Mirror file path (default: MIRRORD_CONFIG_PATH or ./mirror.yml)")
    parser.add_argument("--log-level", default=None, help="Override MIRRORD_LOG_LEVEL")
    parser.add_argument("--log-format", default=None, choices=("text", "json"), help="Override MIRRORD_LOG_FORMAT")

    commands = parser.add_subparsers(dest="command")

    run = commands.add_parser("run", help="Run the daemon (default)")
    run.add_argument("--no-api", action="store_true", help="Do not start the HTTP API")
    run.add_argument("--host", default=None, help="API bind host")
    run.add_argument("--port", type=int, default=None, help="API bind port")

    commands.add_parser("check", help="Validate the mirror file and exit")

    plan = commands.add_parser("plan", help="Print what a run of one mirror would do")
    plan.add_argument("name", help="Mirror name")

    sync = commands.add_parser("sync", help="Run one mirror once in the foreground")
    sync.add_argument("name", help="Mirror name")
    sync.add_argument("--results", action="store_true", help="Include per-item results in the report")

    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "run"
        args.no_api = False
        args.host = None
        args.port = None
    return args


def _settings(args: argparse.Namespace) -> Settings:
    settings = get_settings()
    overrides: dict[str, object] = {}
    if args.config:
        overrides["config_path"] = args.config
    if args.log_level:
        overrides["log_level"] = args.log_level
    if args.log_format:
        overrides["log_format"] = args.log_format
    if overrides:
        settings = Settings(**{**settings.model_dump(), **overrides})
    return settings


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, default=str))


def cmd_check(settings: Settings) -> int:
    mirror_file = load_mirror_file(settings.config_path, settings)
    _print_json(
        {
            "config": str(mirror_file.path),
            "mirrors": [
                {
                    "name": job.name,
                    "source": job.source.describe(),
                    "destination": job.destination.describe(),
                    "schedule": None if job.schedule is None else job.schedule.describe(),
                    "enabled": job.enabled,
                    "deletion": job.deletion.value,
                }
                for job in mirror_file.jobs
            ],
        }
    )
    return 0


def _runner(settings: Settings, mirror_file: MirrorFile, name: str) -> JobRunner:
    initialize_database()
    session_factory = get_session_factory()
    return JobRunner(
        mirror_file.job(name),
        build_addresser(settings, session_factory),
        lock_service=JobLockService(session_factory, ttl_seconds=settings.job_lock_ttl_seconds),
        heartbeat_seconds=settings.job_lock_heartbeat_seconds,
    )


def cmd_plan(settings: Settings, name: str) -> int:
    mirror_file = load_mirror_file(settings.config_path, settings)
    transfer_plan = _runner(settings, mirror_file, name).build_plan()
    _print_json(
        {
            "name": name,
            "add": [item.key for item in transfer_plan.to_add],
            "update": [item.key for item in transfer_plan.to_update],
            "delete": [item.key for item in transfer_plan.to_delete],
            "noop": transfer_plan.noop_count,
        }
    )
    return 0


def cmd_sync(settings: Settings, name: str, *, include_results: bool) -> int:
    mirror_file = load_mirror_file(settings.config_path, settings)
    runner = _runner(settings, mirror_file, name)
    report = runner.run()
    RunHistoryService(get_session_factory()).record(report)
    _print_json(report_to_dict(report, include_results=include_results))
    return 0 if report.status == RunStatus.COMPLETED else 1


def cmd_run(settings: Settings, args: argparse.Namespace) -> int:
    daemon = MirrorDaemon.from_settings(settings)
    if args.no_api or not settings.api_enabled:
        daemon.run_forever()
        return 0

    uvicorn.run(
        create_app(daemon),
        host=args.host or settings.api_host,
        port=args.port or settings.api_port,
        log_config=None,
    )
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        settings = _settings(args)
    except ValueError as exc:
        print(f"Invalid settings: {exc}", file=sys.stderr)
        return 2
    configure_logging(settings.log_level, settings.log_format)

    try:
        if args.command == "check":
            return cmd_check(settings)
        if args.command == "plan":
            return cmd_plan(settings, args.name)
        if args.command == "sync":
            return cmd_sync(settings, args.name, include_results=args.results)
        return cmd_run(settings, args)
    except ConfigurationError as exc:
        logger.error("%s", exc)
        return 2
    except MirrorError as exc:
        logger.error("%s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
