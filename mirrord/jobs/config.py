from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, PositiveInt, ValidationError, field_validator, model_validator

from mirrord.core.config import Settings
from mirrord.core.errors import ConfigurationError
from mirrord.jobs.types import (
    CronSchedule,
    DeleteMode,
    DeletionPolicy,
    IntervalSchedule,
    MirrorJob,
    OverlapPolicy,
    RetrySettings,
    Schedule,
)
from mirrord.storage.base import DestinationEndpoint, SourceEndpoint
from mirrord.storage.local import LocalDirectory
from mirrord.storage.registry import EndpointContext, build_endpoint, parse_endpoint_uri

logger = logging.getLogger(__name__)

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
_INTERVAL_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smhd]?)\s*$")
_INTERVAL_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_interval(value: float | int | str) -> float:
    if isinstance(value, bool):
        raise ValueError("interval must be a number of seconds or a duration like 15m")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        match = _INTERVAL_PATTERN.match(value.lower())
        if match is None:
            raise ValueError(f"Invalid interval '{value}'; use seconds or a duration like 30s, 15m, 6h, 1d")
        seconds = float(match.group(1)) * _INTERVAL_UNITS[match.group(2)]
    if seconds <= 0:
        raise ValueError("interval must be greater than zero")
    return seconds


class RetryConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_attempts: PositiveInt | None = None
    base_delay_seconds: float | None = Field(default=None, ge=0)
    max_delay_seconds: float | None = Field(default=None, gt=0)


class MirrorConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    source: str | dict[str, Any]
    destination: str | dict[str, Any] | None = None
    sync: str | None = None
    interval: float | str | None = None
    concurrency: PositiveInt | None = None
    deletion: DeletionPolicy = DeletionPolicy.APPEND_ONLY
    delete_mode: DeleteMode = DeleteMode.BEST_EFFORT
    allow_empty_source: bool = False
    overlap: OverlapPolicy = OverlapPolicy.SKIP
    enabled: bool = True
    serve: bool = False
    run_on_start: bool = False
    retry: RetryConfig = Field(default_factory=RetryConfig)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        name = value.strip()
        if not _NAME_PATTERN.match(name):
            raise ValueError("name must start with a letter or digit and use only letters, digits, '.', '_' or '-'")
        return name

    @field_validator("sync")
    @classmethod
    def _validate_sync(cls, value: str | None) -> str | None:
        if value is None:
            return None
        expression = " ".join(value.split())
        CronSchedule(expression)
        return expression

    @field_validator("interval")
    @classmethod
    def _validate_interval(cls, value: float | str | None) -> float | None:
        if value is None:
            return None
        return parse_interval(value)

    @model_validator(mode="after")
    def _validate_schedule(self) -> "MirrorConfig":
        if self.sync is not None and self.interval is not None:
            raise ValueError("set either 'sync' (cron) or 'interval', not both")
        return self

    def schedule(self) -> Schedule | None:
        if self.sync is not None:
            return CronSchedule(self.sync)
        if self.interval is not None:
            return IntervalSchedule(float(self.interval))
        return None


class AdminConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    token: str | None = None


class MirrorFileConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    mirrors: list[MirrorConfig] = Field(min_length=1)
    admin: AdminConfig = Field(default_factory=AdminConfig)


@dataclass(frozen=True)
class MirrorFile:
    path: Path | None
    jobs: list[MirrorJob]
    admin_token: str | None = None

    def job(self, name: str) -> MirrorJob:
        for job in self.jobs:
            if job.name == name:
                return job
        raise ConfigurationError(f"No mirror named '{name}' in {self.path}")


def _endpoint(raw: str | dict[str, Any], context: EndpointContext) -> SourceEndpoint:
    if isinstance(raw, str):
        kind, options = parse_endpoint_uri(raw)
    else:
        options = dict(raw)
        kind = str(options.pop("type", "local"))
    return build_endpoint(kind, options, context)


def _overlapping(source: SourceEndpoint, destination: DestinationEndpoint) -> bool:
    if source.endpoint_id == destination.endpoint_id:
        return True
    if isinstance(source, LocalDirectory) and isinstance(destination, LocalDirectory):
        return source.root in destination.root.parents or destination.root in source.root.parents
    return False


def _describe_validation_error(exc: ValidationError, document: dict[str, Any]) -> str:
    messages = []
    mirrors = document.get("mirrors") if isinstance(document, dict) else None
    for error in exc.errors():
        location = list(error.get("loc", ()))
        label = ".".join(str(part) for part in location)
        if len(location) >= 2 and location[0] == "mirrors" and isinstance(location[1], int) and isinstance(mirrors, list):
            index = location[1]
            entry = mirrors[index] if index < len(mirrors) else None
            name = entry.get("name") if isinstance(entry, dict) else None
            if name:
                label = ".".join(["mirrors", str(name), *(str(part) for part in location[2:])])
        messages.append(f"{label}: {error.get('msg')}")
    return "; ".join(messages)


def build_mirror_file(document: Any, settings: Settings, *, base_dir: Path, path: Path | None = None) -> MirrorFile:
    if not isinstance(document, dict):
        raise ConfigurationError("mirror file must be a mapping with a 'mirrors' list")
    try:
        parsed = MirrorFileConfig.model_validate(document)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid mirror file: {_describe_validation_error(exc, document)}") from exc

    seen: set[str] = set()
    jobs: list[MirrorJob] = []
    for entry in parsed.mirrors:
        if entry.name in seen:
            raise ConfigurationError(f"Duplicate mirror name: {entry.name}")
        seen.add(entry.name)

        try:
            source = _endpoint(entry.source, EndpointContext(base_dir, settings.staging_dir_name, "source"))
            destination_raw = entry.destination
            if destination_raw is None:
                destination_raw = (settings.data_root / entry.name).as_posix()
            destination = _endpoint(destination_raw, EndpointContext(base_dir, settings.staging_dir_name, "destination"))
        except ConfigurationError as exc:
            raise ConfigurationError(f"Mirror {entry.name}: {exc}") from exc
        if not isinstance(destination, DestinationEndpoint):
            raise ConfigurationError(f"Mirror {entry.name}: destination is not writable")
        if _overlapping(source, destination):
            raise ConfigurationError(f"Mirror {entry.name}: source and destination overlap")

        retry = RetrySettings(
            max_attempts=entry.retry.max_attempts or settings.retry_max_attempts,
            base_delay_seconds=(
                settings.retry_base_seconds if entry.retry.base_delay_seconds is None else entry.retry.base_delay_seconds
            ),
            max_delay_seconds=(
                settings.retry_max_seconds if entry.retry.max_delay_seconds is None else entry.retry.max_delay_seconds
            ),
        )
        if retry.max_delay_seconds < retry.base_delay_seconds:
            raise ConfigurationError(f"Mirror {entry.name}: retry.max_delay_seconds is below retry.base_delay_seconds")

        try:
            job = MirrorJob(
                name=entry.name,
                source=source,
                destination=destination,
                schedule=entry.schedule(),
                concurrency=entry.concurrency or settings.default_concurrency,
                deletion=entry.deletion,
                delete_mode=entry.delete_mode,
                allow_empty_source=entry.allow_empty_source,
                overlap=entry.overlap,
                enabled=entry.enabled,
                retry=retry,
                serve=entry.serve,
                run_on_start=entry.run_on_start,
            )
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
        if job.schedule is None and job.enabled:
            logger.info("Mirror %s has no schedule and only runs on request", job.name)
        jobs.append(job)

    token = parsed.admin.token.strip() if parsed.admin.token else None
    return MirrorFile(path=path, jobs=jobs, admin_token=token or settings.admin_token)


def load_mirror_file(path: Path | str, settings: Settings) -> MirrorFile:
    config_path = Path(path).expanduser().resolve(strict=False)
    try:
        raw = config_path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Mirror file not found: {config_path.as_posix()}") from exc
    except OSError as exc:
        raise ConfigurationError(f"Cannot read mirror file {config_path.as_posix()}: {exc}") from exc

    try:
        document = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Mirror file {config_path.as_posix()} is not valid YAML: {exc}") from exc

    return build_mirror_file(document, settings, base_dir=config_path.parent, path=config_path)
