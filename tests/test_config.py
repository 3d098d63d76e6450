from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path

import pytest

from mirrord.core.config import Settings, get_settings
from mirrord.core.errors import ConfigurationError
from mirrord.jobs.config import build_mirror_file, load_mirror_file, parse_interval
from mirrord.jobs.types import CronSchedule, DeleteMode, DeletionPolicy, IntervalSchedule, OverlapPolicy
from mirrord.storage.local import LocalDirectory


def make_settings(tmp_path: Path) -> Settings:
    os.environ["MIRRORD_DATA_ROOT"] = (tmp_path / "data").as_posix()
    os.environ["MIRRORD_STATE_ROOT"] = (tmp_path / "state").as_posix()
    get_settings.cache_clear()
    return get_settings()


def write_config(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "mirror.yml"
    path.write_text(body, encoding="utf-8")
    return path


def test_mirror_file_builds_jobs(tmp_path: Path) -> None:
    settings = make_settings(tmp_path)
    path = write_config(
        tmp_path,
        """
mirrors:
  - name: docs
    source: ./upstream/docs
    destination: /srv/mirror/docs
    sync: "*/15 * * * *"
    deletion: mirror
    delete_mode: transactional
    overlap: queue
    concurrency: 8
    serve: true
    retry:
      max_attempts: 5
  - name: media
    source: {type: local, path: /data/media}
    interval: 6h
admin:
  token: s3cret
""",
    )

    mirror_file = load_mirror_file(path, settings)

    docs = mirror_file.job("docs")
    assert isinstance(docs.source, LocalDirectory)
    assert docs.source.root == (tmp_path / "upstream" / "docs").resolve()
    assert docs.destination.describe() == "/srv/mirror/docs"
    assert docs.schedule == CronSchedule("*/15 * * * *")
    assert docs.deletion == DeletionPolicy.MIRROR
    assert docs.delete_mode == DeleteMode.TRANSACTIONAL
    assert docs.overlap == OverlapPolicy.QUEUE
    assert docs.concurrency == 8
    assert docs.serve is True
    assert docs.retry.max_attempts == 5
    assert docs.retry.base_delay_seconds == settings.retry_base_seconds

    media = mirror_file.job("media")
    assert media.schedule == IntervalSchedule(6 * 3600)
    assert media.deletion == DeletionPolicy.APPEND_ONLY
    assert media.concurrency == settings.default_concurrency
    assert media.destination.describe() == (settings.data_root / "media").as_posix()
    assert mirror_file.admin_token == "s3cret"

    with pytest.raises(ConfigurationError):
        mirror_file.job("missing")


@pytest.mark.parametrize(
    ("raw", "seconds"),
    [(90, 90.0), ("30s", 30.0), ("15m", 900.0), ("6h", 21600.0), ("1d", 86400.0), ("2.5", 2.5)],
)
def test_parse_interval(raw: object, seconds: float) -> None:
    assert parse_interval(raw) == seconds


@pytest.mark.parametrize("raw", ["0", "-5", "soon", "10w", True])
def test_parse_interval_rejects_bad_values(raw: object) -> None:
    with pytest.raises(ValueError):
        parse_interval(raw)


@pytest.mark.parametrize(
    ("body", "message"),
    [
        ("mirrors: []", "mirrors"),
        ("mirrors:\n  - {name: a, source: /x}\n  - {name: a, source: /y}", "Duplicate mirror name: a"),
        ("mirrors:\n  - {name: a, source: /x, sync: 'not a cron'}", "mirrors.a.sync"),
        ("mirrors:\n  - {name: a, source: /x, sync: '* * * * *', interval: 60}", "not both"),
        ("mirrors:\n  - {name: a, source: /x, colour: blue}", "colour"),
        ("mirrors:\n  - {name: '../a', source: /x}", "name"),
        ("mirrors:\n  - {name: a, source: /srv/a, destination: /srv/a/copy}", "overlap"),
        ("mirrors:\n  - {name: a, source: 'ftp://host/a'}", "Unsupported endpoint scheme"),
        ("mirrors:\n  - {name: a, source: {type: tape, path: /x}}", "Unknown endpoint kind"),
        ("mirrors:\n  - {name: a, source: /x, retry: {base_delay_seconds: 10, max_delay_seconds: 1}}", "retry"),
        ("- just a list", "mapping"),
    ],
)
def test_invalid_mirror_files_are_rejected(tmp_path: Path, body: str, message: str) -> None:
    settings = make_settings(tmp_path)
    path = write_config(tmp_path, body)

    with pytest.raises(ConfigurationError) as exc_info:
        load_mirror_file(path, settings)

    assert message in str(exc_info.value)


def test_missing_and_malformed_files(tmp_path: Path) -> None:
    settings = make_settings(tmp_path)

    with pytest.raises(ConfigurationError, match="not found"):
        load_mirror_file(tmp_path / "absent.yml", settings)

    path = write_config(tmp_path, "mirrors: [unclosed")
    with pytest.raises(ConfigurationError, match="not valid YAML"):
        load_mirror_file(path, settings)


def test_admin_token_falls_back_to_settings(tmp_path: Path) -> None:
    os.environ["MIRRORD_ADMIN_TOKEN"] = "from-env"
    try:
        settings = make_settings(tmp_path)
        mirror_file = build_mirror_file({"mirrors": [{"name": "a", "source": "/x"}]}, settings, base_dir=tmp_path)
    finally:
        del os.environ["MIRRORD_ADMIN_TOKEN"]
        get_settings.cache_clear()

    assert mirror_file.admin_token == "from-env"
    assert mirror_file.jobs[0].schedule is None


def test_settings_reject_inconsistent_values(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        Settings(hash_algorithm="md5")
    with pytest.raises(ValueError):
        Settings(retry_base_seconds=10, retry_max_seconds=5)
    with pytest.raises(ValueError):
        Settings(job_lock_ttl_seconds=10, job_lock_heartbeat_seconds=10)
    assert Settings(admin_token="  ").admin_token is None


def test_six_field_cron_reads_seconds_first() -> None:
    hourly = CronSchedule("0 0 * * * *")
    start = datetime(2024, 1, 1, 0, 0, 0, tzinfo=timezone.utc)

    first = hourly.next_after(start)
    second = hourly.next_after(first)

    assert first == datetime(2024, 1, 1, 1, 0, 0, tzinfo=timezone.utc)
    assert (second - first).total_seconds() == 3600
    assert hourly.seconds_first is True

    every_half_minute = CronSchedule("*/30 * * * * *")
    assert every_half_minute.next_after(start) == datetime(2024, 1, 1, 0, 0, 30, tzinfo=timezone.utc)


def test_five_field_cron_keeps_minute_resolution() -> None:
    schedule = CronSchedule("*/15 * * * *")
    start = datetime(2024, 1, 1, 0, 1, 0, tzinfo=timezone.utc)

    assert schedule.seconds_first is False
    assert schedule.next_after(start) == datetime(2024, 1, 1, 0, 15, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize("expression", ["* * * *", "0 0 0 * * * 2030", "61 * * * * *"])
def test_cron_rejects_unsupported_shapes(expression: str) -> None:
    with pytest.raises(ValueError):
        CronSchedule(expression)


def test_mirror_file_accepts_seconds_first_sync(tmp_path: Path) -> None:
    settings = make_settings(tmp_path)
    path = write_config(tmp_path, "mirrors:\n  - {name: hourly, source: /x, sync: '0 0 */6 * * *'}\n")

    schedule = load_mirror_file(path, settings).job("hourly").schedule

    assert schedule == CronSchedule("0 0 */6 * * *")
    start = datetime(2024, 1, 1, 0, 30, 0, tzinfo=timezone.utc)
    assert schedule.next_after(start) == datetime(2024, 1, 1, 6, 0, 0, tzinfo=timezone.utc)
