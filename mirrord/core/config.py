from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, PositiveInt, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_HASH_ALGORITHMS = {"blake3", "sha256"}
SUPPORTED_LOG_FORMATS = {"text", "json"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MIRRORD_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "mirror"
    environment: str = "production"
    log_level: str = "INFO"
    log_format: str = "text"

    config_path: Path = Field(default=Path("mirror.yml"))
    data_root: Path = Field(default=Path("data"))
    state_root: Path = Field(default=Path("state"))
    database_url: str | None = None

    api_enabled: bool = True
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    admin_token: str | None = None

    hash_algorithm: str = "blake3"
    read_chunk_bytes: PositiveInt = 1024 * 1024
    trust_mtime: bool = False
    staging_dir_name: str = ".mirrord-staging"

    retry_max_attempts: PositiveInt = 3
    retry_base_seconds: float = Field(default=1.0, gt=0)
    retry_max_seconds: float = Field(default=60.0, gt=0)

    default_concurrency: PositiveInt = 4
    shutdown_grace_seconds: PositiveInt = 30

    job_lock_ttl_seconds: PositiveInt = 300
    job_lock_heartbeat_seconds: PositiveInt = 30

    @field_validator("config_path", "data_root", "state_root", mode="before")
    @classmethod
    def _normalize_path(cls, value: str | Path) -> Path:
        raw = str(value)
        if "$" in raw:
            raise ValueError("Environment variable syntax is not allowed in paths")
        return Path(raw).expanduser()

    @field_validator("staging_dir_name")
    @classmethod
    def _validate_staging_dir_name(cls, value: str) -> str:
        name = value.strip()
        if not name or "/" in name or "\\" in name or name in {".", ".."}:
            raise ValueError("staging_dir_name must be a single path component")
        return name

    @model_validator(mode="after")
    def _validate_runtime_constraints(self) -> "Settings":
        self.data_root = self.data_root.resolve(strict=False)
        self.state_root = self.state_root.resolve(strict=False)
        self.config_path = self.config_path.resolve(strict=False)

        normalized_algorithm = self.hash_algorithm.lower().strip()
        if normalized_algorithm not in SUPPORTED_HASH_ALGORITHMS:
            raise ValueError(f"hash_algorithm must be one of {sorted(SUPPORTED_HASH_ALGORITHMS)}")
        self.hash_algorithm = normalized_algorithm

        normalized_format = self.log_format.lower().strip()
        if normalized_format not in SUPPORTED_LOG_FORMATS:
            raise ValueError(f"log_format must be one of {sorted(SUPPORTED_LOG_FORMATS)}")
        self.log_format = normalized_format

        if self.retry_max_seconds < self.retry_base_seconds:
            raise ValueError("retry_max_seconds must be greater than or equal to retry_base_seconds")

        if self.job_lock_heartbeat_seconds >= self.job_lock_ttl_seconds:
            raise ValueError("job_lock_heartbeat_seconds must be less than job_lock_ttl_seconds")

        if self.admin_token is not None and not self.admin_token.strip():
            self.admin_token = None

        return self

    @property
    def effective_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        db_path = self.state_root / "mirrord.sqlite3"
        return f"sqlite:///{db_path.as_posix()}"

    def ensure_state_root(self) -> None:
        self.state_root.mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
