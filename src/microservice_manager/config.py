"""Configuration management for the microservice manager."""

import sys
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from microservice_manager.constants import (
    CACHE_TTL_SECONDS,
    DEFAULT_CONTAINER_PORT,
    DEFAULT_PORT_SEARCH_RANGE,
    DEFAULT_REPO_URL,
    DEFAULT_SERVICE_NAME,
    FETCH_TIMEOUT_SECONDS,
    LOCK_NAME,
    LOCK_RETRY_INTERVAL_SECONDS,
    MANAGER_PAYLOAD_NAME,
    MAX_PORT,
    OPEN_PORT_FILE_NAME,
    READINESS_DELAY_SECONDS,
    READINESS_MAX_ATTEMPTS,
    READINESS_PATH,
    REGISTRY_FILE_NAME,
    STATE_FILE_NAME,
    WRAPPER_PAYLOAD_NAME,
    WRAPPER_VERSION_NAME,
)


class Settings(BaseSettings):
    """Manager settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PAQQETS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # State and logs
    base_dir: Path = Field(
        default_factory=lambda: Path.home() / ".paqqets",
        description="Base directory for registry, lock and per-service state files",
    )
    log_dir: Path | None = Field(
        default=None, description="Directory for container log files (default: <base_dir>/logs)"
    )

    # Service
    service_name: str = Field(default=DEFAULT_SERVICE_NAME, description="Logical service name")
    image: str | None = Field(
        default=None, description="Image reference; resolved from gradle.properties when unset"
    )
    container_port: int = Field(
        default=DEFAULT_CONTAINER_PORT, ge=1, le=MAX_PORT, description="Port inside the container"
    )
    base_port: int = Field(
        default=DEFAULT_CONTAINER_PORT, ge=1, le=MAX_PORT, description="First host port to try"
    )
    port_search_range: int = Field(
        default=DEFAULT_PORT_SEARCH_RANGE, ge=0, description="Number of ports above base_port"
    )

    # Readiness
    readiness_path: str = Field(default=READINESS_PATH, description="HTTP path probed for readiness")
    readiness_attempts: int = Field(default=READINESS_MAX_ATTEMPTS, ge=1)
    readiness_interval: float = Field(default=READINESS_DELAY_SECONDS, gt=0)

    # Registry lock
    lock_backend: Literal["directory", "flock", "memory"] = Field(
        default="directory", description="Mutual-exclusion backend guarding the registry"
    )
    lock_retry_interval: float = Field(default=LOCK_RETRY_INTERVAL_SECONDS, gt=0)
    lock_timeout: float | None = Field(
        default=None, description="Give up waiting for the lock after N seconds (unset: forever)"
    )
    lock_stale_after: float | None = Field(
        default=None, description="Break a lock directory older than N seconds (unset: never)"
    )

    # Self-update
    repo_url: str = Field(
        default=DEFAULT_REPO_URL,
        validation_alias=AliasChoices("REPO_URL_OVERRIDE", "PAQQETS_REPO_URL"),
        description="Base URL the wrapper and the manager payload are fetched from",
    )
    cache_dir: Path = Field(
        default_factory=lambda: Path.home() / ".microservices-manager",
        description="Directory holding the cached manager payload",
    )
    cache_ttl: int = Field(default=CACHE_TTL_SECONDS, ge=0)
    fetch_timeout: float = Field(default=FETCH_TIMEOUT_SECONDS, gt=0)
    manager_version_url: str | None = Field(
        default=None,
        description="Published manager version; lets a stale cache be revalidated without a download",
    )
    wrapper_path: Path | None = Field(
        default=None, description="Wrapper script replaced by 'update' (default: running script)"
    )

    # Application
    environment: str = Field(default="development", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")
    log_to_file: bool = Field(default=False, description="Also write manager logs to log_dir")
    log_file_max_bytes: int = Field(default=10 * 1024 * 1024, ge=1)
    log_file_backup_count: int = Field(default=3, ge=0)

    @field_validator("base_dir", "log_dir", "cache_dir", "wrapper_path")
    @classmethod
    def _expand_user(cls, value: Path | None) -> Path | None:
        return value.expanduser() if value is not None else None

    @field_validator("service_name")
    @classmethod
    def _validate_service_name(cls, value: str) -> str:
        if not value or value in (".", "..") or any(ch in value for ch in ("=", "/", "\n")):
            raise ValueError(
                "service_name must be non-empty, not '.' or '..', and free of '=', '/' and newlines"
            )
        return value

    @field_validator("repo_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() == "development"

    @property
    def service_log_dir(self) -> Path:
        return self.log_dir if self.log_dir is not None else self.base_dir / "logs"

    @property
    def registry_path(self) -> Path:
        return self.base_dir / REGISTRY_FILE_NAME

    @property
    def lock_path(self) -> Path:
        return self.base_dir / LOCK_NAME

    @property
    def service_dir(self) -> Path:
        return self.base_dir / self.service_name

    @property
    def state_path(self) -> Path:
        return self.service_dir / STATE_FILE_NAME

    @property
    def open_port_path(self) -> Path:
        return self.service_dir / OPEN_PORT_FILE_NAME

    @property
    def cache_path(self) -> Path:
        return self.cache_dir / MANAGER_PAYLOAD_NAME

    @property
    def manager_url(self) -> str:
        return f"{self.repo_url}/{MANAGER_PAYLOAD_NAME}"

    @property
    def wrapper_url(self) -> str:
        return f"{self.repo_url}/{WRAPPER_PAYLOAD_NAME}"

    @property
    def wrapper_version_url(self) -> str:
        return f"{self.repo_url}/{WRAPPER_VERSION_NAME}"

    @property
    def resolved_wrapper_path(self) -> Path:
        """Get the wrapper script path, defaulting to the running script."""
        if self.wrapper_path is not None:
            return self.wrapper_path
        return Path(sys.argv[0]).resolve()


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
