"""Configuration models for the freshness-check service."""

from __future__ import annotations

import json
from functools import lru_cache
from typing import Annotated, Any, FrozenSet

from pydantic import (
    Field,
    PositiveFloat,
    PositiveInt,
    ValidationError,
    field_validator,
)
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_USER_AGENT = "Hydra (PodcastIndex)/v0.1"
MAX_PROBE_WORKERS = 64
MAX_REDIRECT_HOPS = 20


class Settings(BaseSettings):
    """Environment configuration for the freshness checker."""

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    catalog_dsn: str = Field(..., alias="CATALOG_DSN", description="SQLAlchemy DSN of the feed catalog.")
    catalog_table: str = Field("podcasts", alias="CATALOG_TABLE", description="Catalog table holding feed rows.")
    catalog_updated_column: str = Field(
        "newestItemPubdate",
        alias="CATALOG_UPDATED_COLUMN",
        description="Epoch-seconds column with the feed's last known update.",
    )
    staleness_window_days: PositiveInt = Field(
        90,
        alias="STALENESS_WINDOW_DAYS",
        description="Feeds not updated within this window are skipped.",
    )
    candidate_limit: PositiveInt = Field(1000, alias="CANDIDATE_LIMIT", description="Max candidates per run.")
    probe_user_agent: str = Field(DEFAULT_USER_AGENT, alias="PROBE_USER_AGENT", description="Client signature header.")
    probe_timeout_seconds: PositiveFloat = Field(10.0, alias="PROBE_TIMEOUT_SECONDS", description="Per-probe timeout.")
    probe_max_redirects: PositiveInt = Field(5, alias="PROBE_MAX_REDIRECTS", description="Redirect hop bound.")
    probe_head_hosts: Annotated[FrozenSet[str], NoDecode] = Field(
        default_factory=frozenset,
        alias="PROBE_HEAD_HOSTS",
        description="Hosts known to answer HEAD reliably (comma list or JSON array).",
    )
    probe_workers: PositiveInt = Field(8, alias="PROBE_WORKERS", description="Concurrent probe workers.")
    probe_retry_max_attempts: PositiveInt = Field(
        1,
        alias="PROBE_RETRY_MAX_ATTEMPTS",
        description="Total attempts per candidate for transient failures.",
    )
    probe_retry_backoff_seconds: float = Field(
        1.0,
        alias="PROBE_RETRY_BACKOFF_SECONDS",
        ge=0,
        description="Base back-off between attempts.",
    )
    redis_url: str = Field(
        "redis://localhost:6379/0",
        alias="FRESHNESS_REDIS_URL",
        description="Celery broker/backend Redis DSN.",
    )
    log_level: str = Field("INFO", alias="LOG_LEVEL", description="Log level.")
    log_json: bool = Field(False, alias="LOG_JSON", description="Emit logs as JSON lines.")
    celery_worker_concurrency: PositiveInt = Field(
        2,
        alias="CELERY_WORKER_CONCURRENCY",
        description="Celery worker processes.",
    )
    celery_task_soft_time_limit: PositiveInt = Field(
        1800,
        alias="CELERY_TASK_SOFT_TIME_LIMIT",
        description="Celery task soft timeout (seconds).",
    )

    @field_validator("catalog_dsn")
    @classmethod
    def _validate_catalog_dsn(cls, value: str) -> str:
        dsn = value.strip()
        if "://" not in dsn:
            raise ValueError("CATALOG_DSN must be a valid DSN string.")
        return dsn

    @field_validator("catalog_table", "catalog_updated_column")
    @classmethod
    def _non_blank_identifier(cls, value: str) -> str:
        name = value.strip()
        if not name:
            raise ValueError("catalog identifiers cannot be blank.")
        return name

    @field_validator("probe_user_agent")
    @classmethod
    def _non_blank_user_agent(cls, value: str) -> str:
        agent = value.strip()
        if not agent:
            raise ValueError("PROBE_USER_AGENT cannot be blank.")
        return agent

    @field_validator("probe_head_hosts", mode="before")
    @classmethod
    def _parse_head_hosts(cls, value: Any) -> FrozenSet[str]:
        if value in (None, "", []):
            return frozenset()
        if isinstance(value, str):
            text = value.strip()
            if text.startswith("["):
                try:
                    items = json.loads(text)
                except json.JSONDecodeError as exc:
                    raise ValueError("PROBE_HEAD_HOSTS must be a JSON array or a comma list.") from exc
            else:
                items = text.split(",")
        elif isinstance(value, (list, tuple, set, frozenset)):
            items = list(value)
        else:
            raise ValueError("PROBE_HEAD_HOSTS must be a list of host names.")
        return frozenset(str(h).strip().lower() for h in items if str(h).strip())

    @field_validator("probe_max_redirects")
    @classmethod
    def _validate_redirects(cls, v: int) -> int:
        if v > MAX_REDIRECT_HOPS:
            raise ValueError(f"PROBE_MAX_REDIRECTS must be <= {MAX_REDIRECT_HOPS}.")
        return v

    @field_validator("probe_workers")
    @classmethod
    def _validate_workers(cls, v: int) -> int:
        if v > MAX_PROBE_WORKERS:
            raise ValueError(f"PROBE_WORKERS must be <= {MAX_PROBE_WORKERS}.")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Return Settings built from the environment."""
    try:
        return Settings()
    except ValidationError as exc:
        raise RuntimeError(f"Environment validation failed: {exc}") from exc


def reset_settings_cache() -> None:
    """Clear the Settings LRU cache (for tests)."""
    get_settings.cache_clear()  # type: ignore[attr-defined]
