from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    model_validator,
)

from stats_timeseries.errors import ConfigurationError


def project_root() -> Path:
    return Path(__file__).resolve().parents[1]


class Settings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    database_url: SecretStr | None = Field(default=None, alias="DATABASE_URL")

    db_host: str | None = Field(default=None, alias="DB_HOST")
    db_port: int = Field(default=1433, alias="DB_PORT")
    db_user: str | None = Field(default=None, alias="DB_USER")
    db_password: SecretStr | None = Field(default=None, alias="DB_PASSWORD")
    db_name: str | None = Field(default=None, alias="DB_NAME")
    db_driver: str = Field(default="ODBC Driver 18 for SQL Server", alias="DB_DRIVER")
    db_trust_cert: bool = Field(default=True, alias="DB_TRUST_CERT")

    stats_top_n: int = Field(default=30, gt=0, alias="STATS_TOP_N")
    stats_since_hours: int = Field(default=48, gt=0, alias="STATS_SINCE_HOURS")
    stats_upsert_batch_size: int = Field(
        default=500, gt=0, alias="STATS_UPSERT_BATCH_SIZE"
    )
    stats_lock_timeout_ms: int = Field(default=0, ge=0, alias="STATS_LOCK_TIMEOUT_MS")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    scheduler_max_instances: int = Field(default=1, alias="SCHEDULER_MAX_INSTANCES")
    scheduler_coalesce: bool = Field(default=True, alias="SCHEDULER_COALESCE")
    scheduler_misfire_grace_seconds: int = Field(
        default=300, alias="SCHEDULER_MISFIRE_GRACE_SECONDS"
    )

    @model_validator(mode="after")
    def _require_database(self) -> "Settings":
        if self.database_url is not None:
            return self
        missing = [
            name
            for name, value in (
                ("DB_HOST", self.db_host),
                ("DB_USER", self.db_user),
                ("DB_PASSWORD", self.db_password),
                ("DB_NAME", self.db_name),
            )
            if value is None
        ]
        if missing:
            raise ValueError(
                "set DATABASE_URL or all of: " + ", ".join(missing)
            )
        return self


def load_settings(env_path: Path | None = None) -> Settings:
    env_file = env_path or (project_root() / ".env")
    if env_file.exists():
        load_dotenv(env_file, override=False)
    try:
        return Settings.model_validate(dict(os.environ))
    except ValidationError as exc:
        raise ConfigurationError(
            "Invalid or missing environment variables. Copy `.env.example` to `.env` and edit it."
        ) from exc
