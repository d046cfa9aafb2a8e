"""Configuration for the metered generation backend using pydantic-settings."""

from __future__ import annotations

import os
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent.parent


class AppEnv(StrEnum):
    DEV = "dev"
    PRODUCTION = "production"


class TomlSettingsSource(PydanticBaseSettingsSource):
    def __init__(self, settings_cls: type[BaseSettings], toml_file: str | Path):
        super().__init__(settings_cls)
        self.toml_file = Path(toml_file)

    def get_field_value(self, field_name: str, field_data: Any) -> tuple[Any, str, bool]:
        # Not used in this source style
        return None, field_name, False

    def __call__(self) -> dict[str, Any]:
        if not self.toml_file.exists():
            return {}

        import tomllib

        try:
            with open(self.toml_file, "rb") as f:
                data = tomllib.load(f)
        except Exception:
            return {}

        if not isinstance(data, dict):
            return {}

        # [executor] and [ledger] sections map onto prefixed flat fields
        flattened: dict[str, Any] = {}
        executor = data.get("executor", {})
        if isinstance(executor, dict):
            for key, value in executor.items():
                flattened[f"executor_{key}"] = value

        ledger = data.get("ledger", {})
        if isinstance(ledger, dict):
            for key, value in ledger.items():
                flattened[key] = value

        for k, v in data.items():
            if k not in {"executor", "ledger"}:
                flattened[k] = v

        return flattened


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        populate_by_name=True,
    )

    # --- Environment ---
    app_env: AppEnv = Field(
        default=AppEnv.PRODUCTION,
        validation_alias=AliasChoices("GEN_APP_ENV", "APP_ENV", "ENV"),
    )

    @field_validator("app_env", mode="before")
    @classmethod
    def normalize_env(cls, v: Any) -> AppEnv:
        if v is None:
            return AppEnv.PRODUCTION
        if isinstance(v, str):
            lowered = v.strip().lower()
            if lowered in {"dev", "development", "local", "localhost", "test"}:
                return AppEnv.DEV
        return AppEnv.PRODUCTION

    @field_validator("allowed_origins", "trusted_hosts", mode="before")
    @classmethod
    def parse_list(cls, v: Any) -> list[str]:
        if isinstance(v, str):
            v_stripped = v.strip()
            if not v_stripped:
                return []
            if v_stripped.startswith("[") and v_stripped.endswith("]"):
                import json
                try:
                    return json.loads(v_stripped)
                except Exception:
                    pass
            return [x.strip() for x in v_stripped.split(",") if x.strip()]
        return v or []

    @property
    def is_dev(self) -> bool:
        return self.app_env == AppEnv.DEV

    # --- Project Paths ---
    project_root: Path = PROJECT_ROOT
    catalog_file: Path = Field(
        default=PROJECT_ROOT / "config" / "models.toml",
        validation_alias=AliasChoices("GEN_CATALOG_FILE", "catalog_file"),
    )

    # --- API & Security ---
    allowed_origins: Any = Field(default_factory=list, validation_alias="GEN_ALLOWED_ORIGINS")
    trusted_hosts: Any = Field(default_factory=list, validation_alias="GEN_TRUSTED_HOSTS")

    # --- Database ---
    database_url: str = Field(
        default="postgresql+psycopg://localhost/genbilling_dev",
        validation_alias=AliasChoices("GEN_DATABASE_URL", "DATABASE_URL"),
    )

    # --- Identity ---
    telegram_bot_token: str = Field(
        default="",
        validation_alias=AliasChoices("GEN_TELEGRAM_BOT_TOKEN", "TELEGRAM_BOT_TOKEN"),
    )
    telegram_init_data_max_age_seconds: int = 24 * 60 * 60
    session_ttl_seconds: int = Field(
        default=60 * 60 * 24 * 7,
        validation_alias=AliasChoices("GEN_SESSION_TTL_SECONDS", "session_ttl_seconds"),
    )

    # --- Generation executor ---
    executor_url: str = Field(
        default="",
        validation_alias=AliasChoices("GEN_EXECUTOR_URL", "executor_url"),
    )
    executor_shared_secret: str = Field(
        default="",
        validation_alias=AliasChoices("GEN_EXECUTOR_SHARED_SECRET", "executor_shared_secret"),
    )
    executor_timeout_seconds: float = Field(
        default=480.0,
        validation_alias=AliasChoices("GEN_EXECUTOR_TIMEOUT_SECONDS", "executor_timeout_seconds"),
    )
    executor_connect_timeout_seconds: float = 10.0
    executor_signature_header: str = "X-Signature"

    # --- Uploads / staging ---
    max_upload_mb: int = Field(default=30, validation_alias=AliasChoices("GEN_MAX_UPLOAD_MB", "max_upload_mb"))
    max_upload_files: int = 8
    input_read_url_ttl_seconds: int = 3600

    # --- Ledger ---
    starting_balance: int = 0
    starting_promo_credits: int = 0
    max_batch_units: int = 6

    # --- Settlement ---
    settlement_retry_attempts: int = 3
    settlement_retry_delay_seconds: float = 0.5

    # --- Observability ---
    log_level: str = Field(default="INFO", validation_alias=AliasChoices("GEN_LOG_LEVEL", "LOG_LEVEL"))
    saga_metrics: bool | None = Field(
        default=None,
        validation_alias=AliasChoices("GEN_SAGA_METRICS", "saga_metrics"),
    )
    saga_metrics_path: Path | None = Field(
        default=None,
        validation_alias=AliasChoices("GEN_SAGA_METRICS_PATH", "saga_metrics_path"),
    )

    # --- Rate limiting ---
    generate_rate_limit: int = Field(
        default=20,
        validation_alias=AliasChoices("GEN_RATE_LIMIT_MAX", "generate_rate_limit"),
    )
    generate_rate_window_seconds: int = Field(
        default=60,
        validation_alias=AliasChoices("GEN_RATE_LIMIT_WINDOW_SECONDS", "generate_rate_window_seconds"),
    )

    def __init__(self, **values: Any) -> None:
        super().__init__(**values)
        # Apply secure defaults for production if hosts are missing
        if not self.is_dev:
            if not self.trusted_hosts:
                self.trusted_hosts = ["*.run.app", "*.a.run.app"]

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Order of precedence:
        # 1. Constructor arguments
        # 2. Environment variables
        # 3. .env file
        # 4. config/app_settings.toml
        # 5. Secrets
        toml_path = os.getenv("GEN_APP_SETTINGS_FILE")
        if not toml_path:
            toml_path = str(PROJECT_ROOT / "config" / "app_settings.toml")

        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlSettingsSource(settings_cls, toml_file=toml_path),
            file_secret_settings,
        )


settings = Settings()
