"""
Router configuration via pydantic-settings.

All settings are loaded from HELIX_* environment variables (or a .env file
in dev). Provider triplets and routing thresholds are read from here by
ProviderRegistry.from_settings and RoutingThresholds.from_settings; nothing
else in the routing core touches the environment.
"""

from __future__ import annotations

from enum import StrEnum
from functools import lru_cache
from pathlib import Path

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEV = "dev"
    PROD = "prod"
    TEST = "test"


_DEFAULT_BACKEND_URL = "http://localhost:8310/v1"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="HELIX_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ------------------------------------------------------------------ #
    # Application
    # ------------------------------------------------------------------ #
    environment: Environment = Environment.DEV
    debug: bool = False
    host: str = Field(default="127.0.0.1", description="Bind address for the HTTP server")
    port: int = Field(default=8403, ge=1, le=65535)
    log_level: str = Field(default="INFO", description="Minimum log level")
    json_logs: bool = Field(
        default=False,
        description="Emit JSON log lines. Always on in production.",
    )
    model_namespace: str = Field(
        default="helix-router",
        description="Prefix used for router model ids shown to clients (e.g. helix-router/auto)",
    )

    # ------------------------------------------------------------------ #
    # Backend providers (one triplet per tier)
    # ------------------------------------------------------------------ #
    pro_url: str = Field(default=_DEFAULT_BACKEND_URL, description="PRO provider base URL")
    pro_key: SecretStr = Field(default=SecretStr(""), description="PRO provider API key")
    pro_model: str = Field(default="helix-backend/pro", description="PRO provider model id")

    mid_url: str = Field(default=_DEFAULT_BACKEND_URL, description="MID provider base URL")
    mid_key: SecretStr = Field(default=SecretStr(""), description="MID provider API key")
    mid_model: str = Field(default="helix-backend/mid", description="MID provider model id")

    low_url: str = Field(default=_DEFAULT_BACKEND_URL, description="LOW provider base URL")
    low_key: SecretStr = Field(default=SecretStr(""), description="LOW provider API key")
    low_model: str = Field(default="helix-backend/low", description="LOW provider model id")

    # ------------------------------------------------------------------ #
    # Routing thresholds
    # ------------------------------------------------------------------ #
    pro_threshold: int = Field(default=75, ge=0, le=100)
    mid_threshold: int = Field(default=35, ge=0, le=100)

    # ------------------------------------------------------------------ #
    # Complexity evaluation cache
    # ------------------------------------------------------------------ #
    cache_enabled: bool = True
    cache_ttl_seconds: float = Field(default=3600.0, gt=0)
    cache_max_entries: int = Field(default=1000, ge=1)

    # ------------------------------------------------------------------ #
    # Timeouts
    # ------------------------------------------------------------------ #
    evaluator_timeout_seconds: float = Field(
        default=15.0,
        gt=0,
        description="Timeout for the auxiliary complexity-evaluation call",
    )
    backend_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Timeout for forwarded backend calls",
    )

    # ------------------------------------------------------------------ #
    # Telemetry
    # ------------------------------------------------------------------ #
    telemetry_enabled: bool = True
    log_dir: Path = Field(
        default=Path.home() / ".helix-router",
        description="Directory holding the append-only routing log",
    )
    log_write_timeout_seconds: float = Field(
        default=2.0,
        gt=0,
        description="Upper bound on a single durable routing-log append",
    )

    @model_validator(mode="after")
    def _set_debug_from_env(self) -> Settings:
        if self.environment == Environment.DEV:
            self.debug = True
        return self

    @model_validator(mode="after")
    def _validate_thresholds(self) -> Settings:
        if self.mid_threshold > self.pro_threshold:
            raise ValueError(
                f"mid_threshold ({self.mid_threshold}) must not exceed "
                f"pro_threshold ({self.pro_threshold})"
            )
        return self

    @property
    def routing_log_path(self) -> Path:
        return self.log_dir / "routing.log"

    @property
    def is_dev(self) -> bool:
        return self.environment in (Environment.DEV, Environment.TEST)

    @property
    def is_prod(self) -> bool:
        return self.environment == Environment.PROD


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings singleton.

    Use FastAPI dependency injection via Depends(get_settings) in endpoints,
    or call directly in non-request contexts (startup, CLI).
    """
    return Settings()
