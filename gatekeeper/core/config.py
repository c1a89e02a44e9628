"""Runtime settings, read from `GATE_*` environment variables or `.env`."""

from __future__ import annotations

from functools import lru_cache
from typing import List, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from gatekeeper.core.identity import is_plausible_email

DEFAULT_PUBLIC_PATHS = [
    "/",
    "/auth*",
    "/not-invited",
    "/unavailable",
    "/health",
    "/healthz",
    "/api/health",
    "/api/auth*",
]


class AppSettings(BaseSettings):
    """Service configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="GATE_",
        extra="ignore",
    )

    environment: Literal["local", "test", "staging", "production"] = Field(default="local")
    service_name: str = Field(default="allowlist-gate")
    version: str = Field(default="1.0.0")

    database_url: str = Field(default="sqlite:///./data/gate.db")
    sql_echo: bool = Field(default=False)
    store_timeout_seconds: float = Field(default=5.0, gt=0)
    auto_create_schema: bool = Field(default=False)

    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=True)

    bootstrap_admin_email: str | None = Field(default=None)
    bootstrap_admin_name: str = Field(default="System Administrator")

    allowlist_cache_ttl: int = Field(default=300, ge=1)
    redis_url: str | None = Field(default=None)
    redis_token: str | None = Field(default=None)
    redis_cache_prefix: str = Field(default="gate")

    idp_base_url: str | None = Field(default=None)
    idp_secret_key: str | None = Field(default=None)
    idp_timeout_seconds: float = Field(default=5.0, gt=0)
    session_cookie_name: str = Field(default="__session")

    public_paths: List[str] | str = Field(default_factory=lambda: list(DEFAULT_PUBLIC_PATHS))
    edge_allowlist_precheck: bool = Field(default=True)
    login_path: str = Field(default="/auth/login")
    not_invited_path: str = Field(default="/not-invited")
    unavailable_path: str = Field(default="/unavailable")
    post_login_path: str = Field(default="/dashboard")

    csrf_enabled: bool = Field(default=True)
    csrf_header_name: str = Field(default="x-csrf-token")
    csrf_cookie_name: str = Field(default="csrf-token")

    rate_limit_enabled: bool = Field(default=True)

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        return value.upper()

    @field_validator("public_paths")
    @classmethod
    def parse_public_paths(cls, value: str | List[str] | None) -> List[str]:
        if value is None or value == "":
            return list(DEFAULT_PUBLIC_PATHS)
        if isinstance(value, str):
            return [path.strip() for path in value.split(",") if path.strip()]
        return value

    @field_validator(
        "redis_url",
        "redis_token",
        "idp_base_url",
        "idp_secret_key",
        "bootstrap_admin_email",
        mode="before",
    )
    @classmethod
    def empty_string_to_none(cls, value: str | None) -> str | None:
        if value == "":
            return None
        return value

    @field_validator("bootstrap_admin_email")
    @classmethod
    def validate_bootstrap_admin_email(cls, value: str | None) -> str | None:
        if value is not None and not is_plausible_email(value.strip()):
            raise ValueError("bootstrap_admin_email must be a valid email address")
        return value

    @field_validator("allowlist_cache_ttl", mode="before")
    @classmethod
    def default_cache_ttl(cls, value: int | str | None) -> int | str:
        return 300 if value in (None, "") else value


@lru_cache
def get_settings() -> AppSettings:
    """Return cached application settings instance."""

    return AppSettings()
