from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

PRIMARY_DOMAIN = "cozyartzmedia.com"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service.

    Secrets are optional at load time. A flow that needs a missing secret
    reports "not configured" when it runs instead of the process refusing to
    start, so one misconfigured provider does not take down the others.
    """

    database_url: str = env_field("postgresql://localhost:5432/cozyauth", "DATABASE_URL")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables deterministic testing behaviors such as runtime resets.",
    )

    primary_domain: str = env_field(PRIMARY_DOMAIN, "PRIMARY_DOMAIN")
    custom_tenant_domains: list[str] = env_field(
        [],
        "CUSTOM_TENANT_DOMAINS",
        description="Comma-separated custom tenant hosts accepted as tenant_domain",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")

    # GitHub OAuth app
    github_client_id: str | None = env_field(None, "GITHUB_CLIENT_ID")
    github_client_secret: str | None = env_field(None, "GITHUB_CLIENT_SECRET")
    github_redirect_uri: str = env_field(
        "https://cozyartzmedia.com/api/auth/github/callback", "GITHUB_REDIRECT_URI"
    )
    auth_error_url: str = env_field(
        "https://cozyartzmedia.com/auth/error",
        "AUTH_ERROR_URL",
        description="Browser landing page for failed OAuth callbacks; receives ?error=<code>",
    )

    # Transactional email (Resend)
    resend_api_key: str | None = env_field(None, "RESEND_API_KEY")
    email_api_url: str = env_field("https://api.resend.com/emails", "EMAIL_API_URL")
    email_from_address: str = env_field("hello@cozyartzmedia.com", "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Cozyartz Media Group", "EMAIL_FROM_NAME")
    magic_link_base_url: str | None = env_field(
        None,
        "MAGIC_LINK_BASE_URL",
        description="Overrides https://<tenant_domain> as the base of emailed links",
    )

    http_timeout_seconds: float = env_field(10.0, "HTTP_TIMEOUT_SECONDS")

    access_token_ttl_seconds: int = env_field(3600, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(30 * 24 * 3600, "REFRESH_TOKEN_TTL_SECONDS")
    oauth_state_ttl_seconds: int = env_field(600, "OAUTH_STATE_TTL_SECONDS")
    magic_link_ttl_seconds: int = env_field(900, "MAGIC_LINK_TTL_SECONDS")
    session_handoff_ttl_seconds: int = env_field(300, "SESSION_HANDOFF_TTL_SECONDS")

    magic_link_rate_limit_per_email: int = env_field(3, "MAGIC_LINK_RATE_LIMIT_PER_EMAIL")
    magic_link_rate_limit_window_seconds: int = env_field(
        900, "MAGIC_LINK_RATE_LIMIT_WINDOW_SECONDS"
    )
    magic_link_rate_limit_per_ip_per_minute: int = env_field(
        10, "MAGIC_LINK_RATE_LIMIT_PER_IP_PER_MINUTE"
    )
    oauth_start_rate_limit_per_ip_per_minute: int = env_field(
        20, "OAUTH_START_RATE_LIMIT_PER_IP_PER_MINUTE"
    )

    cors_allow_origins: list[str] = env_field(["*"], "CORS_ALLOW_ORIGINS")

    host: str = env_field("0.0.0.0", "HOST")
    port: int = env_field(8000, "PORT")

    model_config = ConfigDict(extra="ignore")

    @staticmethod
    def _env_name(name: str, field: Any) -> str:
        extra = field.json_schema_extra if isinstance(field.json_schema_extra, dict) else {}
        return extra.get("env") or name.upper()

    @classmethod
    def from_env(cls, env_file: str = ".env") -> "Settings":
        """Build settings from the process environment, then ``env_file``."""
        file_values = dotenv_values(env_file)
        values: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            env_name = cls._env_name(name, field)
            raw = os.environ.get(env_name, file_values.get(env_name))
            if raw is not None:
                values[name] = raw
        return cls(**values)

    @field_validator(
        "jwt_secret",
        "github_client_id",
        "github_client_secret",
        "resend_api_key",
        "magic_link_base_url",
    )
    @classmethod
    def _blank_is_unset(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("cors_allow_origins", "custom_tenant_domains", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
