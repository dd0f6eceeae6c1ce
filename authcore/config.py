from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from authcore.logging import get_logger

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32


class ConfigurationError(RuntimeError):
    """Raised at startup when required secrets or settings are missing."""


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _read_secret_file(path: str | None) -> str | None:
    if not path:
        return None
    secret_path = Path(path)
    try:
        value = secret_path.read_text().strip()
    except OSError as exc:
        raise ValueError(f"unable to read secret file {secret_path.name}") from exc
    return value or None


class Settings(BaseModel):
    """Process-wide settings, loaded once at startup and injected into services."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authcore", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/authcore", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow in-process fallbacks for Redis and the profile service.",
    )
    host: str = env_field("127.0.0.1", "HOST")
    port: int = env_field(8000, "PORT", gt=0, lt=65536)

    # Token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_secret_file: str | None = env_field(
        None, "JWT_SECRET_FILE", description="Path to a mounted secret (e.g. /run/secrets/jwt_secret)"
    )
    jwt_issuer: str = env_field("authcore", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    temp_token_ttl_minutes: int = env_field(10, "TEMP_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS", gt=0)

    # Two-factor
    mfa_issuer: str = env_field("AuthCore", "MFA_ISSUER")
    mfa_encryption_key: str | None = env_field(
        None,
        "MFA_ENCRYPTION_KEY",
        description="Key material for encrypting TOTP secrets at rest; defaults to the JWT secret",
    )

    # OAuth settings
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(
        None,
        "OAUTH_REDIRECT_URI",
        description="Callback URL template; {provider} is replaced by the provider name",
    )
    oauth_google_redirect_uri: str | None = env_field(None, "OAUTH_GOOGLE_REDIRECT_URI")
    oauth_github_redirect_uri: str | None = env_field(None, "OAUTH_GITHUB_REDIRECT_URI")
    oauth_timeout_seconds: float = env_field(10.0, "OAUTH_TIMEOUT_SECONDS", gt=0)

    # Profile service
    profile_service_url: str | None = env_field(None, "PROFILE_SERVICE_URL")
    profile_service_timeout_seconds: float = env_field(
        5.0, "PROFILE_SERVICE_TIMEOUT_SECONDS", gt=0
    )
    internal_api_key: str | None = env_field(None, "INTERNAL_API_KEY")
    internal_api_key_file: str | None = env_field(None, "INTERNAL_API_KEY_FILE")

    # Prometheus scrape endpoint, Basic auth
    metrics_user: str | None = env_field(None, "METRICS_USER")
    metrics_password: str | None = env_field(None, "METRICS_PASSWORD")
    metrics_password_file: str | None = env_field(None, "METRICS_PASSWORD_FILE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment layered over ``.env``.

        Raises:
            ConfigurationError: if a required secret is missing or invalid.
        """
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        try:
            return cls(**merged)
        except ValidationError as exc:
            fields = sorted({".".join(str(p) for p in err["loc"]) or "settings" for err in exc.errors()})
            logger.error("settings_invalid", fields=fields)
            raise ConfigurationError(
                f"invalid configuration: {', '.join(fields)}"
            ) from exc

    @field_validator(
        "redis_url",
        "profile_service_url",
        "oauth_redirect_uri",
        "oauth_google_redirect_uri",
        "oauth_github_redirect_uri",
    )
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @model_validator(mode="after")
    def _load_secrets(self) -> "Settings":
        if not self.jwt_secret:
            self.jwt_secret = _read_secret_file(self.jwt_secret_file)
        if not self.jwt_secret:
            raise ValueError("JWT_SECRET or JWT_SECRET_FILE must be set")
        if len(self.jwt_secret) < MIN_SECRET_LENGTH:
            raise ValueError(
                f"JWT secret must be at least {MIN_SECRET_LENGTH} characters"
            )
        if not self.internal_api_key:
            self.internal_api_key = _read_secret_file(self.internal_api_key_file)
        if self.profile_service_url and not self.internal_api_key and not self.test_mode:
            raise ValueError("INTERNAL_API_KEY is required when PROFILE_SERVICE_URL is set")
        if not self.metrics_password:
            self.metrics_password = _read_secret_file(self.metrics_password_file)
        if self.oauth_redirect_uri and "{provider}" not in self.oauth_redirect_uri:
            # each provider calls back to its own /oauth/{provider}/callback route
            raise ValueError("OAUTH_REDIRECT_URI must contain a {provider} placeholder")
        return self

    @property
    def mfa_key_material(self) -> str:
        return self.mfa_encryption_key or self.jwt_secret or ""

    def oauth_redirect_uri_for(self, provider: str) -> str | None:
        override = getattr(self, f"oauth_{provider}_redirect_uri", None)
        if override:
            return override
        if not self.oauth_redirect_uri:
            return None
        return self.oauth_redirect_uri.replace("{provider}", provider)

    @property
    def metrics_enabled(self) -> bool:
        return bool(self.metrics_user and self.metrics_password)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    global _settings_cache
    _settings_cache = None
