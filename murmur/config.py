from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any, List

from dotenv import dotenv_values
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

from murmur.logging import get_logger

logger = get_logger(__name__)

_DEFAULT_FS_ROOT = "/srv/murmur"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(fs_root: Path, filename: str) -> str:
    """Return a persisted signing secret, generating one on first use."""
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different ownership (e.g., in container)
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup", error=str(exc), path=str(fs_root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if persisted and len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp"
        )
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the secret via env var or make SHARED_FS_ROOT writable"
        ) from exc
    logger.warning("secret_generated", path=str(secret_path))
    return generated


class Settings(BaseModel):
    """Runtime settings for the messaging service."""

    database_url: str = env_field("postgresql://localhost:5432/murmur", "DATABASE_URL")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field(_DEFAULT_FS_ROOT, "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (runtime resets, sync Redis client).",
    )

    # Token signing. Access and refresh tokens are signed with different secrets.
    jwt_access_secret: str | None = env_field(
        None, "JWT_ACCESS_SECRET", validate_default=True
    )
    jwt_refresh_secret: str | None = env_field(
        None, "JWT_REFRESH_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("murmur", "JWT_ISSUER")
    jwt_audience: str = env_field("murmur-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(0, "JWT_LEEWAY_SECONDS", ge=0, le=300)
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", ge=1
    )
    otp_ttl_minutes: int = env_field(
        10, "OTP_TTL_MINUTES", ge=1, description="Lifetime of password reset codes"
    )
    field_encryption_key: str | None = env_field(
        None,
        "FIELD_ENCRYPTION_KEY",
        description="Key material for encrypting phone numbers; falls back to the access secret",
    )

    # Rate limits
    message_rate_limit: int = env_field(10, "MESSAGE_RATE_LIMIT", ge=1)
    message_rate_window_seconds: int = env_field(3600, "MESSAGE_RATE_WINDOW_SECONDS", ge=1)
    signin_rate_limit_per_minute: int = env_field(20, "SIGNIN_RATE_LIMIT_PER_MINUTE")
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")

    # Pagination
    default_page_size: int = env_field(20, "DEFAULT_PAGE_SIZE", ge=1)
    max_page_size: int = env_field(100, "MAX_PAGE_SIZE", ge=1)

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Murmur", "EMAIL_FROM_NAME")

    # Outbox worker
    outbox_worker_enabled: bool = env_field(True, "OUTBOX_WORKER_ENABLED")
    outbox_poll_interval: int = env_field(
        5, "OUTBOX_POLL_INTERVAL", ge=1, description="Seconds between outbox polls"
    )
    outbox_batch_size: int = env_field(20, "OUTBOX_BATCH_SIZE", ge=1)
    outbox_stale_after: int = env_field(
        300,
        "OUTBOX_STALE_AFTER",
        ge=1,
        description="Seconds before an unfinished delivery is marked failed",
    )

    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("jwt_access_secret")
    @classmethod
    def _ensure_access_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        fs_root = Path(info.data.get("shared_fs_root") or _DEFAULT_FS_ROOT)
        return _load_or_create_secret(fs_root, ".jwt_access_secret")

    @field_validator("jwt_refresh_secret")
    @classmethod
    def _ensure_refresh_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        fs_root = Path(info.data.get("shared_fs_root") or _DEFAULT_FS_ROOT)
        return _load_or_create_secret(fs_root, ".jwt_refresh_secret")

    @model_validator(mode="after")
    def _check_secrets_distinct(self) -> "Settings":
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must differ")
        if self.max_page_size < self.default_page_size:
            raise ValueError("MAX_PAGE_SIZE must be >= DEFAULT_PAGE_SIZE")
        return self


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
