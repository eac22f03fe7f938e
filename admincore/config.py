from __future__ import annotations

import os
import secrets
import tempfile
from datetime import timedelta
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from admincore.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the admin core; every field maps to one env var."""

    database_url: str = env_field(
        "postgresql://localhost:5432/admincore", "DATABASE_URL"
    )
    shared_fs_root: str = env_field("/srv/admincore", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    seed_defaults: bool = env_field(
        True,
        "SEED_DEFAULTS",
        description="Create built-in permissions, roles and menus on startup when missing",
    )
    seed_dev_users: bool = env_field(
        False,
        "SEED_DEV_USERS",
        description="Create admin@example.com / user@example.com development accounts",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (cheaper argon2 parameters)",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    # Lockout policy
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS", ge=1)
    lock_duration_ms: int = env_field(30 * 60 * 1000, "LOCK_DURATION_MS", ge=0)

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("admincore", "JWT_ISSUER")
    jwt_audience: str = env_field("admincore-clients", "JWT_AUDIENCE")
    access_token_expiry_ms: int = env_field(
        24 * 60 * 60 * 1000, "JWT_EXPIRATION_MS", ge=1
    )
    refresh_token_expiry_ms: int = env_field(
        7 * 24 * 60 * 60 * 1000, "JWT_REFRESH_EXPIRATION_MS", ge=1
    )

    # Authorization
    admin_role_name: str = env_field("ROLE_ADMIN", "ADMIN_ROLE_NAME")
    admin_permission_name: str = env_field(
        "SYSTEM_ADMIN",
        "ADMIN_PERMISSION_NAME",
        description="Name of the seeded SYSTEM permission with the ADMIN action",
    )
    manager_role_name: str = env_field("ROLE_MANAGER", "MANAGER_ROLE_NAME")
    default_role_name: str = env_field("ROLE_USER", "DEFAULT_ROLE_NAME")
    allow_unmapped_urls: bool = env_field(
        True,
        "ALLOW_UNMAPPED_URLS",
        description="Treat URLs with no menu mapping as unprotected",
    )
    menu_max_depth: int = env_field(10, "MENU_MAX_DEPTH", ge=1)

    # HTTP
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(False, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    build_sha: str = env_field("dev", "BUILD_SHA")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
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
        return cls(**merged)

    @property
    def lock_duration(self) -> timedelta:
        return timedelta(milliseconds=self.lock_duration_ms)

    @property
    def access_token_ttl(self) -> timedelta:
        return timedelta(milliseconds=self.access_token_expiry_ms)

    @property
    def refresh_token_ttl(self) -> timedelta:
        return timedelta(milliseconds=self.refresh_token_expiry_ms)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated JWT secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/admincore"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
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
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


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
