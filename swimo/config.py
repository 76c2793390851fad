from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from swimo.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session/token service."""

    database_url: str = env_field("postgresql://localhost:5432/swimo", "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/swimo", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Skip persistence of the in-memory store and other deterministic test toggles.",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    access_token_ttl_seconds: int = env_field(
        15 * 60,
        "JWT_ACCESS_TTL_SECONDS",
        ge=0,
        description="Lifetime of signed access tokens",
    )
    refresh_token_ttl_seconds: int = env_field(
        30 * 24 * 60 * 60,
        "JWT_REFRESH_TTL_SECONDS",
        ge=0,
        description="Lifetime of opaque refresh credentials",
    )
    refresh_token_bytes: int = env_field(
        32,
        "REFRESH_TOKEN_BYTES",
        ge=16,
        description="Random bytes drawn before hashing a refresh credential",
    )
    guest_enabled: bool = env_field(True, "GUEST_ENABLED")
    guest_rate_per_minute: int = env_field(
        0,
        "GUEST_RATE_PER_MINUTE",
        ge=0,
        description="Guest sign-ins allowed per user agent per minute; 0 disables the limit",
    )
    store_timeout_seconds: float | None = env_field(
        5.0,
        "STORE_TIMEOUT_SECONDS",
        description="Deadline applied to each auth operation by the HTTP layer",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("store_timeout_seconds", mode="before")
    @classmethod
    def _normalize_timeout(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        try:
            number = float(value)
        except (TypeError, ValueError):
            return value
        return None if number == 0 else value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        fs_root = info.data.get("shared_fs_root") or cls.model_fields["shared_fs_root"].default
        return load_or_create_secret(Path(fs_root))


def _read_persisted_secret(path: Path) -> str | None:
    if not path.is_file() or path.is_symlink():
        return None
    try:
        persisted = path.read_text().strip()
    except OSError as exc:
        logger.error("jwt_secret_read_failed", error=str(exc), path=str(path))
        return None
    return persisted if len(persisted) >= _MIN_SECRET_LENGTH else None


def load_or_create_secret(fs_root: Path) -> str:
    """Return the signing secret stored under ``fs_root``, creating it on first use.

    The file is created with mode 0600 by hard-linking a fully written temp
    file into place, so concurrent workers that race on first start all adopt
    whichever secret landed first. An unreadable or too-short file is replaced.
    """
    secret_path = fs_root / ".jwt_secret"
    persisted = _read_persisted_secret(secret_path)
    if persisted:
        return persisted

    generated = secrets.token_urlsafe(64)
    tmp_path: str | None = None
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp")
        with os.fdopen(fd, "w") as handle:
            os.fchmod(handle.fileno(), 0o600)
            handle.write(generated)
        try:
            os.link(tmp_path, secret_path)
        except FileExistsError:
            persisted = _read_persisted_secret(secret_path)
            if persisted:
                logger.info("jwt_secret_adopted", path=str(secret_path))
                return persisted
            os.replace(tmp_path, secret_path)
            tmp_path = None
    except OSError as exc:
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    finally:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
    logger.warning("jwt_secret_generated", path=str(secret_path))
    return generated
