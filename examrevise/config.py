from __future__ import annotations

import json
import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from examrevise.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environments; production switches cookies to secure."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TEST = "test"


DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:3001",
    "https://exam-revise-ui.vercel.app",
    "https://examrevise.co.uk",
    "https://www.examrevise.co.uk",
]


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_list(value: Any) -> Any:
    """Accept JSON lists or comma-separated strings for list settings."""
    if value is None:
        return []
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return []
        if raw.startswith("["):
            return json.loads(raw)
        return [item.strip() for item in raw.split(",") if item.strip()]
    return value


class Settings(BaseModel):
    """Runtime settings for the auth service."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    database_url: str = env_field(
        "postgresql://localhost:5432/examrevise", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and deterministic test behaviors.",
    )
    state_dir: str = env_field(
        ".examrevise",
        "STATE_DIR",
        description="Directory holding the generated JWT secret when JWT_SECRET is unset",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("examrevise", "JWT_ISSUER")
    jwt_audience: str = env_field("examrevise-clients", "JWT_AUDIENCE")
    session_ttl_days: int = env_field(
        7,
        "SESSION_TTL_DAYS",
        ge=1,
        le=90,
        description="Lifetime shared by identity tokens and their session rows",
    )
    session_cookie_name: str = env_field("exam_revise_session", "SESSION_COOKIE_NAME")
    user_cookie_name: str = env_field("user", "USER_COOKIE_NAME")
    cookie_domains: List[str] = env_field(
        [],
        "COOKIE_DOMAINS",
        description="Extra cookie domains, e.g. .examrevise.co.uk; the first one is used when setting cookies",
    )
    cookie_secure: Optional[bool] = env_field(
        None,
        "COOKIE_SECURE",
        description="Defaults to true in production when unset",
    )
    cors_allow_origins: List[str] = env_field(
        list(DEFAULT_CORS_ORIGINS), "CORS_ALLOW_ORIGINS"
    )
    supabase_url: Optional[str] = env_field(None, "SUPABASE_URL")
    supabase_anon_key: Optional[str] = env_field(None, "SUPABASE_ANON_KEY")
    identity_timeout_seconds: float = env_field(10.0, "IDENTITY_TIMEOUT_SECONDS", gt=0)
    support_email: str = env_field("no-reply@examrevise.co.uk", "SUPPORT_EMAIL")
    default_redirect_url: str = env_field("/", "DEFAULT_REDIRECT_URL")
    callback_path: str = env_field("/auth/callback", "CALLBACK_PATH")
    session_sweep_interval_seconds: int = env_field(
        0,
        "SESSION_SWEEP_INTERVAL_SECONDS",
        ge=0,
        description="Interval for deleting long-expired sessions; 0 disables the sweep",
    )
    session_sweep_grace_hours: int = env_field(24, "SESSION_SWEEP_GRACE_HOURS", ge=0)

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
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def secure_cookies(self) -> bool:
        if self.cookie_secure is not None:
            return self.cookie_secure
        return self.is_production

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> Environment:
        if isinstance(value, str):
            return Environment(value.strip().lower())
        return Environment(value)

    @field_validator("cookie_domains", "cors_allow_origins", mode="before")
    @classmethod
    def _validate_lists(cls, value: Any) -> Any:
        return _split_list(value)

    @field_validator("supabase_url")
    @classmethod
    def _strip_trailing_slash(cls, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        return value.rstrip("/")

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < 16:
                raise ValueError("JWT_SECRET must be at least 16 characters")
            return value
        # Generated secrets are persisted under state_dir
        state_dir = Path(info.data.get("state_dir") or ".examrevise")
        secret_path = state_dir / ".jwt_secret"

        try:
            state_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(state_dir, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(state_dir),
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
                dir=str(state_dir), prefix=".jwt_secret_", suffix=".tmp"
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
                "Unable to persist JWT secret; set JWT_SECRET env var or make STATE_DIR writable"
            ) from exc
        logger.warning("jwt_secret_generated", path=str(secret_path))
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
