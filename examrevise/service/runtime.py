from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from examrevise.config import Settings, get_settings, reset_settings_cache
from examrevise.logging import get_logger
from examrevise.service.auth import SessionOrchestrator, blocked_account_message
from examrevise.service.conflicts import ConflictDetector
from examrevise.service.oauth import OAuthBridge, SupabaseIdentityProvider
from examrevise.service.passwords import PasswordVerifier
from examrevise.service.sessions import SessionStore
from examrevise.service.tokens import TokenService
from examrevise.storage.memory import MemoryStore
from examrevise.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with '***' for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Builds the store and services once and wires them together."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Union[MemoryStore, PostgresStore, None] = None,
        identity_provider: Optional[SupabaseIdentityProvider] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        if store is not None:
            self.store = store
        else:
            store_type = "memory" if self.settings.use_memory_store else "postgres"
            try:
                self.store = (
                    MemoryStore()
                    if self.settings.use_memory_store
                    else PostgresStore(self.settings.database_url)
                )
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type=store_type,
                    database_url=_mask_url_password(self.settings.database_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
            logger.info("runtime_store_initialized", store_type=store_type)

        ttl = timedelta(days=self.settings.session_ttl_days)
        self.tokens = TokenService(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            ttl=ttl,
        )
        self.sessions = SessionStore(self.store, ttl=ttl)
        self.passwords = PasswordVerifier()
        self.identity = identity_provider or SupabaseIdentityProvider(
            self.settings.supabase_url,
            self.settings.supabase_anon_key,
            timeout=self.settings.identity_timeout_seconds,
        )
        self.auth = SessionOrchestrator(
            users=self.store,
            sessions=self.sessions,
            tokens=self.tokens,
            passwords=self.passwords,
            conflicts=ConflictDetector(self.sessions),
            oauth=OAuthBridge(self.identity, self.store),
            blocked_message=blocked_account_message(self.settings.support_email),
        )
        logger.info(
            "runtime_initialized",
            session_ttl_days=self.settings.session_ttl_days,
            identity_provider_configured=self.identity.is_configured,
        )

    def close(self) -> None:
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the process-wide Runtime (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def get_orchestrator() -> SessionOrchestrator:
    """FastAPI dependency; override it to inject a different orchestrator."""
    return get_runtime().auth


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh environment read; TEST_MODE only."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
