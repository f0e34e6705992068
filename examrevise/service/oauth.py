from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional, Protocol, Tuple

import httpx

from examrevise.logging import get_logger
from examrevise.service.errors import AuthError, ForbiddenError, InternalError, ValidationError
from examrevise.storage.errors import ConstraintViolation
from examrevise.storage.models import User

if TYPE_CHECKING:
    from examrevise.service.auth import UserStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class ExternalIdentity:
    """Identity confirmed by the upstream provider."""

    email: str
    provider_uid: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RegistrationHints:
    """Defaults a client may send when the OAuth login is also a sign-up."""

    exam_id: Optional[int] = None
    subject_id: Optional[int] = None
    board_id: Optional[int] = None
    marketing_opt_in: bool = False


class IdentityProvider(Protocol):
    async def fetch_identity(self, access_token: str) -> ExternalIdentity: ...

    async def sign_out(self, access_token: str) -> None: ...


class SupabaseIdentityProvider:
    """Resolves Supabase access tokens through the GoTrue REST API."""

    def __init__(
        self,
        base_url: Optional[str],
        api_key: Optional[str],
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") if base_url else None
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport
        self._token_registry: dict[str, ExternalIdentity] = {}
        self.logger = logger

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    def register_token(self, access_token: str, identity: ExternalIdentity) -> None:
        """Record a pre-resolved identity for testing or offline flows."""

        self._token_registry[access_token] = identity

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=False, transport=self._transport
        )

    def _headers(self, access_token: str) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
        return headers

    async def fetch_identity(self, access_token: str) -> ExternalIdentity:
        registered = self._token_registry.get(access_token)
        if registered:
            return registered
        if not self.is_configured:
            self.logger.error("identity_provider_not_configured")
            raise AuthError("Invalid access token")

        try:
            async with self._client() as client:
                response = await client.get(
                    f"{self.base_url}/auth/v1/user", headers=self._headers(access_token)
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self.logger.warning(
                "identity_lookup_rejected", status_code=exc.response.status_code
            )
            raise AuthError("Invalid access token") from exc
        except httpx.HTTPError as exc:
            self.logger.error("identity_lookup_failed", error=str(exc))
            raise AuthError("Invalid access token") from exc

        try:
            body = response.json()
        except ValueError as exc:
            self.logger.error("identity_lookup_parse_error", error=str(exc))
            raise AuthError("Invalid access token") from exc
        if not isinstance(body, dict) or not body.get("email"):
            self.logger.warning("identity_lookup_missing_email")
            raise AuthError("Invalid access token")

        metadata = body.get("user_metadata")
        return ExternalIdentity(
            email=str(body["email"]),
            provider_uid=str(body["id"]) if body.get("id") else None,
            metadata=metadata if isinstance(metadata, dict) else {},
        )

    async def sign_out(self, access_token: str) -> None:
        if self._token_registry.pop(access_token, None) is not None:
            return
        if not self.is_configured:
            return
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/auth/v1/logout", headers=self._headers(access_token)
            )
            response.raise_for_status()


def split_display_name(identity: ExternalIdentity) -> Tuple[str, str]:
    """Derive (first, last) names from provider metadata."""
    meta = identity.metadata or {}
    full_name = str(meta.get("full_name") or meta.get("name") or "").strip()
    parts = full_name.split(" ") if full_name else []
    first = str(meta.get("given_name") or (parts[0] if parts else "")).strip()
    last = str(meta.get("family_name") or " ".join(parts[1:])).strip()
    return first, last


class OAuthBridge:
    """Maps an external access token onto a local user, creating it on first sight."""

    def __init__(self, provider: IdentityProvider, users: "UserStore") -> None:
        self.provider = provider
        self.users = users
        self.logger = logger

    async def resolve(
        self,
        access_token: Optional[str],
        registration: Optional[RegistrationHints] = None,
        *,
        blocked_message: str,
    ) -> Tuple[User, bool]:
        """Return ``(user, created)`` for the token's owner.

        Raises:
            ValidationError: no access token was supplied
            AuthError: the provider rejected the token
            ForbiddenError: the local account is blocked
            InternalError: the local account could not be created
        """
        if not access_token or not access_token.strip():
            raise ValidationError("No access token provided")
        identity = await self.provider.fetch_identity(access_token.strip())
        email = identity.email.strip().lower()

        existing = self.users.get_user_by_email(email)
        if existing:
            if existing.is_blocked:
                self.logger.warning("oauth_blocked_user", user_id=existing.user_id)
                raise ForbiddenError(blocked_message)
            return existing, False

        first, last = split_display_name(identity)
        hints = registration or RegistrationHints()
        try:
            user = self.users.create_user(
                email,
                password=None,
                user_name=first or email.split("@")[0] or "User",
                fname=first,
                sname=last,
                type="user",
                default_exam_id=hints.exam_id,
                default_subject_id=hints.subject_id,
                default_exam_board_id=hints.board_id,
                marketing_opt_in=hints.marketing_opt_in,
                sign_up_date=_today(),
            )
        except ConstraintViolation:
            # Lost a race with a parallel first login for the same email
            user = self.users.get_user_by_email(email)
            if user is None:
                raise InternalError("Failed to create user account")
            if user.is_blocked:
                raise ForbiddenError(blocked_message)
            return user, False
        except Exception as exc:
            self.logger.error(
                "oauth_user_create_failed", error_type=type(exc).__name__, error=str(exc)
            )
            raise InternalError("Failed to create user account") from exc

        self.logger.info("oauth_user_created", user_id=user.user_id)
        return user, True


def _today() -> date:
    return datetime.now(timezone.utc).date()


__all__ = [
    "ExternalIdentity",
    "IdentityProvider",
    "OAuthBridge",
    "RegistrationHints",
    "SupabaseIdentityProvider",
    "split_display_name",
]
