from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional, Protocol

from examrevise.logging import get_logger
from examrevise.service.conflicts import ConflictDetector, ConflictReport
from examrevise.service.errors import (
    AuthError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    TokenExpiredError,
)
from examrevise.service.oauth import OAuthBridge, RegistrationHints
from examrevise.service.passwords import PasswordVerifier
from examrevise.service.sessions import SessionStore
from examrevise.service.tokens import TokenClaims, TokenPayload, TokenService
from examrevise.storage.models import DeviceProfile, Session, User

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid email or password"
OAUTH_ONLY_ACCOUNT = (
    'This email is registered with Google. Please use "Continue with Google" to sign in.'
)
NO_EXISTING_SESSIONS = "No existing sessions found"


def blocked_account_message(support_email: str) -> str:
    return (
        "Your account has been blocked. Please contact the administrator at "
        f"{support_email} for assistance."
    )


class UserStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def create_user(
        self,
        email: str,
        *,
        password: Optional[str] = None,
        user_name: Optional[str] = None,
        fname: Optional[str] = None,
        sname: Optional[str] = None,
        type: str = "user",
        is_blocked: bool = False,
        default_exam_id: Optional[int] = None,
        default_subject_id: Optional[int] = None,
        default_exam_board_id: Optional[int] = None,
        marketing_opt_in: bool = False,
        sign_up_date: Optional[date] = None,
    ) -> User: ...

    def touch_user(self, user_id: int) -> None: ...

    def set_user_password(
        self, user_id: int, password_hash: Optional[str]
    ) -> Optional[User]: ...


class LoginState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    VALIDATING = "validating"
    CONFLICT_CHECK = "conflict_check"
    PROMPTING = "prompting"
    ISSUING = "issuing"
    PERSISTED = "persisted"
    RESPONDED = "responded"


@dataclass
class ClientContext:
    """Where a request came from, as seen by the HTTP layer."""

    device: DeviceProfile = field(default_factory=DeviceProfile)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class LoginCommand:
    email: str
    password: str
    client: ClientContext = field(default_factory=ClientContext)
    force_login: bool = False


@dataclass
class OAuthCommand:
    access_token: Optional[str]
    client: ClientContext = field(default_factory=ClientContext)
    force_login: bool = False
    registration: Optional[RegistrationHints] = None

    @property
    def is_new_registration(self) -> bool:
        return self.registration is not None


@dataclass
class LoginOutcome:
    user: User
    session: Session
    token: str
    payload: TokenPayload
    login_method: str
    user_created: bool = False
    sessions_invalidated: int = 0


@dataclass
class ValidationOutcome:
    user: User
    session: Session
    payload: TokenPayload
    expires_in: timedelta


@dataclass
class SessionCheckOutcome:
    report: ConflictReport
    device: DeviceProfile
    known_user: bool


@dataclass
class LogoutOutcome:
    session_invalidated: bool = False
    clean: bool = True


def _requires_auth(exc: AuthError | ForbiddenError, **extra) -> AuthError | ForbiddenError:
    exc.extra.update({"valid": False, "requiresAuth": True, **extra})
    return exc


class SessionOrchestrator:
    """Drives login, logout, validation and conflict probes over injected parts."""

    def __init__(
        self,
        *,
        users: UserStore,
        sessions: SessionStore,
        tokens: TokenService,
        passwords: PasswordVerifier,
        conflicts: ConflictDetector,
        oauth: OAuthBridge,
        blocked_message: str,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.users = users
        self.sessions = sessions
        self.tokens = tokens
        self.passwords = passwords
        self.conflicts = conflicts
        self.oauth = oauth
        self.blocked_message = blocked_message
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    def _enter(self, flow: str, state: LoginState, **context) -> LoginState:
        self.logger.debug("auth_state", flow=flow, state=state.value, **context)
        return state

    async def login(self, command: LoginCommand) -> LoginOutcome:
        """Email/password login.

        Raises:
            AuthError: unknown email, OAuth-only account or wrong password
            ForbiddenError: account is blocked
            ConflictError: live sessions on other devices and no force flag
            InternalError: the session row could not be written
        """
        self._enter("login", LoginState.UNAUTHENTICATED)
        self._enter("login", LoginState.VALIDATING)
        email = command.email.strip().lower()
        user = self.users.get_user_by_email(email)
        if not user:
            self.logger.warning("login_unknown_email")
            raise AuthError(INVALID_CREDENTIALS)
        if user.is_blocked:
            self.logger.warning("login_blocked_user", user_id=user.user_id)
            raise ForbiddenError(self.blocked_message)
        if user.is_oauth_only:
            self.logger.info("login_oauth_only_account", user_id=user.user_id)
            raise AuthError(OAUTH_ONLY_ACCOUNT)
        matched = await asyncio.to_thread(
            self.passwords.verify, command.password, user.password
        )
        if not matched:
            self.logger.warning("login_bad_password", user_id=user.user_id)
            raise AuthError(INVALID_CREDENTIALS)
        await self._upgrade_password_hash(user, command.password)

        outcome = self._establish(
            "login",
            user,
            command.client,
            method="email",
            force_login=command.force_login,
            skip_conflict_check=False,
        )
        self.logger.info(
            "login_succeeded",
            user_id=user.user_id,
            forced=command.force_login,
            sessions_invalidated=outcome.sessions_invalidated,
        )
        return outcome

    async def oauth_login(self, command: OAuthCommand) -> LoginOutcome:
        """Login through an external access token; may create the local user."""
        self._enter("oauth", LoginState.UNAUTHENTICATED)
        self._enter("oauth", LoginState.VALIDATING)
        user, created = await self.oauth.resolve(
            command.access_token,
            command.registration,
            blocked_message=self.blocked_message,
        )
        outcome = self._establish(
            "oauth",
            user,
            command.client,
            method="oauth",
            force_login=command.force_login,
            skip_conflict_check=created or command.is_new_registration,
        )
        outcome.user_created = created
        self.logger.info(
            "oauth_login_succeeded",
            user_id=user.user_id,
            user_created=created,
            forced=command.force_login,
        )
        return outcome

    def _establish(
        self,
        flow: str,
        user: User,
        client: ClientContext,
        *,
        method: str,
        force_login: bool,
        skip_conflict_check: bool,
    ) -> LoginOutcome:
        invalidated = 0
        if force_login:
            invalidated = self.sessions.invalidate_others(user.user_id)
        elif not skip_conflict_check:
            self._enter(flow, LoginState.CONFLICT_CHECK, user_id=user.user_id)
            report = self.conflicts.check(user.user_id, client.device)
            if report.should_prompt:
                self._enter(flow, LoginState.PROMPTING, user_id=user.user_id)
                self.logger.info(
                    "login_conflict_prompt",
                    user_id=user.user_id,
                    other_devices=len(report.active_sessions),
                )
                raise ConflictError(
                    report.message or "Session conflict detected",
                    extra={
                        "sessionConflict": True,
                        "message": report.message,
                        "activeSessions": report.session_summaries(),
                        "currentDevice": client.device.to_dict(),
                        "requiresConfirmation": True,
                    },
                )

        self._enter(flow, LoginState.ISSUING, user_id=user.user_id)
        token, payload = self.tokens.issue_for(
            TokenClaims(user_id=user.user_id, email=user.email, role=user.type or "user"),
            self.sessions.ttl,
        )
        session = self.sessions.create(
            user.user_id,
            token,
            client.device,
            client.ip_address,
            client.user_agent,
            method,
            expires_at=payload.expires_at,
        )
        self._enter(flow, LoginState.PERSISTED, session_id=session.session_id)
        self._touch_user(user.user_id)
        self._enter(flow, LoginState.RESPONDED, user_id=user.user_id)
        return LoginOutcome(
            user=user,
            session=session,
            token=token,
            payload=payload,
            login_method=method,
            sessions_invalidated=invalidated,
        )

    def _touch_user(self, user_id: int) -> None:
        try:
            self.users.touch_user(user_id)
        except Exception as exc:
            self.logger.warning(
                "user_touch_failed", user_id=user_id, error_type=type(exc).__name__
            )

    async def _upgrade_password_hash(self, user: User, password: str) -> None:
        if not user.password or not self.passwords.needs_rehash(user.password):
            return
        try:
            new_hash = await asyncio.to_thread(self.passwords.hash, password)
            self.users.set_user_password(user.user_id, new_hash)
            self.logger.info("password_hash_upgraded", user_id=user.user_id)
        except Exception as exc:
            self.logger.warning(
                "password_hash_upgrade_failed",
                user_id=user.user_id,
                error_type=type(exc).__name__,
            )

    async def validate(self, token: Optional[str]) -> ValidationOutcome:
        """Confirm a token still maps to a live session of an allowed user.

        Raises:
            AuthError: missing, invalid or expired token, or no live session/user
            ForbiddenError: the user has been blocked since the token was issued
        """
        if not token:
            raise _requires_auth(AuthError("No authentication token provided"))
        try:
            payload = self.tokens.verify(token)
        except AuthError as exc:
            self.logger.info("validate_token_rejected", reason=type(exc).__name__)
            raise _requires_auth(exc)

        try:
            session = self.sessions.find_active(token)
        except NotFoundError:
            self.logger.info("validate_session_inactive", user_id=payload.user_id)
            raise _requires_auth(AuthError("Session not found or expired"))
        except Exception as exc:
            self.logger.warning(
                "validate_session_lookup_failed",
                user_id=payload.user_id,
                error_type=type(exc).__name__,
            )
            raise _requires_auth(AuthError("Session not found or expired"))

        try:
            user = self.users.get_user(payload.user_id)
        except Exception as exc:
            self.logger.warning(
                "validate_user_lookup_failed",
                user_id=payload.user_id,
                error_type=type(exc).__name__,
            )
            raise _requires_auth(AuthError("User account not found"))
        if not user or user.email.lower() != payload.email.lower():
            self.logger.warning("validate_user_missing", user_id=payload.user_id)
            raise _requires_auth(AuthError("User account not found"))
        if user.is_blocked:
            self.logger.warning("validate_blocked_user", user_id=user.user_id)
            raise _requires_auth(ForbiddenError(self.blocked_message), blocked=True)

        self.sessions.touch(token)
        return ValidationOutcome(
            user=user,
            session=session,
            payload=payload,
            expires_in=payload.remaining(self._now()),
        )

    async def logout(
        self, token: Optional[str], *, upstream_access_token: Optional[str] = None
    ) -> LogoutOutcome:
        """Invalidate the caller's session. Never raises."""
        outcome = LogoutOutcome()
        try:
            if token:
                try:
                    self.tokens.verify(token)
                    authentic = True
                except AuthError as exc:
                    # An expired token is still ours; its session may be live
                    authentic = isinstance(exc, TokenExpiredError)
                if authentic:
                    outcome.session_invalidated = self.sessions.invalidate(token)
                    if not outcome.session_invalidated:
                        outcome.clean = False
            if upstream_access_token:
                await self.oauth.provider.sign_out(upstream_access_token)
        except Exception as exc:
            outcome.clean = False
            self.logger.warning(
                "logout_partial_failure",
                error_type=type(exc).__name__,
                error=str(exc),
            )
        self.logger.info(
            "logout_completed",
            session_invalidated=outcome.session_invalidated,
            clean=outcome.clean,
        )
        return outcome

    async def check_session(self, email: str, device: DeviceProfile) -> SessionCheckOutcome:
        """Report cross-device conflicts for an email without signing anyone in."""
        user = self.users.get_user_by_email(email.strip().lower())
        if not user:
            return SessionCheckOutcome(
                report=ConflictReport(message=NO_EXISTING_SESSIONS),
                device=device,
                known_user=False,
            )
        if user.is_blocked:
            raise ForbiddenError(self.blocked_message)
        report = self.conflicts.check(user.user_id, device)
        return SessionCheckOutcome(report=report, device=device, known_user=True)


__all__ = [
    "ClientContext",
    "LoginCommand",
    "LoginOutcome",
    "LoginState",
    "LogoutOutcome",
    "OAuthCommand",
    "SessionCheckOutcome",
    "SessionOrchestrator",
    "UserStore",
    "ValidationOutcome",
    "blocked_account_message",
]
