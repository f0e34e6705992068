"""Unit tests for the session orchestrator.

Covers:
- Email/password login, including blocked and OAuth-only accounts
- Conflict prompting and forced login
- OAuth login and first-sight registration
- Token validation against live sessions
- Logout and session probes
"""

from datetime import datetime, timedelta, timezone

import bcrypt
import pytest
from argon2 import PasswordHasher, Type

from examrevise.service.auth import (
    INVALID_CREDENTIALS,
    NO_EXISTING_SESSIONS,
    OAUTH_ONLY_ACCOUNT,
    ClientContext,
    LoginCommand,
    LoginState,
    OAuthCommand,
    SessionOrchestrator,
    blocked_account_message,
)
from examrevise.service.conflicts import ConflictDetector
from examrevise.service.errors import (
    AuthError,
    ConflictError,
    ForbiddenError,
    TokenExpiredError,
    TokenInvalidError,
    ValidationError,
)
from examrevise.service.oauth import (
    ExternalIdentity,
    OAuthBridge,
    RegistrationHints,
    SupabaseIdentityProvider,
)
from examrevise.service.passwords import PasswordVerifier
from examrevise.service.sessions import SessionStore
from examrevise.service.tokens import TokenService
from examrevise.storage.memory import MemoryStore
from examrevise.storage.models import DeviceProfile

TTL = timedelta(days=7)
PASSWORD = "Revision2024"
BLOCKED = blocked_account_message("support@examrevise.test")

LAPTOP = ClientContext(
    device=DeviceProfile(browser="Chrome", os="Windows", device="Desktop"),
    ip_address="203.0.113.10",
    user_agent="laptop-agent",
)
PHONE = ClientContext(
    device=DeviceProfile(browser="Safari", os="iOS", device="Mobile", mobile=True),
    ip_address="198.51.100.20",
    user_agent="phone-agent",
)


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 10, 1, 7, 45, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, delta):
        self.now = self.now + delta


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def passwords():
    return PasswordVerifier(PasswordHasher(type=Type.ID, time_cost=1, memory_cost=8, parallelism=1))


@pytest.fixture
def provider():
    provider = SupabaseIdentityProvider(None, None)
    provider.register_token("google-token", ExternalIdentity(email="ada@example.com"))
    provider.register_token("new-google-token", ExternalIdentity(email="newbie@example.com"))
    return provider


@pytest.fixture
def orchestrator(store, passwords, provider, clock):
    sessions = SessionStore(store, ttl=TTL, clock=clock)
    tokens = TokenService(
        "orchestrator-test-secret-123456",
        issuer="examrevise",
        audience="examrevise-clients",
        ttl=TTL,
        clock=clock,
    )
    return SessionOrchestrator(
        users=store,
        sessions=sessions,
        tokens=tokens,
        passwords=passwords,
        conflicts=ConflictDetector(sessions),
        oauth=OAuthBridge(provider, store),
        blocked_message=BLOCKED,
        clock=clock,
    )


@pytest.fixture
def user(store, passwords):
    return store.create_user(
        "ada@example.com", password=passwords.hash(PASSWORD), user_name="ada", fname="Ada"
    )


def _login(email="ada@example.com", password=PASSWORD, client=LAPTOP, force=False):
    return LoginCommand(email=email, password=password, client=client, force_login=force)


class TestLogin:
    @pytest.mark.asyncio
    async def test_login_issues_token_and_session(self, orchestrator, user, clock):
        outcome = await orchestrator.login(_login())
        assert outcome.user.user_id == user.user_id
        assert outcome.login_method == "email"
        assert outcome.session.session_token == outcome.token
        assert outcome.session.expires_at == outcome.payload.expires_at
        assert outcome.payload.expires_at == clock.now + TTL
        assert outcome.session.device_info.browser == "Chrome"
        assert outcome.session.ip_address == "203.0.113.10"

    @pytest.mark.asyncio
    async def test_email_is_case_insensitive(self, orchestrator, user):
        outcome = await orchestrator.login(_login(email="  ADA@Example.COM "))
        assert outcome.user.user_id == user.user_id

    @pytest.mark.asyncio
    async def test_wrong_password(self, orchestrator, user):
        with pytest.raises(AuthError) as excinfo:
            await orchestrator.login(_login(password="nope"))
        assert excinfo.value.message == INVALID_CREDENTIALS

    @pytest.mark.asyncio
    async def test_unknown_email_same_message(self, orchestrator):
        with pytest.raises(AuthError) as excinfo:
            await orchestrator.login(_login(email="ghost@example.com"))
        assert excinfo.value.message == INVALID_CREDENTIALS

    @pytest.mark.asyncio
    async def test_oauth_only_account(self, orchestrator, store):
        store.create_user("google@example.com")
        with pytest.raises(AuthError) as excinfo:
            await orchestrator.login(_login(email="google@example.com"))
        assert excinfo.value.message == OAUTH_ONLY_ACCOUNT

    @pytest.mark.asyncio
    async def test_blocked_checked_before_password(self, orchestrator, store, user):
        store.set_user_blocked(user.user_id, True)
        with pytest.raises(ForbiddenError) as excinfo:
            await orchestrator.login(_login(password="wrong"))
        assert excinfo.value.message == BLOCKED

    @pytest.mark.asyncio
    async def test_bcrypt_hash_upgraded_on_login(self, orchestrator, store):
        legacy = bcrypt.hashpw(PASSWORD.encode(), bcrypt.gensalt(rounds=4)).decode()
        created = store.create_user("legacy@example.com", password=legacy)
        await orchestrator.login(_login(email="legacy@example.com"))
        assert store.get_user(created.user_id).password.startswith("$argon2id$")

    @pytest.mark.asyncio
    async def test_login_touches_user(self, orchestrator, store, user):
        before = store.get_user(user.user_id).updated_at
        await orchestrator.login(_login())
        assert store.get_user(user.user_id).updated_at >= before

    @pytest.mark.asyncio
    async def test_login_walks_states_in_order(self, orchestrator, user):
        states = []

        class RecordingLogger:
            def debug(self, event, **kw):
                if event == "auth_state":
                    states.append(kw["state"])

            def info(self, event, **kw):
                pass

            warning = info

        orchestrator.logger = RecordingLogger()
        await orchestrator.login(_login())
        assert states == [
            LoginState.UNAUTHENTICATED.value,
            LoginState.VALIDATING.value,
            LoginState.CONFLICT_CHECK.value,
            LoginState.ISSUING.value,
            LoginState.PERSISTED.value,
            LoginState.RESPONDED.value,
        ]


class TestConflicts:
    @pytest.mark.asyncio
    async def test_other_device_prompts(self, orchestrator, user):
        first = await orchestrator.login(_login(client=LAPTOP))
        with pytest.raises(ConflictError) as excinfo:
            await orchestrator.login(_login(client=PHONE))
        extra = excinfo.value.extra
        assert extra["sessionConflict"] is True
        assert extra["requiresConfirmation"] is True
        assert extra["currentDevice"]["device"] == "Mobile"
        assert [s["session_id"] for s in extra["activeSessions"]] == [first.session.session_id]
        assert extra["message"].startswith("You have 1 active session(s) on other devices.")

    @pytest.mark.asyncio
    async def test_prompt_leaves_existing_session_alone(self, orchestrator, user):
        first = await orchestrator.login(_login(client=LAPTOP))
        with pytest.raises(ConflictError):
            await orchestrator.login(_login(client=PHONE))
        assert (await orchestrator.validate(first.token)).session.session_id == first.session.session_id

    @pytest.mark.asyncio
    async def test_same_device_relogin_has_no_prompt(self, orchestrator, user):
        first = await orchestrator.login(_login(client=LAPTOP))
        second = await orchestrator.login(_login(client=LAPTOP))
        assert second.token != first.token
        await orchestrator.validate(first.token)
        await orchestrator.validate(second.token)

    @pytest.mark.asyncio
    async def test_force_login_invalidates_everything_else(self, orchestrator, user):
        first = await orchestrator.login(_login(client=LAPTOP))
        forced = await orchestrator.login(_login(client=PHONE, force=True))
        assert forced.sessions_invalidated == 1
        with pytest.raises(AuthError) as excinfo:
            await orchestrator.validate(first.token)
        assert excinfo.value.message == "Session not found or expired"
        await orchestrator.validate(forced.token)


class TestOAuthLogin:
    @pytest.mark.asyncio
    async def test_new_user_created_without_conflict_check(self, orchestrator, store):
        outcome = await orchestrator.oauth_login(
            OAuthCommand(access_token="new-google-token", client=PHONE)
        )
        assert outcome.user_created is True
        assert outcome.login_method == "oauth"
        assert store.get_user_by_email("newbie@example.com").is_oauth_only

    @pytest.mark.asyncio
    async def test_existing_user_gets_conflict_prompt(self, orchestrator, user):
        await orchestrator.login(_login(client=LAPTOP))
        with pytest.raises(ConflictError):
            await orchestrator.oauth_login(OAuthCommand(access_token="google-token", client=PHONE))

    @pytest.mark.asyncio
    async def test_registration_data_skips_conflict_check(self, orchestrator, user):
        await orchestrator.login(_login(client=LAPTOP))
        outcome = await orchestrator.oauth_login(
            OAuthCommand(
                access_token="google-token",
                client=PHONE,
                registration=RegistrationHints(exam_id=1),
            )
        )
        assert outcome.user_created is False
        assert outcome.sessions_invalidated == 0

    @pytest.mark.asyncio
    async def test_forced_oauth_login(self, orchestrator, user):
        await orchestrator.login(_login(client=LAPTOP))
        outcome = await orchestrator.oauth_login(
            OAuthCommand(access_token="google-token", client=PHONE, force_login=True)
        )
        assert outcome.sessions_invalidated == 1

    @pytest.mark.asyncio
    async def test_missing_token(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.oauth_login(OAuthCommand(access_token=None))


class TestValidate:
    @pytest.mark.asyncio
    async def test_valid_token(self, orchestrator, user, clock):
        outcome = await orchestrator.login(_login())
        clock.advance(timedelta(days=1))
        result = await orchestrator.validate(outcome.token)
        assert result.user.user_id == user.user_id
        assert result.expires_in == timedelta(days=6)
        assert result.session.last_activity == clock.now - timedelta(days=1)

    @pytest.mark.asyncio
    async def test_validate_touches_session(self, orchestrator, user, clock):
        outcome = await orchestrator.login(_login())
        clock.advance(timedelta(hours=2))
        await orchestrator.validate(outcome.token)
        result = await orchestrator.validate(outcome.token)
        assert result.session.last_activity == clock.now

    @pytest.mark.asyncio
    async def test_missing_token_requires_auth(self, orchestrator):
        with pytest.raises(AuthError) as excinfo:
            await orchestrator.validate(None)
        assert excinfo.value.extra == {"valid": False, "requiresAuth": True}

    @pytest.mark.asyncio
    async def test_garbage_token(self, orchestrator):
        with pytest.raises(TokenInvalidError) as excinfo:
            await orchestrator.validate("not-a-token")
        assert excinfo.value.extra["requiresAuth"] is True

    @pytest.mark.asyncio
    async def test_expired_token(self, orchestrator, user, clock):
        outcome = await orchestrator.login(_login())
        clock.advance(TTL + timedelta(seconds=1))
        with pytest.raises(TokenExpiredError):
            await orchestrator.validate(outcome.token)

    @pytest.mark.asyncio
    async def test_blocked_after_login(self, orchestrator, store, user):
        outcome = await orchestrator.login(_login())
        store.set_user_blocked(user.user_id, True)
        with pytest.raises(ForbiddenError) as excinfo:
            await orchestrator.validate(outcome.token)
        assert excinfo.value.extra == {"valid": False, "requiresAuth": True, "blocked": True}

    @pytest.mark.asyncio
    async def test_session_store_failure_requires_auth(self, orchestrator, store, user):
        outcome = await orchestrator.login(_login())

        def broken(token, now):
            raise RuntimeError("database unavailable")

        store.get_active_session = broken
        with pytest.raises(AuthError) as excinfo:
            await orchestrator.validate(outcome.token)
        assert excinfo.value.status_code == 401
        assert excinfo.value.message == "Session not found or expired"
        assert excinfo.value.extra == {"valid": False, "requiresAuth": True}

    @pytest.mark.asyncio
    async def test_user_store_failure_requires_auth(self, orchestrator, store, user):
        outcome = await orchestrator.login(_login())

        def broken(user_id):
            raise RuntimeError("database unavailable")

        store.get_user = broken
        with pytest.raises(AuthError) as excinfo:
            await orchestrator.validate(outcome.token)
        assert excinfo.value.status_code == 401
        assert excinfo.value.message == "User account not found"
        assert excinfo.value.extra == {"valid": False, "requiresAuth": True}


class TestLogout:
    @pytest.mark.asyncio
    async def test_logout_invalidates_session(self, orchestrator, user):
        outcome = await orchestrator.login(_login())
        result = await orchestrator.logout(outcome.token)
        assert result.session_invalidated is True
        assert result.clean is True
        with pytest.raises(AuthError):
            await orchestrator.validate(outcome.token)

    @pytest.mark.asyncio
    async def test_logout_twice_is_harmless(self, orchestrator, user):
        outcome = await orchestrator.login(_login())
        await orchestrator.logout(outcome.token)
        result = await orchestrator.logout(outcome.token)
        assert result.clean is True

    @pytest.mark.asyncio
    async def test_logout_without_token(self, orchestrator):
        result = await orchestrator.logout(None)
        assert result.session_invalidated is False
        assert result.clean is True

    @pytest.mark.asyncio
    async def test_forged_token_touches_nothing(self, orchestrator, user):
        outcome = await orchestrator.login(_login())
        result = await orchestrator.logout("forged.token.value")
        assert result.session_invalidated is False
        await orchestrator.validate(outcome.token)

    @pytest.mark.asyncio
    async def test_expired_token_still_logs_out(self, orchestrator, store, user, clock):
        outcome = await orchestrator.login(_login())
        clock.advance(TTL + timedelta(minutes=1))
        result = await orchestrator.logout(outcome.token)
        assert result.session_invalidated is True
        stored = store.sessions[outcome.session.session_id]
        assert stored.is_active is False

    @pytest.mark.asyncio
    async def test_upstream_sign_out(self, orchestrator, provider):
        result = await orchestrator.logout(None, upstream_access_token="google-token")
        assert result.clean is True
        with pytest.raises(AuthError):
            await provider.fetch_identity("google-token")

    @pytest.mark.asyncio
    async def test_upstream_failure_marks_logout_unclean(self, orchestrator, provider, user):
        async def failing_sign_out(token):
            raise RuntimeError("provider down")

        provider.sign_out = failing_sign_out
        outcome = await orchestrator.login(_login())
        result = await orchestrator.logout(outcome.token, upstream_access_token="google-token")
        assert result.session_invalidated is True
        assert result.clean is False

    @pytest.mark.asyncio
    async def test_store_failure_marks_logout_unclean(self, orchestrator, store, user):
        outcome = await orchestrator.login(_login())

        def broken(token, now):
            raise RuntimeError("database unavailable")

        store.deactivate_session = broken
        result = await orchestrator.logout(outcome.token)
        assert result.session_invalidated is False
        assert result.clean is False
        assert store.sessions[outcome.session.session_id].is_active is True


class TestCheckSession:
    @pytest.mark.asyncio
    async def test_unknown_email(self, orchestrator):
        result = await orchestrator.check_session("ghost@example.com", LAPTOP.device)
        assert result.known_user is False
        assert result.report.has_conflict is False
        assert result.report.message == NO_EXISTING_SESSIONS

    @pytest.mark.asyncio
    async def test_reports_other_devices(self, orchestrator, user):
        await orchestrator.login(_login(client=LAPTOP))
        result = await orchestrator.check_session("ada@example.com", PHONE.device)
        assert result.report.has_conflict is True
        assert result.report.should_prompt is True
        assert result.device is PHONE.device

    @pytest.mark.asyncio
    async def test_same_device_no_conflict(self, orchestrator, user):
        await orchestrator.login(_login(client=LAPTOP))
        result = await orchestrator.check_session("ada@example.com", LAPTOP.device)
        assert result.report.has_conflict is False

    @pytest.mark.asyncio
    async def test_blocked_user(self, orchestrator, store, user):
        store.set_user_blocked(user.user_id, True)
        with pytest.raises(ForbiddenError):
            await orchestrator.check_session("ada@example.com", LAPTOP.device)
