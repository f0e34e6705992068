from __future__ import annotations

import json
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, Header, Request, Response
from fastapi.responses import RedirectResponse
from pydantic import ValidationError as PydanticValidationError

from examrevise.api.schemas import (
    CheckSessionRequest,
    Envelope,
    LoginData,
    LoginRequest,
    LogoutData,
    LogoutRequest,
    OAuthData,
    OAuthProcessRequest,
    OAuthUser,
    SessionCheckData,
    SessionSummary,
    UserProfile,
    ValidateResponse,
)
from examrevise.config import Settings, get_settings
from examrevise.logging import get_logger
from examrevise.service.auth import (
    ClientContext,
    LoginCommand,
    LoginOutcome,
    OAuthCommand,
    SessionOrchestrator,
)
from examrevise.service.device import client_ip, extract_device_profile
from examrevise.service.oauth import RegistrationHints
from examrevise.service.runtime import get_orchestrator
from examrevise.service.tokens import extract_bearer

logger = get_logger(__name__)

FRESH_OAUTH_COOKIE = "oauth_fresh"


class AuthRoute(str, Enum):
    """Every path the service answers; anything else is a 404."""

    LOGIN = "/login"
    LOGOUT = "/logout"
    OAUTH_PROCESS = "/oauth-process"
    VALIDATE = "/validate"
    CHECK_SESSION = "/check-session"
    CALLBACK = "/callback"
    HEALTH = "/health"


router = APIRouter()


def _client_context(request: Request, hints: Optional[Dict[str, Any]] = None) -> ClientContext:
    user_agent = request.headers.get("user-agent")
    device = extract_device_profile(user_agent, request.headers, hints)
    ip_address = client_ip(request.headers)
    if ip_address is None and request.client:
        ip_address = request.client.host
    return ClientContext(device=device, ip_address=ip_address, user_agent=user_agent)


def _request_token(request: Request, authorization: Optional[str], settings: Settings) -> Optional[str]:
    return extract_bearer(authorization) or request.cookies.get(settings.session_cookie_name)


def _cookie_domain(settings: Settings) -> Optional[str]:
    return settings.cookie_domains[0] if settings.cookie_domains else None


def _apply_session_cookies(
    response: Response, token: str, profile: Dict[str, Any], settings: Settings
) -> None:
    max_age = settings.session_ttl_days * 24 * 60 * 60
    domain = _cookie_domain(settings)
    response.set_cookie(
        settings.session_cookie_name,
        token,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="lax",
        max_age=max_age,
        path="/",
        domain=domain,
    )
    # Readable by the frontend so it can render the signed-in user
    response.set_cookie(
        settings.user_cookie_name,
        quote(json.dumps(profile, separators=(",", ":")), safe=""),
        httponly=False,
        secure=settings.secure_cookies,
        samesite="lax",
        max_age=max_age,
        path="/",
        domain=domain,
    )


def _clear_session_cookies(response: Response, settings: Settings) -> None:
    names = (settings.session_cookie_name, settings.user_cookie_name, FRESH_OAUTH_COOKIE)
    domains = [None, *settings.cookie_domains]
    for domain in domains:
        for name in names:
            response.delete_cookie(
                name,
                path="/",
                domain=domain,
                secure=settings.secure_cookies,
                samesite="lax",
            )


def _user_profile(outcome: LoginOutcome, auth_type: str) -> UserProfile:
    user = outcome.user
    return UserProfile(
        id=user.user_id,
        email=user.email,
        user_name=user.user_name,
        first_name=user.fname,
        last_name=user.sname,
        type=user.type or "user",
        auth_type=auth_type,
        login_time=outcome.session.created_at,
    )


@router.post(AuthRoute.LOGIN.value, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    """Authenticate with email and password and open a device session.

    Raises:
        400: If the email or password is missing or malformed
        401: If the credentials are wrong or the account is OAuth-only
        403: If the account is blocked
        409: If the user is signed in on other devices and forceLogin is false
    """
    settings = get_settings()
    outcome = await orchestrator.login(
        LoginCommand(
            email=body.email,
            password=body.password,
            client=_client_context(request, body.device_info),
            force_login=body.force_login,
        )
    )
    profile = _user_profile(outcome, "email")
    _apply_session_cookies(response, outcome.token, profile.to_json(), settings)
    data = LoginData(
        user=profile,
        redirect_url=body.callback_url or settings.default_redirect_url,
        token=outcome.token,
    )
    return Envelope.ok(data=data.to_json(), message="Login successful").to_body()


@router.post(AuthRoute.LOGOUT.value, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    """Invalidate the caller's session and clear auth cookies.

    Always answers 200; a missing or malformed body is treated as empty.
    """
    settings = get_settings()
    body = LogoutRequest()
    raw = await request.body()
    if raw:
        try:
            body = LogoutRequest.model_validate(json.loads(raw))
        except (ValueError, PydanticValidationError):
            logger.info("logout_body_ignored")

    outcome = await orchestrator.logout(
        _request_token(request, authorization, settings),
        upstream_access_token=body.access_token,
    )
    _clear_session_cookies(response, settings)
    message = (
        "Logged out successfully" if outcome.clean else "Logout completed (with errors)"
    )
    data = LogoutData(
        message=message, redirect_url=body.redirect_url or settings.default_redirect_url
    )
    return Envelope.ok(data=data.to_json(), message=message).to_body()


@router.post(AuthRoute.OAUTH_PROCESS.value, tags=["auth"])
async def oauth_process(
    body: OAuthProcessRequest,
    request: Request,
    response: Response,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    """Exchange an identity-provider access token for a local session.

    Creates the local account the first time an email is seen.

    Raises:
        400: If no access token was sent
        401: If the provider rejects the access token
        403: If the local account is blocked
        409: If the user is signed in on other devices and forceLogin is false
    """
    settings = get_settings()
    registration = None
    if body.registration_data is not None:
        registration = RegistrationHints(
            exam_id=body.registration_data.exam_id,
            subject_id=body.registration_data.subject_id,
            board_id=body.registration_data.board_id,
            marketing_opt_in=body.registration_data.marketing_opt_in,
        )
    outcome = await orchestrator.oauth_login(
        OAuthCommand(
            access_token=body.access_token,
            client=_client_context(request, body.device_info),
            force_login=body.force_login,
            registration=registration,
        )
    )
    _apply_session_cookies(
        response, outcome.token, _user_profile(outcome, "oauth").to_json(), settings
    )
    user = outcome.user
    data = OAuthData(
        user=OAuthUser(
            user_id=user.user_id,
            email=user.email,
            user_name=user.user_name,
            fname=user.fname,
            sname=user.sname,
            type=user.type or "user",
        ),
        token=outcome.token,
        is_new_user=outcome.user_created,
    )
    return Envelope.ok(data=data.to_json(), message="OAuth login successful").to_body()


@router.get(AuthRoute.VALIDATE.value, tags=["auth"])
async def validate(
    request: Request,
    authorization: Optional[str] = Header(None),
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    """Check that the bearer token or session cookie maps to a live session.

    Raises:
        401: If the token is missing, invalid, expired or its session is gone
        403: If the account has been blocked
    """
    settings = get_settings()
    outcome = await orchestrator.validate(_request_token(request, authorization, settings))
    user = outcome.user
    body = ValidateResponse(
        user=UserProfile(
            id=user.user_id,
            email=user.email,
            user_name=user.user_name,
            first_name=user.fname,
            last_name=user.sname,
            type=user.type or "user",
            auth_type=outcome.session.login_method,
            login_time=outcome.session.created_at,
            last_login=outcome.session.last_activity,
        ),
        expires_at=outcome.payload.expires_at,
        expires_in=max(int(outcome.expires_in.total_seconds()), 0),
        token_issued=outcome.payload.issued_at,
    )
    return body.to_json()


@router.post(AuthRoute.CHECK_SESSION.value, tags=["auth"])
async def check_session(
    body: CheckSessionRequest,
    request: Request,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
):
    """Report live sessions on other devices without signing in.

    Raises:
        400: If the email is missing or malformed
        403: If the account is blocked
    """
    client = _client_context(request, body.device_info)
    outcome = await orchestrator.check_session(body.email, client.device)
    report = outcome.report
    data = SessionCheckData(
        has_conflict=report.has_conflict,
        should_prompt=report.should_prompt,
        message=report.message,
        active_sessions=[SessionSummary(**s) for s in report.session_summaries()],
        current_device=outcome.device.to_dict(),
    )
    return Envelope.ok(data=data.to_json()).to_body()


@router.get(AuthRoute.CALLBACK.value, tags=["auth"])
async def callback(request: Request):
    """Forward the provider callback, query string intact, to the frontend page."""
    target = get_settings().callback_path
    query = request.url.query
    if query:
        target = f"{target}?{query}"
    return RedirectResponse(target, status_code=302)
