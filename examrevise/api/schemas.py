from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

# Bounds for client-supplied JSON objects such as deviceInfo
MAX_JSON_DEPTH = 5
MAX_OBJECT_KEYS = 50


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        if len(obj) > MAX_OBJECT_KEYS:
            raise ValueError(f"object has more than {MAX_OBJECT_KEYS} keys")
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_OBJECT_KEYS:
            raise ValueError(f"array has more than {MAX_OBJECT_KEYS} items")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


def _validate_dict_field(value: Optional[dict], field_name: str = "field") -> Optional[dict]:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ValueError(f"{field_name} must be an object")
    _validate_json_depth(value)
    return value


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_PATTERN = re.compile(r"^\S+@\S+\.\S+$")


def _validate_email(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("Email is required")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254 or not _EMAIL_PATTERN.match(normalized):
        raise ValueError("Invalid email format")
    return normalized


def _safe_redirect(value: Optional[str]) -> Optional[str]:
    """Keep only same-site relative paths; anything else falls back to the default."""
    if value is None:
        return None
    value = value.strip()
    if not value.startswith("/") or value.startswith("//") or "\\" in value:
        return None
    return value


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class Envelope(BaseModel):
    """Uniform response envelope.

    Success: ``{success: true, message, data}``. Failure:
    ``{success: false, error, code}`` plus any endpoint-specific top-level
    fields (kept as pydantic extras).
    """

    model_config = ConfigDict(extra="allow")

    success: bool
    message: Optional[str] = None
    data: Optional[Any] = None
    error: Optional[str] = None
    code: Optional[str] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value

    @classmethod
    def ok(cls, data: Any = None, message: str = "Success") -> "Envelope":
        return cls(success=True, message=message, data=data)

    @classmethod
    def failure(cls, error: str, code: Optional[str] = None, **extra: Any) -> "Envelope":
        return cls(success=False, error=error, code=code, **extra)

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": self.success}
        if self.success:
            body["message"] = self.message
            if self.data is not None:
                body["data"] = self.data
        else:
            body["error"] = self.error
            if self.code is not None:
                body["code"] = self.code
            if self.message is not None:
                body["message"] = self.message
        body.update(self.model_extra or {})
        return body


class RequestModel(BaseModel):
    """Request bodies use camelCase on the wire and snake_case in code."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


class LoginRequest(RequestModel):
    email: str
    password: str = Field(..., min_length=1, max_length=1024)
    callback_url: Optional[str] = Field(default=None, max_length=2048)
    force_login: bool = False
    device_info: Optional[Dict[str, Any]] = None

    @model_validator(mode="before")
    @classmethod
    def _require_credentials(cls, data: Any) -> Any:
        if isinstance(data, dict) and (not data.get("email") or not data.get("password")):
            raise ValueError("Email and password are required")
        return data

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, value: Any) -> str:
        return _validate_email(value)

    @field_validator("callback_url")
    @classmethod
    def _validate_callback(cls, value: Optional[str]) -> Optional[str]:
        return _safe_redirect(value)

    @field_validator("device_info")
    @classmethod
    def _validate_device_info(cls, value: Optional[dict]) -> Optional[dict]:
        return _validate_dict_field(value, "deviceInfo")


class LogoutRequest(RequestModel):
    redirect_url: Optional[str] = Field(default=None, max_length=2048)
    # Upstream identity-provider token, signed out best-effort
    access_token: Optional[str] = Field(default=None, alias="access_token", max_length=8192)

    @field_validator("redirect_url")
    @classmethod
    def _validate_redirect(cls, value: Optional[str]) -> Optional[str]:
        return _safe_redirect(value)


class RegistrationData(RequestModel):
    exam_id: Optional[int] = None
    subject_id: Optional[int] = None
    board_id: Optional[int] = None
    marketing_opt_in: bool = False


class OAuthProcessRequest(RequestModel):
    access_token: Optional[str] = Field(default=None, alias="access_token", max_length=8192)
    refresh_token: Optional[str] = Field(default=None, alias="refresh_token", max_length=8192)
    force_login: bool = False
    device_info: Optional[Dict[str, Any]] = None
    registration_data: Optional[RegistrationData] = None

    @field_validator("device_info")
    @classmethod
    def _validate_device_info(cls, value: Optional[dict]) -> Optional[dict]:
        return _validate_dict_field(value, "deviceInfo")


class CheckSessionRequest(RequestModel):
    email: str = Field(default=None, validate_default=True)
    device_info: Optional[Dict[str, Any]] = None

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, value: Any) -> str:
        return _validate_email(value)

    @field_validator("device_info")
    @classmethod
    def _validate_device_info(cls, value: Optional[dict]) -> Optional[dict]:
        return _validate_dict_field(value, "deviceInfo")


class ResponseModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class UserProfile(ResponseModel):
    """Profile returned to the client and mirrored into the ``user`` cookie."""

    id: int
    email: str
    user_name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    type: str = "user"
    auth_type: str = "email"
    login_time: datetime
    last_login: Optional[datetime] = None


class OAuthUser(BaseModel):
    user_id: int
    email: str
    user_name: Optional[str] = None
    fname: Optional[str] = None
    sname: Optional[str] = None
    type: str = "user"


class SessionSummary(BaseModel):
    session_id: str
    device_info: Dict[str, Any]
    last_activity: str
    created_at: str
    login_method: str


class LoginData(ResponseModel):
    user: UserProfile
    redirect_url: str
    token: str
    message: str = "Login successful"


class OAuthData(BaseModel):
    user: OAuthUser
    token: str
    is_new_user: bool = Field(default=False, serialization_alias="isNewUser")

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class LogoutData(ResponseModel):
    message: str
    redirect_url: str


class ValidateResponse(ResponseModel):
    success: bool = True
    valid: bool = True
    user: UserProfile
    expires_at: datetime
    expires_in: int
    token_issued: datetime
    message: str = "Session is valid"


class SessionCheckData(ResponseModel):
    has_conflict: bool
    should_prompt: bool
    message: Optional[str] = None
    active_sessions: List[SessionSummary] = Field(default_factory=list)
    current_device: Dict[str, Any]


class HealthData(BaseModel):
    status: str
    checks: Dict[str, Any] = Field(default_factory=dict)
    version: Optional[str] = None
    timestamp: Optional[str] = None
