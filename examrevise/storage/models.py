from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    user_id: int
    email: str
    password: Optional[str] = None
    user_name: Optional[str] = None
    fname: Optional[str] = None
    sname: Optional[str] = None
    type: str = "user"
    is_blocked: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    default_exam_id: Optional[int] = None
    default_subject_id: Optional[int] = None
    default_exam_board_id: Optional[int] = None
    marketing_opt_in: bool = False
    sign_up_date: Optional[date] = None

    @property
    def is_oauth_only(self) -> bool:
        return not self.password


_TRUE_STRINGS = frozenset({"true", "1", "yes", "on"})


def _as_flag(value: Any) -> bool:
    """Read a boolean hint that may arrive as JSON true/false or as a string."""
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    if isinstance(value, (bool, int)):
        return bool(value)
    return False


# Keys of stored device_info JSON; anything else lands in ``extra``.
_DEVICE_KEYS = ("browser", "os", "device", "mobile", "timestamp", "ipAddress")


@dataclass
class DeviceProfile:
    browser: str = "Unknown"
    os: str = "Unknown"
    device: str = "Desktop"
    mobile: bool = False
    timestamp: Optional[str] = None
    ip_address: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def triplet(self) -> Tuple[str, str, str]:
        return (self.browser, self.os, self.device)

    def same_device(self, other: "DeviceProfile") -> bool:
        return self.triplet == other.triplet

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self.extra)
        data.update(
            {
                "browser": self.browser,
                "os": self.os,
                "device": self.device,
                "mobile": self.mobile,
                "timestamp": self.timestamp,
                "ipAddress": self.ip_address,
            }
        )
        return data

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "DeviceProfile":
        if not isinstance(raw, dict):
            return cls()
        return cls(
            browser=str(raw.get("browser") or "Unknown"),
            os=str(raw.get("os") or "Unknown"),
            device=str(raw.get("device") or "Desktop"),
            mobile=_as_flag(raw.get("mobile")),
            timestamp=raw.get("timestamp"),
            ip_address=raw.get("ipAddress"),
            extra={k: v for k, v in raw.items() if k not in _DEVICE_KEYS},
        )


@dataclass
class Session:
    session_id: str
    user_id: int
    session_token: str
    created_at: datetime
    expires_at: datetime
    device_info: DeviceProfile = field(default_factory=DeviceProfile)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    login_method: str = "email"
    last_activity: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    is_active: bool = True

    @classmethod
    def new(
        cls,
        user_id: int,
        session_token: str,
        expires_at: datetime,
        *,
        device_info: DeviceProfile | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        login_method: str = "email",
        now: datetime | None = None,
    ) -> "Session":
        created = now or utcnow()
        return cls(
            session_id=str(uuid.uuid4()),
            user_id=user_id,
            session_token=session_token,
            created_at=created,
            expires_at=expires_at,
            device_info=device_info or DeviceProfile(),
            ip_address=ip_address,
            user_agent=user_agent,
            login_method=login_method,
            last_activity=created,
            updated_at=created,
            is_active=True,
        )

    def is_live(self, now: datetime) -> bool:
        """Active sessions are flagged active and not yet past expiry."""
        return self.is_active and self.expires_at > now
