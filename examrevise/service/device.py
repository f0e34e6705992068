from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Optional, Sequence, Tuple

from examrevise.storage.models import DeviceProfile, utcnow

# Ordered (needle, label) tables; the first needle found in the user agent wins.
BROWSER_RULES: Sequence[Tuple[str, str]] = (
    ("Chrome", "Chrome"),
    ("Firefox", "Firefox"),
    ("Safari", "Safari"),
    ("Edge", "Edge"),
    ("Opera", "Opera"),
)

OS_RULES: Sequence[Tuple[str, str]] = (
    ("Windows", "Windows"),
    ("Mac", "macOS"),
    ("Linux", "Linux"),
    ("Android", "Android"),
    ("iPhone", "iOS"),
    ("iPad", "iOS"),
)

MOBILE_MARKERS: Sequence[str] = ("Mobile", "Android", "iPhone", "iPad")

UNKNOWN = "Unknown"


def _classify(user_agent: str, rules: Sequence[Tuple[str, str]]) -> str:
    for needle, label in rules:
        if needle in user_agent:
            return label
    return UNKNOWN


def _header(headers: Optional[Mapping[str, str]], name: str) -> Optional[str]:
    if not headers:
        return None
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return value


def client_ip(headers: Optional[Mapping[str, str]]) -> Optional[str]:
    """Return the caller IP from proxy headers.

    First entry of ``X-Forwarded-For``, then ``X-Real-IP``, else ``None``.
    """
    forwarded = _header(headers, "X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = _header(headers, "X-Real-IP")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return None


def extract_device_profile(
    user_agent: Optional[str],
    headers: Optional[Mapping[str, str]] = None,
    hints: Optional[Mapping[str, Any]] = None,
    *,
    now: Optional[datetime] = None,
) -> DeviceProfile:
    """Derive a coarse device profile from request metadata.

    Client hints override parsed values; the server-observed IP always wins.
    """
    ua = user_agent or ""
    mobile = any(marker in ua for marker in MOBILE_MARKERS)
    parsed = {
        "browser": _classify(ua, BROWSER_RULES),
        "os": _classify(ua, OS_RULES),
        "device": "Mobile" if mobile else "Desktop",
        "mobile": mobile,
        "timestamp": (now or utcnow()).isoformat(),
    }
    if hints:
        parsed.update({k: v for k, v in hints.items() if v is not None})
    parsed["ipAddress"] = client_ip(headers)
    return DeviceProfile.from_dict(parsed)


__all__ = [
    "BROWSER_RULES",
    "OS_RULES",
    "MOBILE_MARKERS",
    "client_ip",
    "extract_device_profile",
]
