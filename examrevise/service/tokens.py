from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Tuple

from examrevise.logging import get_logger
from examrevise.service.errors import TokenExpiredError, TokenInvalidError

logger = get_logger(__name__)

DEFAULT_TOKEN_TTL = timedelta(days=7)


@dataclass(frozen=True)
class TokenClaims:
    """Identity the caller asks to have signed."""

    user_id: int
    email: str
    role: str = "user"


@dataclass(frozen=True)
class TokenPayload:
    """Verified claim set recovered from a token."""

    user_id: int
    email: str
    role: str
    issued_at: datetime
    expires_at: datetime
    token_id: str

    @property
    def claims(self) -> TokenClaims:
        return TokenClaims(user_id=self.user_id, email=self.email, role=self.role)

    def remaining(self, now: datetime) -> timedelta:
        return max(self.expires_at - now, timedelta(0))


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    lower = header.lower()
    if not lower.startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class TokenService:
    """Signs and verifies compact HS256 identity tokens.

    Verification is pure: it never consults session storage, so a revoked
    session still yields a valid payload here.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        ttl: timedelta = DEFAULT_TOKEN_TTL,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.ttl = ttl
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self._clock()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue_for(
        self, claims: TokenClaims, ttl: Optional[timedelta] = None
    ) -> Tuple[str, TokenPayload]:
        """Sign ``claims`` and return the token with the payload it encodes."""
        lifetime = ttl if ttl is not None else self.ttl
        # Whole seconds so the payload round-trips through the JSON claims
        issued_at = self._now().replace(microsecond=0)
        payload = TokenPayload(
            user_id=claims.user_id,
            email=claims.email,
            role=claims.role,
            issued_at=issued_at,
            expires_at=issued_at + lifetime,
            token_id=uuid.uuid4().hex,
        )
        body = {
            "sub": str(payload.user_id),
            "userId": payload.user_id,
            "email": payload.email,
            "type": payload.role,
            "iat": int(payload.issued_at.timestamp()),
            "exp": int(payload.expires_at.timestamp()),
            "jti": payload.token_id,
            "iss": self.issuer,
            "aud": self.audience,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(body, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}", payload

    def issue(self, claims: TokenClaims, ttl: Optional[timedelta] = None) -> str:
        token, _ = self.issue_for(claims, ttl)
        return token

    def verify(self, token: str) -> TokenPayload:
        """Return the payload of a valid token.

        Raises:
            TokenInvalidError: structure, algorithm, signature or claims are wrong
            TokenExpiredError: the token is authentic but past ``exp``
        """
        if not token or not isinstance(token, str):
            raise TokenInvalidError("Invalid or expired token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalidError("Invalid or expired token")

        # Only HS256 is accepted
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalidError("Invalid or expired token")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalidError("Invalid or expired token")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenInvalidError("Invalid or expired token")
        try:
            body = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError("Invalid or expired token")
        if not isinstance(body, dict):
            raise TokenInvalidError("Invalid or expired token")
        if body.get("iss") != self.issuer or body.get("aud") != self.audience:
            raise TokenInvalidError("Invalid or expired token")

        payload = self._payload_from_claims(body)
        if payload.expires_at <= self._now():
            raise TokenExpiredError("Token has expired")
        return payload

    def _payload_from_claims(self, body: dict[str, Any]) -> TokenPayload:
        try:
            user_id = int(body.get("userId", body.get("sub")))
            issued_at = datetime.fromtimestamp(int(body["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(int(body["exp"]), tz=timezone.utc)
            email = body["email"]
        except (KeyError, TypeError, ValueError, OverflowError):
            raise TokenInvalidError("Invalid or expired token")
        if not isinstance(email, str) or not email:
            raise TokenInvalidError("Invalid or expired token")
        return TokenPayload(
            user_id=user_id,
            email=email,
            role=str(body.get("type") or "user"),
            issued_at=issued_at,
            expires_at=expires_at,
            token_id=str(body.get("jti") or ""),
        )


__all__ = [
    "DEFAULT_TOKEN_TTL",
    "TokenClaims",
    "TokenPayload",
    "TokenService",
    "extract_bearer",
]
