from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol

from examrevise.logging import get_logger
from examrevise.service.errors import InternalError, NotFoundError
from examrevise.storage.models import DeviceProfile, Session

logger = get_logger(__name__)


class SessionRecordStore(Protocol):
    def insert_session(self, session: Session) -> Session: ...

    def deactivate_session(self, token: str, now: datetime) -> bool: ...

    def deactivate_user_sessions(
        self, user_id: int, now: datetime, *, except_token: Optional[str] = None
    ) -> List[str]: ...

    def get_active_session(self, token: str, now: datetime) -> Optional[Session]: ...

    def touch_session(self, token: str, now: datetime) -> bool: ...

    def list_active_sessions(self, user_id: int, now: datetime) -> List[Session]: ...

    def purge_expired_sessions(self, cutoff: datetime) -> int: ...


class SessionStore:
    """Session persistence with the login flow's failure policy applied.

    ``create`` failures are fatal; ``touch``, ``invalidate`` and
    ``invalidate_others`` log and swallow store errors.
    """

    def __init__(
        self,
        records: SessionRecordStore,
        *,
        ttl: timedelta,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.records = records
        self.ttl = ttl
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    def create(
        self,
        user_id: int,
        token: str,
        device: DeviceProfile,
        ip_address: Optional[str],
        user_agent: Optional[str],
        method: str,
        *,
        expires_at: Optional[datetime] = None,
    ) -> Session:
        now = self._now()
        session = Session.new(
            user_id,
            token,
            expires_at or now + self.ttl,
            device_info=device,
            ip_address=ip_address,
            user_agent=user_agent,
            login_method=method,
            now=now,
        )
        try:
            stored = self.records.insert_session(session)
        except Exception as exc:
            self.logger.error(
                "session_create_failed",
                user_id=user_id,
                login_method=method,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise InternalError("Failed to create session. Please try again.") from exc
        self.logger.info(
            "session_created",
            user_id=user_id,
            session_id=stored.session_id,
            login_method=method,
            device=stored.device_info.device,
        )
        return stored

    def invalidate(self, token: str) -> bool:
        """Deactivate the session for ``token``; unknown or inactive tokens are fine.

        Returns False only when the store could not be reached.
        """
        try:
            changed = self.records.deactivate_session(token, self._now())
        except Exception as exc:
            self.logger.warning(
                "session_invalidate_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        self.logger.info("session_invalidated", changed=changed)
        return True

    def invalidate_others(self, user_id: int, except_token: Optional[str] = None) -> int:
        """Deactivate all other live sessions of the user; returns how many."""
        try:
            affected = self.records.deactivate_user_sessions(
                user_id, self._now(), except_token=except_token
            )
        except Exception as exc:
            self.logger.warning(
                "session_invalidate_others_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return 0
        self.logger.info(
            "sessions_invalidated_for_user", user_id=user_id, count=len(affected)
        )
        return len(affected)

    def find_active(self, token: str) -> Session:
        session = self.records.get_active_session(token, self._now())
        if session is None:
            raise NotFoundError("Session not found or expired")
        return session

    def touch(self, token: str) -> None:
        try:
            self.records.touch_session(token, self._now())
        except Exception as exc:
            self.logger.warning(
                "session_touch_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def list_active(self, user_id: int) -> List[Session]:
        return self.records.list_active_sessions(user_id, self._now())

    def purge_expired(self, grace: timedelta = timedelta(0)) -> int:
        """Delete sessions that expired more than ``grace`` ago."""
        return self.records.purge_expired_sessions(self._now() - grace)


__all__ = ["SessionRecordStore", "SessionStore"]
