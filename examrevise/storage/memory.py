from __future__ import annotations

import copy
import itertools
import threading
from dataclasses import replace
from datetime import date, datetime
from typing import Dict, List, Optional

from examrevise.logging import get_logger
from examrevise.storage.errors import ConstraintViolation
from examrevise.storage.models import Session, User, utcnow


class MemoryStore:
    """In-memory user and session store for tests and local development.

    Every read returns a copy so callers never mutate stored rows outside the
    lock.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.sessions: Dict[str, Session] = {}
        # session_token -> session_id
        self._token_index: Dict[str, str] = {}
        self._user_ids = itertools.count(1)
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # users
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
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if self._find_user_by_email(normalized):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            user = User(
                user_id=next(self._user_ids),
                email=normalized,
                password=password,
                user_name=user_name,
                fname=fname,
                sname=sname,
                type=type,
                is_blocked=is_blocked,
                created_at=now,
                updated_at=now,
                default_exam_id=default_exam_id,
                default_subject_id=default_subject_id,
                default_exam_board_id=default_exam_board_id,
                marketing_opt_in=marketing_opt_in,
                sign_up_date=sign_up_date,
            )
            self.users[user.user_id] = user
            return replace(user)

    def _find_user_by_email(self, email: str) -> Optional[User]:
        for user in self.users.values():
            if user.email.lower() == email:
                return user
        return None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_user_by_email(email.strip().lower())
            return replace(user) if user else None

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def touch_user(self, user_id: int) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.updated_at = utcnow()

    def set_user_blocked(self, user_id: int, blocked: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_blocked = blocked
            user.updated_at = utcnow()
            return replace(user)

    def set_user_password(self, user_id: int, password_hash: Optional[str]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.password = password_hash
            user.updated_at = utcnow()
            return replace(user)

    # sessions
    @staticmethod
    def _copy_session(session: Session) -> Session:
        return replace(session, device_info=copy.deepcopy(session.device_info))

    def insert_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.session_token in self._token_index:
                raise ConstraintViolation(
                    "session token already exists", {"field": "session_token"}
                )
            stored = self._copy_session(session)
            self.sessions[stored.session_id] = stored
            self._token_index[stored.session_token] = stored.session_id
            return self._copy_session(stored)

    def _by_token(self, token: str) -> Optional[Session]:
        session_id = self._token_index.get(token)
        return self.sessions.get(session_id) if session_id else None

    def deactivate_session(self, token: str, now: datetime) -> bool:
        with self._data_lock:
            session = self._by_token(token)
            if not session or not session.is_active:
                return False
            session.is_active = False
            session.updated_at = now
            return True

    def deactivate_user_sessions(
        self, user_id: int, now: datetime, *, except_token: Optional[str] = None
    ) -> List[str]:
        """Deactivate every live session of the user in one locked pass."""
        affected: List[str] = []
        with self._data_lock:
            for session in self.sessions.values():
                if session.user_id != user_id or not session.is_live(now):
                    continue
                if except_token is not None and session.session_token == except_token:
                    continue
                session.is_active = False
                session.updated_at = now
                affected.append(session.session_id)
        return affected

    def get_active_session(self, token: str, now: datetime) -> Optional[Session]:
        with self._data_lock:
            session = self._by_token(token)
            if not session or not session.is_live(now):
                return None
            return self._copy_session(session)

    def touch_session(self, token: str, now: datetime) -> bool:
        with self._data_lock:
            session = self._by_token(token)
            if not session:
                return False
            session.last_activity = now
            session.updated_at = now
            return True

    def list_active_sessions(self, user_id: int, now: datetime) -> List[Session]:
        with self._data_lock:
            live = [
                self._copy_session(s)
                for s in self.sessions.values()
                if s.user_id == user_id and s.is_live(now)
            ]
        live.sort(key=lambda s: s.last_activity or s.created_at, reverse=True)
        return live

    def purge_expired_sessions(self, cutoff: datetime) -> int:
        with self._data_lock:
            stale = [s for s in self.sessions.values() if s.expires_at <= cutoff]
            for session in stale:
                self.sessions.pop(session.session_id, None)
                self._token_index.pop(session.session_token, None)
        if stale:
            self.logger.info("memory_sessions_purged", count=len(stale))
        return len(stale)


__all__ = ["MemoryStore"]
