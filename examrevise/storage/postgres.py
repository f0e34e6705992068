from __future__ import annotations

import json
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from examrevise.logging import get_logger
from examrevise.storage.errors import ConstraintViolation, SchemaMissingError
from examrevise.storage.models import DeviceProfile, Session, User, utcnow

_USER_COLUMNS = (
    "user_id, email, password, user_name, fname, sname, type, is_blocked, "
    "created_at, updated_at, default_exam_id, default_subject_id, "
    "default_exam_board_id, marketing_opt_in_b, sign_up_date"
)


class PostgresStore:
    """Postgres-backed user and session store.

    The ``users`` table belongs to the wider application and must already
    exist. ``user_sessions`` is created on startup when missing.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_session_table()
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _ensure_session_table(self) -> None:
        """Create the ``user_sessions`` table and its lookup indexes if missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_sessions (
                    session_id UUID PRIMARY KEY,
                    user_id INTEGER NOT NULL,
                    session_token TEXT NOT NULL UNIQUE,
                    device_info JSONB,
                    ip_address TEXT,
                    user_agent TEXT,
                    login_method TEXT NOT NULL DEFAULT 'email',
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    last_activity TIMESTAMPTZ NOT NULL DEFAULT now(),
                    expires_at TIMESTAMPTZ NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_user_sessions_user_active "
                "ON user_sessions (user_id, is_active)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_user_sessions_expires_at "
                "ON user_sessions (expires_at)"
            )

    def _verify_required_schema(self) -> None:
        required_tables = ["users", "user_sessions"]
        with self._connect() as conn:
            missing = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise SchemaMissingError(missing)

    # users
    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            user_id=int(row["user_id"]),
            email=row["email"],
            password=row.get("password"),
            user_name=row.get("user_name"),
            fname=row.get("fname"),
            sname=row.get("sname"),
            type=row.get("type") or "user",
            is_blocked=bool(row.get("is_blocked")),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at"),
            default_exam_id=row.get("default_exam_id"),
            default_subject_id=row.get("default_subject_id"),
            default_exam_board_id=row.get("default_exam_board_id"),
            marketing_opt_in=bool(row.get("marketing_opt_in_b")),
            sign_up_date=row.get("sign_up_date"),
        )

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
        now = utcnow()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO users (
                        email, password, user_name, fname, sname, type, is_blocked,
                        default_exam_id, default_subject_id, default_exam_board_id,
                        marketing_opt_in_b, sign_up_date, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (
                        email.strip().lower(),
                        password,
                        user_name,
                        fname,
                        sname,
                        type,
                        is_blocked,
                        default_exam_id,
                        default_subject_id,
                        default_exam_board_id,
                        marketing_opt_in,
                        sign_up_date,
                        now,
                        now,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE lower(email) = %s",
                (email.strip().lower(),),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def touch_user(self, user_id: int) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET updated_at = %s WHERE user_id = %s",
                (utcnow(), user_id),
            )

    def set_user_blocked(self, user_id: int, blocked: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE users SET is_blocked = %s, updated_at = %s
                WHERE user_id = %s
                RETURNING {_USER_COLUMNS}
                """,
                (blocked, utcnow(), user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_user_password(self, user_id: int, password_hash: Optional[str]) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE users SET password = %s, updated_at = %s
                WHERE user_id = %s
                RETURNING {_USER_COLUMNS}
                """,
                (password_hash, utcnow(), user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    # sessions
    def _row_to_session(self, row: Dict[str, Any]) -> Session:
        device_raw = row.get("device_info")
        if isinstance(device_raw, str):
            try:
                device_raw = json.loads(device_raw)
            except ValueError:
                self.logger.warning(
                    "session_device_info_unparseable", session_id=str(row["session_id"])
                )
                device_raw = None
        return Session(
            session_id=str(row["session_id"]),
            user_id=int(row["user_id"]),
            session_token=row["session_token"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            device_info=DeviceProfile.from_dict(device_raw),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            login_method=row.get("login_method") or "email",
            last_activity=row.get("last_activity"),
            updated_at=row.get("updated_at"),
            is_active=bool(row.get("is_active")),
        )

    def insert_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_sessions (
                        session_id, user_id, session_token, device_info, ip_address,
                        user_agent, login_method, is_active, created_at, updated_at,
                        last_activity, expires_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        session.session_id,
                        session.user_id,
                        session.session_token,
                        Jsonb(session.device_info.to_dict()),
                        session.ip_address,
                        session.user_agent,
                        session.login_method,
                        session.is_active,
                        session.created_at,
                        session.updated_at or session.created_at,
                        session.last_activity or session.created_at,
                        session.expires_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "session token already exists", {"field": "session_token"}
            )
        return self._row_to_session(row)

    def deactivate_session(self, token: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_sessions SET is_active = FALSE, updated_at = %s
                WHERE session_token = %s AND is_active = TRUE
                RETURNING session_id
                """,
                (now, token),
            ).fetchone()
        return row is not None

    def deactivate_user_sessions(
        self, user_id: int, now: datetime, *, except_token: Optional[str] = None
    ) -> List[str]:
        """Deactivate every live session of the user with one filtered UPDATE."""
        sql = """
            UPDATE user_sessions SET is_active = FALSE, updated_at = %s
            WHERE user_id = %s AND is_active = TRUE AND expires_at > %s
        """
        params: list[Any] = [now, user_id, now]
        if except_token is not None:
            sql += " AND session_token <> %s"
            params.append(except_token)
        sql += " RETURNING session_id"
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [str(row["session_id"]) for row in rows]

    def get_active_session(self, token: str, now: datetime) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM user_sessions
                WHERE session_token = %s AND is_active = TRUE AND expires_at > %s
                """,
                (token, now),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def touch_session(self, token: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_sessions SET last_activity = %s, updated_at = %s
                WHERE session_token = %s
                RETURNING session_id
                """,
                (now, now, token),
            ).fetchone()
        return row is not None

    def list_active_sessions(self, user_id: int, now: datetime) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM user_sessions
                WHERE user_id = %s AND is_active = TRUE AND expires_at > %s
                ORDER BY last_activity DESC
                """,
                (user_id, now),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def purge_expired_sessions(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM user_sessions WHERE expires_at <= %s", (cutoff,)
            )
            deleted = cursor.rowcount or 0
        if deleted:
            self.logger.info("postgres_sessions_purged", count=deleted)
        return deleted


__all__ = ["PostgresStore"]
