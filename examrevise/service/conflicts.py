from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from examrevise.logging import get_logger
from examrevise.service.sessions import SessionStore
from examrevise.storage.models import DeviceProfile, Session

logger = get_logger(__name__)


def conflict_message(count: int) -> str:
    return (
        f"You have {count} active session(s) on other devices. "
        "Do you want to log out from those devices and continue?"
    )


def summarize_session(session: Session) -> Dict[str, Any]:
    return {
        "session_id": session.session_id,
        "device_info": session.device_info.to_dict(),
        "last_activity": (session.last_activity or session.created_at).isoformat(),
        "created_at": session.created_at.isoformat(),
        "login_method": session.login_method,
    }


@dataclass
class ConflictReport:
    has_conflict: bool = False
    should_prompt: bool = False
    message: Optional[str] = None
    # Sessions on other devices, newest activity first
    active_sessions: List[Session] = field(default_factory=list)
    same_device_sessions: int = 0

    def session_summaries(self) -> List[Dict[str, Any]]:
        return [summarize_session(s) for s in self.active_sessions]


class ConflictDetector:
    """Compares a candidate device with a user's other live sessions.

    Advisory only: it reads sessions and never changes them.
    """

    def __init__(self, sessions: SessionStore) -> None:
        self.sessions = sessions

    def check(self, user_id: int, candidate: DeviceProfile) -> ConflictReport:
        try:
            live = self.sessions.list_active(user_id)
        except Exception as exc:
            # Lookup failures report no conflict
            logger.warning(
                "conflict_check_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return ConflictReport()

        others = [s for s in live if not s.device_info.same_device(candidate)]
        report = ConflictReport(
            has_conflict=bool(others),
            active_sessions=others,
            same_device_sessions=len(live) - len(others),
        )
        report.should_prompt = report.has_conflict
        if report.has_conflict:
            report.message = conflict_message(len(others))
        logger.debug(
            "conflict_check_complete",
            user_id=user_id,
            other_devices=len(others),
            same_device=report.same_device_sessions,
        )
        return report


__all__ = ["ConflictDetector", "ConflictReport", "conflict_message", "summarize_session"]
