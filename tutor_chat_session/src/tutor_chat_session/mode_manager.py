"""
Mode Manager

Keeps the student's tutor/protégé mode preference. A manual toggle wins
over automatic restoration of a previously persisted mode for a short
grace window.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Union

from tutor_chat_session.session_state import Mode
from tutor_chat_session.session_store import PersistedSessionStore

logger = logging.getLogger(__name__)


def to_mode(value: Union[str, Mode]) -> Mode:
    """Raises ValueError for anything other than tutor/protege."""
    return value if isinstance(value, Mode) else Mode(str(value).lower())


class ModeManager:
    def __init__(self, store: PersistedSessionStore, student_id: str, grace_minutes: int = 5):
        self.store = store
        self.student_id = student_id
        self.grace = timedelta(minutes=grace_minutes)
        self.mode = Mode.TUTOR
        self.manual_changed_at: Optional[datetime] = None
        self._load()

    def _load(self):
        preference = self.store.get_mode_preference(self.student_id) or {}
        try:
            self.mode = Mode(preference.get("mode", Mode.TUTOR.value))
            changed_at = preference.get("manualChangedAt")
            self.manual_changed_at = datetime.fromisoformat(changed_at) if changed_at else None
        except ValueError as e:
            logger.warning(f"⚠️ [ModeManager] Ignoring unreadable mode preference: {e}")
            self.mode = Mode.TUTOR
            self.manual_changed_at = None

    def _save(self):
        self.store.set_mode_preference(self.student_id, self.mode, self.manual_changed_at)

    def recently_toggled(self, now: Optional[datetime] = None) -> bool:
        if self.manual_changed_at is None:
            return False
        return (now or datetime.now()) - self.manual_changed_at < self.grace

    def toggle(self, mode: Union[str, Mode], now: Optional[datetime] = None) -> Mode:
        """Manual switch by the student."""
        self.mode = to_mode(mode)
        self.manual_changed_at = now or datetime.now()
        self._save()
        logger.info(f"🔀 [ModeManager] {self.student_id} switched to {self.mode.value} mode")
        return self.mode

    def restore(self, persisted_mode: Union[str, Mode], now: Optional[datetime] = None) -> Mode:
        """
        Re-apply a mode stored with a session (e.g. on resume), unless the
        student toggled manually within the grace window.
        """
        if self.recently_toggled(now):
            logger.info(f"🔀 [ModeManager] Keeping manual {self.mode.value} mode over restored {to_mode(persisted_mode).value}")
            return self.mode
        self.mode = to_mode(persisted_mode)
        self._save()
        return self.mode

    def apply_assessment_result(self, mode: Mode) -> Mode:
        """A finished assessment recalculates the default mode."""
        self.mode = mode
        self.manual_changed_at = None
        self._save()
        return self.mode
