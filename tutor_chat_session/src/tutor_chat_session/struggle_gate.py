"""
Struggle / Directive-Mode Gate

Tracks the most recently seen active struggle topic reported with bot
turns, decides when its banner is shown, and resets it through the
struggle-topic service.
"""

import logging
from typing import Any, Optional

from tutor_chat_session.collaborators import StruggleResetResult, StruggleTopicService
from tutor_chat_session.question_normalizer import normalize_struggle_state

logger = logging.getLogger(__name__)

RESET_ALL = "ALL"


class StruggleTopicGate:
    def __init__(self, service: Optional[StruggleTopicService] = None, course_id: Optional[str] = None):
        self.service = service
        self.course_id = course_id
        self.last_active_topic: Optional[str] = None
        self._banner_topic: Optional[str] = None

    def observe(self, struggle_state: Any) -> Optional[str]:
        """
        Update the tracked topic from a bot turn's struggle state.

        The newest active topic wins (by last struggle time, else list
        order). A tracked topic reported as inactive is dropped.
        """
        topics = normalize_struggle_state(struggle_state)
        if not topics:
            return self.last_active_topic

        active = [t for t in topics if t.is_active]
        if active:
            dated = [t for t in active if t.last_struggle is not None]
            newest = max(dated, key=lambda t: t.last_struggle) if dated else active[-1]
            if newest.topic != self.last_active_topic:
                logger.info(f"🧭 [StruggleGate] Directive mode active for topic '{newest.topic}'")
            self.last_active_topic = newest.topic
        elif self.last_active_topic in {t.topic for t in topics}:
            logger.info(f"🧭 [StruggleGate] Topic '{self.last_active_topic}' no longer active")
            self.last_active_topic = None
            self._banner_topic = None

        return self.last_active_topic

    def show_banner(self) -> Optional[str]:
        """
        Topic whose banner should be shown now, or None.

        A topic's banner is shown once while it stays active; a newer topic
        replaces the previous banner.
        """
        topic = self.last_active_topic
        if topic is None or topic == self._banner_topic:
            return None
        self._banner_topic = topic
        return topic

    @property
    def banner_topic(self) -> Optional[str]:
        return self._banner_topic

    def _clear(self):
        self.last_active_topic = None
        self._banner_topic = None

    async def reset(self, topic: Optional[str] = None, course_id: Optional[str] = None) -> StruggleResetResult:
        """
        Reset a topic (default: the tracked one; "ALL" for every topic).

        Local state is cleared only once the service reports success.
        """
        topic = topic or self.last_active_topic
        if not topic:
            return StruggleResetResult(success=False, message="No active struggle topic to reset")
        if self.service is None:
            return StruggleResetResult(success=False, message="Struggle topic service unavailable")

        try:
            result = await self.service.reset(topic, course_id or self.course_id)
        except Exception as e:
            logger.error(f"❌ [StruggleGate] Reset failed for '{topic}': {e}")
            return StruggleResetResult(success=False, message=f"Could not reset topic: {e}")

        if result.success:
            logger.info(f"✅ [StruggleGate] Reset topic '{topic}'")
            self._clear()
        else:
            logger.warning(f"⚠️ [StruggleGate] Service refused reset of '{topic}': {result.message}")
        return result
