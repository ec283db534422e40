"""
Session Continuity

Decides whether a stored session is resumed or replaced by a fresh one,
and owns session-id allocation and the session-id lookup.

A session id stays stable for a (student, course, unit) triple until the
idle window elapses, the student starts a new session, or the course/unit
changes.
"""

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from tutor_chat_session.session_state import SessionInfo, SessionMetadata, SessionRecord
from tutor_chat_session.session_store import PersistedSessionStore

logger = logging.getLogger(__name__)

_ID_ALPHABET = "abcdefghijklmnopqrstuvwxyz0123456789"


class ContinuityAction(str, Enum):
    RESUME = "resume"
    FRESH = "fresh"


@dataclass
class ContinuityDecision:
    action: ContinuityAction
    session_id: str
    idle_minutes: Optional[int] = None
    reason: str = ""

    @property
    def resumed(self) -> bool:
        return self.action == ContinuityAction.RESUME


def generate_session_id(prefix: str = "session", now: Optional[datetime] = None) -> str:
    """`{prefix}_{epochMillis}_{random9}`"""
    now = now or datetime.now()
    millis = int(now.timestamp() * 1000)
    suffix = "".join(random.choice(_ID_ALPHABET) for _ in range(9))
    return f"{prefix}_{millis}_{suffix}"


def idle_minutes_between(last_activity: datetime, now: datetime) -> int:
    """Whole minutes of inactivity (floored, never negative)."""
    seconds = max((now - last_activity).total_seconds(), 0)
    return int(seconds // 60)


class SessionContinuityManager:
    """Decides resume vs. fresh and keeps the session-id copies in agreement."""

    def __init__(
        self,
        store: PersistedSessionStore,
        idle_window_minutes: int = 30,
        id_prefix: str = "session",
    ):
        self.store = store
        self.idle_window = timedelta(minutes=idle_window_minutes)
        self.id_prefix = id_prefix

    def new_session_id(self, now: Optional[datetime] = None) -> str:
        return generate_session_id(self.id_prefix, now)

    def reconcile_session_id(self, record: SessionRecord) -> str:
        """
        Make the record copy and the lookup copy of the session id agree.
        The record wins when both exist and differ.
        """
        meta = record.metadata
        stored_id = self.store.get_session_id(meta.student_id, meta.course_id, meta.unit_name)
        if stored_id != record.session_id:
            if stored_id:
                logger.info(
                    f"🔄 [Continuity] Session id mismatch for {meta.student_id}: "
                    f"lookup={stored_id}, record={record.session_id}; keeping record"
                )
            self.store.set_session_id(meta.student_id, meta.course_id, meta.unit_name, record.session_id)
        return record.session_id

    def decide(self, record: Optional[SessionRecord], now: Optional[datetime] = None) -> ContinuityDecision:
        """
        Decide whether `record` should be resumed.

        Resume when the record has progress and the time since its last
        activity is at most the idle window; otherwise start fresh with a
        newly allocated session id.
        """
        now = now or datetime.now()

        if record is None or not record.has_progress():
            return ContinuityDecision(
                action=ContinuityAction.FRESH,
                session_id=self.new_session_id(now),
                reason="no prior session",
            )

        idle = idle_minutes_between(record.last_activity_timestamp, now)
        if now - record.last_activity_timestamp <= self.idle_window:
            return ContinuityDecision(
                action=ContinuityAction.RESUME,
                session_id=self.reconcile_session_id(record),
                idle_minutes=idle,
                reason=f"active {idle} minutes ago",
            )

        return ContinuityDecision(
            action=ContinuityAction.FRESH,
            session_id=self.new_session_id(now),
            idle_minutes=idle,
            reason=f"idle for {idle} minutes",
        )

    def restore(self, record: SessionRecord) -> SessionRecord:
        """
        Prepare a resumed record.

        The stored question index is not trusted: it is recomputed from the
        answers that were actually written.
        """
        if record.assessment is not None:
            question_count = len(record.assessment.questions)
            answers = list(record.student_answers[:question_count])
            answers.extend([None] * (question_count - len(answers)))
            record.student_answers = answers
            record.assessment.current_question_index = min(record.answered_count(), question_count)
        record.metadata.total_messages = len(record.messages)
        return record

    def start_fresh(
        self,
        session_id: str,
        metadata: SessionMetadata,
        now: Optional[datetime] = None,
    ) -> SessionRecord:
        """
        Build an empty record for a new session.

        Course and unit selection (and the student identity) carry over
        from `metadata`; the transcript, assessment and one-shot flags do not.
        """
        now = now or datetime.now()
        record = SessionRecord(
            metadata=SessionMetadata(
                student_id=metadata.student_id,
                student_name=metadata.student_name,
                course_id=metadata.course_id,
                course_name=metadata.course_name,
                unit_name=metadata.unit_name,
                current_mode=metadata.current_mode,
            ),
            session_info=SessionInfo(session_id=session_id, start_time=now),
            last_activity_timestamp=now,
        )
        self.store.set_session_id(metadata.student_id, metadata.course_id, metadata.unit_name, session_id)
        logger.info(f"🆕 [Continuity] Started session {session_id} for {metadata.student_id}")
        return record
