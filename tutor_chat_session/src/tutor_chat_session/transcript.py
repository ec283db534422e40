"""
Chat Transcript

Append-only, timestamp-ordered message log of one session record, plus the
two one-shot nudges that depend on how long the conversation has become:
a message-volume warning and a reflection prompt.

Every append is written through to the local store before returning and
then mirrored to the remote store in the background.
"""

import logging
from datetime import datetime, timedelta
from typing import Iterable, Optional

from tutor_chat_session.history_export import format_duration
from tutor_chat_session.session_state import Message, MessageType, Mode, SessionRecord, Sender
from tutor_chat_session.session_store import PersistedSessionStore

logger = logging.getLogger(__name__)

VOLUME_WARNING_MARKER = "⚠️ Long conversation"
VOLUME_WARNING_TEXT = (
    f"{VOLUME_WARNING_MARKER}: we've exchanged quite a few messages in this session. "
    "Long conversations can make my answers less focused. Consider starting a new "
    "session to keep things on track."
)

REFLECTION_PROMPT_MARKER = "💭 Reflection"
REFLECTION_PROMPT_TEXT = (
    f"{REFLECTION_PROMPT_MARKER}: before we continue, try to summarize in your own words "
    "the main idea we've covered so far."
)

_MIN_STEP = timedelta(milliseconds=1)


class ChatTranscriptModel:
    """Owns mutation of `record.messages` and the derived counters."""

    def __init__(
        self,
        record: SessionRecord,
        store: PersistedSessionStore,
        sync_agent=None,
        volume_warning_counts: Iterable[int] = (13, 14),
        reflection_prompt_counts: Iterable[int] = (12, 13),
    ):
        self.record = record
        self.store = store
        self.sync_agent = sync_agent
        self.volume_warning_counts = tuple(volume_warning_counts)
        self.reflection_prompt_counts = tuple(reflection_prompt_counts)

    @property
    def messages(self):
        return self.record.messages

    def persist(self) -> bool:
        """Write the record locally, then schedule the remote mirror."""
        saved = self.store.put(self.record.metadata.student_id, self.record)
        if self.sync_agent is not None:
            self.sync_agent.schedule(self.record)
        return saved

    def append(self, message: Message) -> Message:
        """
        Append a message, keeping timestamps strictly increasing.

        A message whose timestamp is not after the last one is moved to just
        after it.
        """
        if self.record.messages:
            last = self.record.messages[-1].timestamp
            if message.timestamp <= last:
                message.timestamp = last + _MIN_STEP

        self.record.messages.append(message)
        self.record.metadata.total_messages = len(self.record.messages)
        self.record.touch(message.timestamp)

        info = self.record.session_info
        info.end_time = message.timestamp
        info.duration = format_duration(info.start_time, message.timestamp)

        self.persist()
        return message

    def add_bot_message(
        self,
        content: str,
        message_type: MessageType = MessageType.REGULAR_CHAT,
        is_html: bool = False,
        now: Optional[datetime] = None,
        **extra,
    ) -> Message:
        return self.append(Message(
            type=Sender.BOT,
            content=content,
            timestamp=now or datetime.now(),
            is_html=is_html,
            message_type=message_type,
            **extra,
        ))

    # ----- counters -----

    def first_user_message_index(self) -> Optional[int]:
        for i, message in enumerate(self.record.messages):
            if message.type == Sender.USER:
                return i
        return None

    def count_regular_chat_since(self, first_user_message_index: Optional[int]) -> int:
        """Regular-chat messages from the first user message onward."""
        if first_user_message_index is None:
            return 0
        return sum(
            1 for message in self.record.messages[first_user_message_index:]
            if message.message_type == MessageType.REGULAR_CHAT
        )

    def regular_chat_count(self) -> int:
        return self.count_regular_chat_since(self.first_user_message_index())

    def _bot_marker_present(self, marker: str) -> bool:
        # Records written before the flags existed only carry the text
        return any(m.type == Sender.BOT and marker in m.content for m in self.record.messages)

    # ----- message-volume warning -----

    def volume_warning_shown(self) -> bool:
        return self.record.metadata.warning_shown or self._bot_marker_present(VOLUME_WARNING_MARKER)

    def should_show_volume_warning(self) -> bool:
        """
        Checked before a pending user message is appended: the count
        includes that message. Both trigger counts are accepted.
        """
        if self.volume_warning_shown():
            return False
        return self.regular_chat_count() + 1 in self.volume_warning_counts

    def inject_volume_warning(self, now: Optional[datetime] = None) -> Optional[Message]:
        """Add the warning unless one is already in the session."""
        if self.volume_warning_shown():
            return None
        self.record.metadata.warning_shown = True
        logger.info(f"📢 [Transcript] Volume warning for session {self.record.session_id}")
        return self.add_bot_message(VOLUME_WARNING_TEXT, now=now)

    def maybe_inject_volume_warning(self, now: Optional[datetime] = None) -> Optional[Message]:
        if not self.should_show_volume_warning():
            return None
        return self.inject_volume_warning(now)

    # ----- reflection prompt -----

    def reflection_prompt_shown(self) -> bool:
        return self.record.metadata.reflection_prompt_shown or self._bot_marker_present(REFLECTION_PROMPT_MARKER)

    def should_append_reflection_prompt(self, mode: Mode) -> bool:
        if mode != Mode.TUTOR or self.reflection_prompt_shown():
            return False
        return self.regular_chat_count() in self.reflection_prompt_counts

    def apply_reflection_prompt(self, response_text: str, mode: Mode) -> str:
        """Return the bot response, with the reflection prompt appended at most once per session."""
        if not self.should_append_reflection_prompt(mode):
            return response_text
        return self.add_reflection_prompt(response_text)

    def add_reflection_prompt(self, response_text: str) -> str:
        if self.reflection_prompt_shown():
            return response_text
        self.record.metadata.reflection_prompt_shown = True
        logger.info(f"💭 [Transcript] Reflection prompt for session {self.record.session_id}")
        return f"{response_text}\n\n{REFLECTION_PROMPT_TEXT}"
