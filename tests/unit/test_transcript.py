"""
Unit Tests for ChatTranscriptModel

Tests append ordering and write-through, regular-chat counting, and the
at-most-once volume warning and reflection prompt.
"""

import os
import sys
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "tutor_chat_session", "src"))

from tutor_chat_session.session_state import (
    Message,
    MessageType,
    Mode,
    Sender,
    SessionInfo,
    SessionMetadata,
    SessionRecord,
)
from tutor_chat_session.session_store import InMemoryBackend, PersistedSessionStore
from tutor_chat_session.transcript import (
    REFLECTION_PROMPT_MARKER,
    VOLUME_WARNING_MARKER,
    ChatTranscriptModel,
)

START = datetime(2024, 3, 4, 9, 0, 0)


def new_record() -> SessionRecord:
    return SessionRecord(
        metadata=SessionMetadata(student_id="stu1", course_id="BIOC202", unit_name="Unit 1"),
        session_info=SessionInfo(session_id="session_t", start_time=START),
        last_activity_timestamp=START,
    )


def fill_chat(transcript: ChatTranscriptModel, count: int):
    """Append `count` alternating user/bot regular-chat messages."""
    for i in range(count):
        sender = Sender.USER if i % 2 == 0 else Sender.BOT
        transcript.append(Message(type=sender, content=f"m{i}", timestamp=START + timedelta(seconds=i)))


def marker_count(record: SessionRecord, marker: str) -> int:
    return sum(1 for m in record.messages if marker in m.content)


class TestTranscriptAppend:
    """Test suite for append()."""

    @pytest.fixture
    def store(self):
        return PersistedSessionStore(InMemoryBackend())

    @pytest.fixture
    def transcript(self, store):
        return ChatTranscriptModel(new_record(), store)

    def test_append_writes_through(self, transcript, store):
        transcript.append(Message(type=Sender.USER, content="hello", timestamp=START + timedelta(seconds=3)))

        stored = store.get("stu1")
        assert stored.metadata.total_messages == 1
        assert stored.last_activity_timestamp == START + timedelta(seconds=3)
        assert stored.session_info.duration == "3s"

    def test_timestamps_strictly_increase(self, transcript):
        """A message stamped at or before the previous one is moved after it."""
        first = transcript.append(Message(type=Sender.USER, content="a", timestamp=START))
        second = transcript.append(Message(type=Sender.BOT, content="b", timestamp=START))
        third = transcript.append(Message(type=Sender.BOT, content="c", timestamp=START - timedelta(minutes=1)))

        assert first.timestamp < second.timestamp < third.timestamp
        assert transcript.record.metadata.total_messages == 3

    def test_append_schedules_sync(self, store):
        sync_agent = MagicMock()
        transcript = ChatTranscriptModel(new_record(), store, sync_agent=sync_agent)

        transcript.append(Message(type=Sender.USER, content="a", timestamp=START))

        sync_agent.schedule.assert_called_once_with(transcript.record)

    def test_regular_chat_count_starts_at_first_user_message(self, transcript):
        transcript.add_bot_message("Welcome!", now=START)
        transcript.add_bot_message("Q1", message_type=MessageType.PRACTICE_TEST_QUESTION, now=START)
        fill_chat(transcript, 4)
        transcript.add_bot_message("mode", message_type=MessageType.MODE_RESULT, now=START)

        assert transcript.first_user_message_index() == 2
        assert transcript.regular_chat_count() == 4

    def test_count_without_user_messages_is_zero(self, transcript):
        transcript.add_bot_message("Welcome!", now=START)
        assert transcript.count_regular_chat_since(transcript.first_user_message_index()) == 0


class TestVolumeWarning:
    """Test suite for the message-volume warning."""

    @pytest.fixture
    def transcript(self):
        return ChatTranscriptModel(new_record(), PersistedSessionStore(InMemoryBackend()))

    def test_not_shown_below_window(self, transcript):
        fill_chat(transcript, 11)
        assert transcript.should_show_volume_warning() is False

    @pytest.mark.parametrize("existing", [12, 13])
    def test_shown_at_either_window_count(self, transcript, existing):
        """Pending message brings the count to 13 or 14."""
        fill_chat(transcript, existing)
        assert transcript.should_show_volume_warning() is True

    def test_injected_once(self, transcript):
        """Re-checking after the warning exists never injects a second one."""
        fill_chat(transcript, 12)

        assert transcript.maybe_inject_volume_warning(START + timedelta(minutes=1)) is not None
        assert transcript.record.metadata.warning_shown is True

        # Re-invoke both before and after further messages
        assert transcript.maybe_inject_volume_warning() is None
        fill_chat(transcript, 1)
        assert transcript.maybe_inject_volume_warning() is None
        assert transcript.inject_volume_warning() is None

        assert marker_count(transcript.record, VOLUME_WARNING_MARKER) == 1

    def test_marker_text_blocks_warning_without_flag(self, transcript):
        """Records saved before the flag existed are recognised by their text."""
        fill_chat(transcript, 11)
        transcript.add_bot_message(f"{VOLUME_WARNING_MARKER}: already told you", now=START)

        assert transcript.record.metadata.warning_shown is False
        assert transcript.should_show_volume_warning() is False

    def test_flag_survives_reload(self):
        store = PersistedSessionStore(InMemoryBackend())
        transcript = ChatTranscriptModel(new_record(), store)
        fill_chat(transcript, 12)
        transcript.maybe_inject_volume_warning()

        reloaded = ChatTranscriptModel(store.get("stu1"), store)

        assert reloaded.volume_warning_shown() is True
        assert reloaded.should_show_volume_warning() is False


class TestReflectionPrompt:
    """Test suite for the reflection prompt."""

    @pytest.fixture
    def transcript(self):
        return ChatTranscriptModel(new_record(), PersistedSessionStore(InMemoryBackend()))

    def test_appended_once_in_tutor_mode(self, transcript):
        fill_chat(transcript, 12)

        first = transcript.apply_reflection_prompt("Answer one", Mode.TUTOR)
        transcript.add_bot_message(first, now=START + timedelta(minutes=1))
        second = transcript.apply_reflection_prompt("Answer two", Mode.TUTOR)

        assert REFLECTION_PROMPT_MARKER in first
        assert first.startswith("Answer one")
        assert second == "Answer two"
        assert marker_count(transcript.record, REFLECTION_PROMPT_MARKER) == 1

    def test_not_in_protege_mode(self, transcript):
        fill_chat(transcript, 12)
        assert transcript.apply_reflection_prompt("Answer", Mode.PROTEGE) == "Answer"
        assert transcript.record.metadata.reflection_prompt_shown is False

    def test_not_outside_window(self, transcript):
        fill_chat(transcript, 10)
        assert transcript.apply_reflection_prompt("Answer", Mode.TUTOR) == "Answer"

    def test_marker_text_blocks_prompt(self, transcript):
        fill_chat(transcript, 11)
        transcript.add_bot_message(f"Earlier\n\n{REFLECTION_PROMPT_MARKER}: think", now=START)

        assert transcript.should_append_reflection_prompt(Mode.TUTOR) is False
