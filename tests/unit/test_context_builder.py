"""
Unit Tests for ConversationContextBuilder

Tests the session-identity guard, deterministic output and the scripted
assessment recap turns.
"""

import copy
import os
import sys
from datetime import datetime, timedelta

import pytest

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "tutor_chat_session", "src"))

from tutor_chat_session.context_builder import ConversationContextBuilder
from tutor_chat_session.session_state import (
    AnsweredQuestion,
    AssessmentRecord,
    Message,
    MessageType,
    Mode,
    Question,
    QuestionType,
    Sender,
    SessionInfo,
    SessionMetadata,
    SessionRecord,
)

START = datetime(2024, 3, 4, 9, 0, 0)


@pytest.fixture
def record():
    questions = [
        Question(id="q1", question_type=QuestionType.TRUE_FALSE, text="Enzymes are proteins.",
                 correct_answer=True, options={"A": "True", "B": "False"}),
        Question(id="q2", question_type=QuestionType.MULTIPLE_CHOICE, text="Which fruit?",
                 correct_answer=1, options={"A": "Mango", "B": "Apple"}),
        Question(id="q3", question_type=QuestionType.SHORT_ANSWER, text="Define Km.",
                 correct_answer="Substrate concentration at half Vmax"),
    ]
    return SessionRecord(
        metadata=SessionMetadata(student_id="stu1", course_id="BIOC202", unit_name="Enzyme Kinetics",
                                 current_mode=Mode.PROTEGE),
        session_info=SessionInfo(session_id="session_ctx", start_time=START),
        messages=[
            Message(type=Sender.BOT, content="Let's start", timestamp=START,
                    message_type=MessageType.ASSESSMENT_START),
            Message(type=Sender.USER, content="What is Vmax?", timestamp=START + timedelta(seconds=1)),
            Message(type=Sender.BOT, content="<p>The <b>maximum</b> rate</p>", is_html=True,
                    timestamp=START + timedelta(seconds=2)),
            Message(type=Sender.BOT, content="Switched", timestamp=START + timedelta(seconds=3),
                    message_type=MessageType.MODE_TOGGLE_RESULT),
        ],
        assessment=AssessmentRecord(questions=questions, pass_threshold=2, current_question_index=3),
        student_answers=[
            AnsweredQuestion(question_index=0, raw_answer=0, is_correct=True),
            AnsweredQuestion(question_index=1, raw_answer=0, is_correct=False),
            AnsweredQuestion(question_index=2, raw_answer="half of max velocity concentration", is_correct=True),
        ],
        last_activity_timestamp=START + timedelta(seconds=3),
    )


class TestConversationContextBuilder:
    """Test suite for build()."""

    @pytest.fixture
    def builder(self):
        return ConversationContextBuilder()

    def test_session_mismatch_returns_none(self, builder, record):
        assert builder.build(record, "session_other") is None

    def test_missing_record_returns_none(self, builder):
        assert builder.build(None, "session_ctx") is None

    def test_identical_records_give_identical_output(self, builder, record):
        first = builder.build(record, "session_ctx")
        second = builder.build(copy.deepcopy(record), "session_ctx")
        assert first == second
        assert repr(first) == repr(second)

    def test_turn_structure(self, builder, record):
        turns = builder.build(record, "session_ctx")

        assert [t["role"] for t in turns] == ["assistant", "user", "assistant", "user", "assistant"]
        assert "protégé mode for Enzyme Kinetics" in turns[0]["content"]
        assert "calibration assessment" in turns[0]["content"]

    def test_answers_turn_lists_each_question(self, builder, record):
        answers = builder.build(record, "session_ctx")[1]["content"]

        assert "Question 1: Enzymes are proteins." in answers
        assert "My answer: A. True" in answers
        assert "Correct answer: True" in answers
        assert "Question 2: Which fruit?" in answers
        assert "My answer: A. Mango" in answers
        assert "Correct answer: B. Apple" in answers
        assert answers.count("Result: Correct") == 2
        assert answers.count("Result: Incorrect") == 1

    def test_performance_turn(self, builder, record):
        summary = builder.build(record, "session_ctx")[2]["content"]

        assert "You answered 2 of 3 questions correctly (pass threshold: 2)" in summary
        assert "meets the pass threshold" in summary

    def test_only_regular_chat_replayed_html_stripped(self, builder, record):
        turns = builder.build(record, "session_ctx")

        assert turns[3] == {"role": "user", "content": "What is Vmax?"}
        assert turns[4] == {"role": "assistant", "content": "The maximum rate"}
        assert all("Switched" not in t["content"] for t in turns)

    def test_no_assessment_emits_single_scripted_turn(self, builder, record):
        record.assessment = None
        record.student_answers = []

        turns = builder.build(record, "session_ctx")

        assert len(turns) == 3
        assert "No calibration assessment" in turns[0]["content"]

    def test_unanswered_assessment_has_no_recap(self, builder, record):
        record.student_answers = [None, None, None]
        record.assessment.current_question_index = 0

        turns = builder.build(record, "session_ctx")

        assert len(turns) == 3
