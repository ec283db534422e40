"""
Unit Tests for AssessmentEngine

Tests threshold clamping, per-type answer rules, ordering guards, grading
fallbacks and pass/fail mode selection.
"""

import asyncio
import os
import sys
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "tutor_chat_session", "src"))

from tutor_chat_session.assessment_engine import (
    AssessmentEngine,
    AssessmentState,
    evaluate_answer,
    short_answer_heuristic,
)
from tutor_chat_session.collaborators import GradingResult
from tutor_chat_session.question_normalizer import normalize_question
from tutor_chat_session.session_state import (
    AnsweredQuestion,
    Mode,
    Question,
    QuestionType,
    SessionInfo,
    SessionMetadata,
    SessionRecord,
)

NOW = datetime(2024, 3, 4, 9, 0, 0)


def tf_question(qid="tf", correct="True"):
    return normalize_question({"id": qid, "type": "true-false", "text": "ATP stores energy.", "correctAnswer": correct})


def mc_question(qid="mc", correct="B"):
    return normalize_question({
        "id": qid,
        "type": "multiple-choice",
        "text": "Which fruit is red?",
        "options": {"A": "Mango", "B": "Apple"},
        "correctAnswer": correct,
    })


def sa_question(qid="sa"):
    return Question(id=qid, question_type=QuestionType.SHORT_ANSWER, text="Define Km.",
                    correct_answer="Substrate concentration at half Vmax")


def new_record() -> SessionRecord:
    return SessionRecord(
        metadata=SessionMetadata(student_id="stu1", course_id="BIOC202", unit_name="Unit 1"),
        session_info=SessionInfo(session_id="session_a", start_time=NOW),
        last_activity_timestamp=NOW,
    )


class TestAnswerRules:
    """Test suite for evaluate_answer()."""

    def test_multiple_choice_letter_key(self):
        question = mc_question(correct="B")
        assert evaluate_answer(question, AnsweredQuestion(question_index=0, raw_answer=1)) is True
        assert evaluate_answer(question, AnsweredQuestion(question_index=0, raw_answer=0)) is False

    def test_multiple_choice_unnormalized_key(self):
        """A letter key left on a hand-built question is still resolved."""
        question = Question(id="m", question_type=QuestionType.MULTIPLE_CHOICE, text="?",
                            correct_answer="B", options={"A": "Mango", "B": "Apple"})
        assert evaluate_answer(question, AnsweredQuestion(question_index=0, raw_answer=1)) is True

    def test_true_false_string_answer(self):
        question = tf_question(correct="True")
        assert evaluate_answer(question, AnsweredQuestion(question_index=0, raw_answer=0)) is True

    def test_true_false_boolean_answer(self):
        question = tf_question(correct=True)
        assert evaluate_answer(question, AnsweredQuestion(question_index=0, raw_answer=1)) is False

    def test_short_answer_verdict_wins_over_heuristic(self):
        question = sa_question()
        answered = AnsweredQuestion(question_index=0, raw_answer="a very long but wrong answer", is_correct=False)
        assert evaluate_answer(question, answered) is False

    def test_short_answer_heuristic(self):
        assert short_answer_heuristic("exactly10c") is False
        assert short_answer_heuristic("eleven char") is True
        assert short_answer_heuristic("   padded   ") is False

    def test_unknown_type_equality(self):
        question = Question(id="o", question_type=QuestionType.OTHER, text="?", correct_answer="42")
        assert evaluate_answer(question, AnsweredQuestion(question_index=0, raw_answer="42")) is True
        assert evaluate_answer(question, AnsweredQuestion(question_index=0, raw_answer=42)) is False

    def test_missing_answer_is_incorrect(self):
        assert evaluate_answer(mc_question(), None) is False


class TestAssessmentEngine:
    """Test suite for the assessment state machine."""

    @pytest.fixture
    def record(self):
        return new_record()

    @pytest.fixture
    def persist(self):
        return MagicMock()

    @pytest.fixture
    def engine(self, record, persist):
        return AssessmentEngine(record, persist=persist)

    def test_initial_state(self, engine):
        assert engine.state == AssessmentState.NOT_STARTED
        assert engine.current_question is None
        assert engine.result() is None

    def test_threshold_clamped_to_question_count(self, engine):
        assessment = engine.start([tf_question("a"), tf_question("b"), tf_question("c")], pass_threshold=10)
        assert assessment.pass_threshold == 3

    def test_default_threshold_from_question_then_config(self, record):
        question = tf_question()
        question.pass_threshold = 1
        assert AssessmentEngine(record).start([question, tf_question("b")]).pass_threshold == 1
        assert AssessmentEngine(new_record(), default_pass_threshold=2).start(
            [tf_question("a"), tf_question("b"), tf_question("c")]
        ).pass_threshold == 2

    def test_empty_question_set_starts_nothing(self, engine, record):
        assert engine.start([]) is None
        assert record.assessment is None
        assert engine.state == AssessmentState.NOT_STARTED

    @pytest.mark.asyncio
    async def test_all_correct_with_clamped_threshold_is_protege(self, engine, record):
        engine.start([tf_question("a"), tf_question("b"), mc_question()], pass_threshold=10)

        await engine.answer(0, 0, NOW)
        await engine.answer(1, 0, NOW)
        await engine.answer(2, 1, NOW)

        result = engine.result()
        assert engine.state == AssessmentState.COMPLETED
        assert result.total_correct == 3
        assert result.pass_threshold == 3
        assert result.passed is True
        assert result.mode == Mode.PROTEGE
        assert record.metadata.current_mode == Mode.PROTEGE

    @pytest.mark.asyncio
    async def test_two_of_three_with_threshold_two_passes(self, engine):
        engine.start([tf_question("a"), mc_question(), tf_question("c", correct=False)], pass_threshold=2)

        await engine.answer(0, 0)
        await engine.answer(1, 1)
        await engine.answer(2, 0)  # "True", expected False

        result = engine.result()
        assert result.total_correct == 2
        assert result.passed is True
        assert result.mode == Mode.PROTEGE
        assert result.score_percent == 66.7

    @pytest.mark.asyncio
    async def test_failing_selects_tutor(self, engine, record):
        record.metadata.current_mode = Mode.PROTEGE
        engine.start([tf_question("a"), mc_question()], pass_threshold=2)

        await engine.answer(0, 1)
        await engine.answer(1, 1)

        assert engine.result().mode == Mode.TUTOR
        assert record.metadata.current_mode == Mode.TUTOR

    @pytest.mark.asyncio
    async def test_out_of_order_and_repeat_answers_ignored(self, engine, record):
        engine.start([tf_question("a"), tf_question("b")], pass_threshold=1)

        assert await engine.answer(1, 0) is None
        assert record.student_answers == [None, None]

        assert await engine.answer(0, 0) is not None
        assert await engine.answer(0, 1) is None
        assert record.student_answers[0].raw_answer == 0
        assert engine.current_question_index == 1

    @pytest.mark.asyncio
    async def test_invalid_option_ignored(self, engine):
        engine.start([mc_question()], pass_threshold=1)
        assert await engine.answer(0, 5) is None
        assert await engine.answer(0, True) is None
        assert engine.current_question_index == 0

    @pytest.mark.asyncio
    async def test_answer_after_completion_ignored(self, engine):
        engine.start([tf_question()], pass_threshold=1)
        await engine.answer(0, 0)
        assert await engine.answer(0, 0) is None
        assert await engine.answer(1, 0) is None

    @pytest.mark.asyncio
    async def test_every_answer_persists(self, engine, persist):
        engine.start([tf_question("a"), tf_question("b")], pass_threshold=1)
        persist.reset_mock()

        await engine.answer(0, 0)

        # once when recorded, once when the index advances
        assert persist.call_count == 2

    @pytest.mark.asyncio
    async def test_restart_clears_previous_answers(self, engine, record):
        engine.start([tf_question("a"), tf_question("b")], pass_threshold=1)
        await engine.answer(0, 0)

        engine.start([mc_question()], pass_threshold=1)

        assert record.student_answers == [None]
        assert engine.current_question_index == 0


class TestShortAnswerGrading:
    """Test suite for external grading and its fallbacks."""

    @pytest.mark.asyncio
    async def test_grader_verdict_used(self):
        grader = MagicMock()
        grader.check = AsyncMock(return_value=GradingResult(correct=False, feedback="Missing Vmax"))
        record = new_record()
        engine = AssessmentEngine(record, grader=grader)
        engine.start([sa_question()], pass_threshold=1)

        answered = await engine.answer(0, "a long answer that is wrong")

        grader.check.assert_awaited_once_with(
            "Define Km.", "a long answer that is wrong", "Substrate concentration at half Vmax"
        )
        assert answered.is_correct is False
        assert answered.ai_feedback == "Missing Vmax"
        assert engine.result().mode == Mode.TUTOR

    @pytest.mark.asyncio
    async def test_grader_failure_falls_back_to_heuristic(self):
        grader = MagicMock()
        grader.check = AsyncMock(side_effect=RuntimeError("service down"))
        engine = AssessmentEngine(new_record(), grader=grader)
        engine.start([sa_question()], pass_threshold=1)

        answered = await engine.answer(0, "the substrate level at half speed")

        assert answered.is_correct is None
        assert engine.is_answer_correct(0) is True
        assert engine.result().passed is True

    @pytest.mark.asyncio
    async def test_grader_timeout_falls_back_to_heuristic(self):
        async def slow_check(question, student_answer, expected_answer):
            await asyncio.sleep(5)
            return GradingResult(correct=True)

        grader = MagicMock()
        grader.check = slow_check
        engine = AssessmentEngine(new_record(), grader=grader, grading_timeout_seconds=0.01)
        engine.start([sa_question()], pass_threshold=1)

        answered = await engine.answer(0, "short")

        assert answered.is_correct is None
        assert engine.is_answer_correct(0) is False
        assert engine.is_complete is True

    @pytest.mark.asyncio
    async def test_answer_persisted_before_grading(self):
        """A reload during grading still finds the answer."""
        record = new_record()
        seen = {}

        async def check(question, student_answer, expected_answer):
            seen["answer"] = record.student_answers[0]
            seen["index"] = record.assessment.current_question_index
            return GradingResult(correct=True)

        grader = MagicMock()
        grader.check = check
        engine = AssessmentEngine(record, grader=grader)
        engine.start([sa_question(), tf_question()], pass_threshold=1)

        await engine.answer(0, "some answer")

        assert seen["answer"].raw_answer == "some answer"
        assert seen["index"] == 0
        assert engine.current_question_index == 1

    @pytest.mark.asyncio
    async def test_concurrent_answer_rejected_while_grading(self):
        release = asyncio.Event()

        async def check(question, student_answer, expected_answer):
            await release.wait()
            return GradingResult(correct=True)

        grader = MagicMock()
        grader.check = check
        engine = AssessmentEngine(new_record(), grader=grader)
        engine.start([sa_question()], pass_threshold=1)

        pending = asyncio.create_task(engine.answer(0, "first answer"))
        await asyncio.sleep(0)
        assert await engine.answer(0, "second answer") is None

        release.set()
        answered = await pending
        assert answered.raw_answer == "first answer"
        assert answered.is_correct is True

    @pytest.mark.asyncio
    async def test_restart_while_grading_keeps_new_assessment_at_start(self):
        release = asyncio.Event()

        async def check(question, student_answer, expected_answer):
            await release.wait()
            return GradingResult(correct=True)

        grader = MagicMock()
        grader.check = check
        record = new_record()
        persist = MagicMock()
        engine = AssessmentEngine(record, grader=grader, persist=persist)
        engine.start([sa_question(), tf_question()], pass_threshold=1)

        pending = asyncio.create_task(engine.answer(0, "some long free text"))
        await asyncio.sleep(0)
        engine.start([sa_question(), tf_question()], pass_threshold=1)
        persisted = persist.call_count

        release.set()
        assert await pending is None

        assert engine.current_question_index == 0
        assert record.student_answers == [None, None]
        assert persist.call_count == persisted
        assert await engine.answer(0, "a fresh answer here") is not None

    @pytest.mark.asyncio
    async def test_detached_engine_drops_grading_result(self):
        release = asyncio.Event()

        async def check(question, student_answer, expected_answer):
            await release.wait()
            return GradingResult(correct=True)

        grader = MagicMock()
        grader.check = check
        persist = MagicMock()
        engine = AssessmentEngine(new_record(), grader=grader, persist=persist)
        engine.start([sa_question()], pass_threshold=1)

        pending = asyncio.create_task(engine.answer(0, "some long free text"))
        await asyncio.sleep(0)
        engine.detach()
        persisted = persist.call_count

        release.set()
        assert await pending is None
        assert persist.call_count == persisted
        assert engine.current_question_index == 0
