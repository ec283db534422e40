"""
Assessment Engine

State machine for the calibration assessment that picks the interaction
mode:

    NOT_STARTED -> IN_PROGRESS(i) -> COMPLETED

`i` is the index of the next unanswered question. Every answer is written
to the session record (and persisted) as soon as it is received; short
answers are then graded by an external service, falling back to a length
heuristic when grading fails or times out.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, List, Optional

from tutor_chat_session.collaborators import AnswerGradingService, GradingResult
from tutor_chat_session.question_normalizer import parse_bool, resolve_option_index
from tutor_chat_session.session_state import (
    AnsweredQuestion,
    AssessmentRecord,
    Mode,
    Question,
    QuestionType,
    SessionRecord,
)

logger = logging.getLogger(__name__)

CHOICE_TYPES = (QuestionType.TRUE_FALSE, QuestionType.MULTIPLE_CHOICE)


class AssessmentState(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass
class AssessmentResult:
    total_correct: int
    total_questions: int
    pass_threshold: int
    passed: bool
    mode: Mode

    @property
    def score_percent(self) -> float:
        if not self.total_questions:
            return 0.0
        return round(self.total_correct / self.total_questions * 100, 1)


def short_answer_heuristic(answer: Any, min_length: int = 10) -> bool:
    """Fallback verdict for free-text answers: long enough counts as correct."""
    return len(str(answer or "").strip()) > min_length


def evaluate_answer(question: Question, answered: Optional[AnsweredQuestion], min_length: int = 10) -> bool:
    """
    Decide whether an answer is correct using the per-type rules.

    - true-false: the chosen option's text and the expected answer are both
      read as booleans
    - multiple-choice: chosen index against the expected option index
    - short-answer: the grading verdict when there is one, else the heuristic
    - anything else: plain equality
    """
    if answered is None:
        return False
    raw = answered.raw_answer

    if question.question_type == QuestionType.TRUE_FALSE:
        chosen = question.option_text(raw) if isinstance(raw, int) and not isinstance(raw, bool) else raw
        chosen_value = parse_bool(chosen)
        expected = parse_bool(question.correct_answer)
        return chosen_value is not None and chosen_value == expected

    if question.question_type == QuestionType.MULTIPLE_CHOICE:
        expected = question.correct_answer
        if not isinstance(expected, int) or isinstance(expected, bool):
            expected = resolve_option_index(expected, question.options)
        return isinstance(raw, int) and not isinstance(raw, bool) and raw == expected

    if question.question_type == QuestionType.SHORT_ANSWER:
        if answered.is_correct is not None:
            return answered.is_correct
        return short_answer_heuristic(raw, min_length)

    return raw == question.correct_answer


class AssessmentEngine:
    """
    Drives one calibration assessment stored inside a session record.

    The engine holds no state of its own beyond the in-flight grading
    marker: questions, answers and progress live in the record so that a
    reload can pick up where the student left off.
    """

    def __init__(
        self,
        record: SessionRecord,
        grader: Optional[AnswerGradingService] = None,
        persist: Optional[Callable[[], Any]] = None,
        grading_timeout_seconds: float = 15,
        short_answer_min_length: int = 10,
        default_pass_threshold: int = 2,
    ):
        self.record = record
        self.grader = grader
        self._persist = persist
        self.grading_timeout_seconds = grading_timeout_seconds
        self.short_answer_min_length = short_answer_min_length
        self.default_pass_threshold = default_pass_threshold
        self._grading: Optional[AssessmentRecord] = None
        self.detached = False

    def persist(self):
        if self._persist is not None and not self.detached:
            self._persist()

    def detach(self):
        """Stop writing to the record; pending grading results are dropped."""
        self.detached = True

    # ----- state -----

    @property
    def assessment(self) -> Optional[AssessmentRecord]:
        return self.record.assessment

    @property
    def state(self) -> AssessmentState:
        if self.assessment is None:
            return AssessmentState.NOT_STARTED
        if self.assessment.current_question_index >= len(self.assessment.questions):
            return AssessmentState.COMPLETED
        return AssessmentState.IN_PROGRESS

    @property
    def in_progress(self) -> bool:
        return self.state == AssessmentState.IN_PROGRESS

    @property
    def is_complete(self) -> bool:
        return self.state == AssessmentState.COMPLETED

    @property
    def current_question_index(self) -> Optional[int]:
        return self.assessment.current_question_index if self.assessment else None

    @property
    def current_question(self) -> Optional[Question]:
        if not self.in_progress:
            return None
        return self.assessment.questions[self.assessment.current_question_index]

    # ----- transitions -----

    def start(self, questions: List[Question], pass_threshold: Optional[int] = None, now: Optional[datetime] = None) -> Optional[AssessmentRecord]:
        """
        Begin a new assessment, discarding any previous answers.

        The threshold is clamped to the number of questions. An empty
        question set starts nothing.
        """
        if not questions:
            logger.info("📋 [Assessment] No calibration questions available, not starting")
            return None

        if pass_threshold is None:
            pass_threshold = next(
                (q.pass_threshold for q in questions if q.pass_threshold is not None),
                self.default_pass_threshold,
            )
        effective_threshold = max(0, min(pass_threshold, len(questions)))

        self.record.assessment = AssessmentRecord(
            questions=list(questions),
            pass_threshold=effective_threshold,
            current_question_index=0,
        )
        self.record.student_answers = [None] * len(questions)
        self._grading = None
        self.record.touch(now)
        self.persist()

        logger.info(
            f"📋 [Assessment] Started with {len(questions)} questions "
            f"(threshold {effective_threshold}, requested {pass_threshold})"
        )
        return self.record.assessment

    def _valid_value(self, question: Question, value: Any) -> bool:
        if question.question_type in CHOICE_TYPES:
            return isinstance(value, int) and not isinstance(value, bool) and 0 <= value < len(question.options)
        if question.question_type == QuestionType.SHORT_ANSWER:
            return isinstance(value, str)
        return True

    async def answer(self, index: int, value: Any, now: Optional[datetime] = None) -> Optional[AnsweredQuestion]:
        """
        Record the answer to question `index`.

        Only the current question can be answered; anything else (an
        out-of-order index, a repeat, an answer while the previous one is
        still being graded, an invalid option) is ignored and returns None.
        """
        if self.detached or not self.in_progress or self._grading is not None:
            logger.debug(f"🔍 [Assessment] Ignoring answer for #{index}: state={self.state.value}")
            return None
        if index != self.assessment.current_question_index or self.record.student_answers[index] is not None:
            logger.debug(f"🔍 [Assessment] Ignoring out-of-order answer for #{index}")
            return None

        question = self.assessment.questions[index]
        if not self._valid_value(question, value):
            logger.debug(f"🔍 [Assessment] Ignoring invalid answer {value!r} for #{index}")
            return None

        answered = AnsweredQuestion(question_index=index, raw_answer=value)
        if question.question_type != QuestionType.SHORT_ANSWER:
            answered.is_correct = evaluate_answer(question, answered, self.short_answer_min_length)

        # The answer itself is durable before any network call
        self.record.student_answers[index] = answered
        self.record.touch(now)
        self.persist()

        if question.question_type == QuestionType.SHORT_ANSWER:
            assessment = self.assessment
            self._grading = assessment
            try:
                grading = await self._grade(question, value)
            finally:
                if self._grading is assessment:
                    self._grading = None
            # Restarted or handed over to another session while grading
            if self.detached or self.record.assessment is not assessment:
                logger.info(f"📋 [Assessment] Dropping grading result for #{index}: assessment superseded")
                return None
            if grading is not None:
                answered.is_correct = grading.correct
                answered.ai_feedback = grading.feedback

        self.assessment.current_question_index = index + 1
        if self.is_complete:
            result = self.result()
            self.record.metadata.current_mode = result.mode
            logger.info(
                f"🎓 [Assessment] Completed: {result.total_correct}/{result.total_questions} "
                f"(threshold {result.pass_threshold}) -> {result.mode.value} mode"
            )
        self.persist()
        return answered

    async def _grade(self, question: Question, answer: str) -> Optional[GradingResult]:
        if self.grader is None:
            return None
        try:
            return await asyncio.wait_for(
                self.grader.check(question.text, answer, str(question.correct_answer or "")),
                timeout=self.grading_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"⚠️ [Assessment] Grading timed out for {question.id}, using length heuristic")
        except Exception as e:
            logger.warning(f"⚠️ [Assessment] Grading failed for {question.id}: {e}, using length heuristic")
        return None

    # ----- scoring -----

    def is_answer_correct(self, index: int) -> bool:
        question = self.assessment.questions[index]
        answered = self.record.student_answers[index] if index < len(self.record.student_answers) else None
        return evaluate_answer(question, answered, self.short_answer_min_length)

    def result(self) -> Optional[AssessmentResult]:
        """Outcome of a completed assessment, None before completion."""
        if not self.is_complete:
            return None
        total = len(self.assessment.questions)
        total_correct = sum(1 for i in range(total) if self.is_answer_correct(i))
        passed = total_correct >= self.assessment.pass_threshold
        return AssessmentResult(
            total_correct=total_correct,
            total_questions=total,
            pass_threshold=self.assessment.pass_threshold,
            passed=passed,
            mode=Mode.PROTEGE if passed else Mode.TUTOR,
        )
