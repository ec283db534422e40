"""
Conversation Context Builder

Replays a persisted session record into the role/content turns handed to
the language model when a session continues. The output depends only on
the record: no timestamps, no randomness, nothing read from the live view.
"""

from typing import Any, Dict, List, Optional

from tutor_chat_session.assessment_engine import evaluate_answer
from tutor_chat_session.history_export import strip_html
from tutor_chat_session.session_state import (
    AnsweredQuestion,
    MessageType,
    Mode,
    Question,
    QuestionType,
    SessionRecord,
    Sender,
)

MODE_LABELS = {
    Mode.TUTOR: "tutor",
    Mode.PROTEGE: "protégé",
}


def _option_label(question: Question, index: Any) -> str:
    if isinstance(index, int) and not isinstance(index, bool):
        keys = list(question.options.keys())
        if 0 <= index < len(keys):
            return f"{keys[index]}. {question.options[keys[index]]}"
    return str(index)


def describe_student_answer(question: Question, answered: Optional[AnsweredQuestion]) -> str:
    if answered is None:
        return "(no answer)"
    if question.question_type in (QuestionType.TRUE_FALSE, QuestionType.MULTIPLE_CHOICE):
        return _option_label(question, answered.raw_answer)
    return str(answered.raw_answer)


def describe_correct_answer(question: Question) -> str:
    if question.question_type == QuestionType.TRUE_FALSE:
        return "True" if question.correct_answer else "False"
    if question.question_type == QuestionType.MULTIPLE_CHOICE:
        return _option_label(question, question.correct_answer)
    return str(question.correct_answer)


class ConversationContextBuilder:
    """Builds LLM history turns from a SessionRecord."""

    def __init__(self, short_answer_min_length: int = 10):
        self.short_answer_min_length = short_answer_min_length

    def build(self, record: Optional[SessionRecord], active_session_id: Optional[str]) -> Optional[List[Dict[str, str]]]:
        """
        Returns None when the record belongs to a different session than the
        active one, so an old session never leaks into a new one.
        """
        if record is None or record.session_info.session_id != active_session_id:
            return None

        turns: List[Dict[str, str]] = [self._mode_turn(record)]

        assessment = record.assessment
        if assessment is not None and record.answered_count() > 0:
            turns.append({"role": "user", "content": self._answers_turn(record)})
            turns.append({"role": "assistant", "content": self._performance_turn(record)})

        for message in record.messages:
            if message.message_type != MessageType.REGULAR_CHAT:
                continue
            content = strip_html(message.content) if message.is_html else message.content
            role = "user" if message.type == Sender.USER else "assistant"
            turns.append({"role": role, "content": content})

        return turns

    def _mode_turn(self, record: SessionRecord) -> Dict[str, str]:
        meta = record.metadata
        unit = meta.unit_name or "this unit"
        if record.assessment is not None:
            assessment_note = "The student took a calibration assessment for this unit in this session."
        else:
            assessment_note = "No calibration assessment has been taken in this session."
        content = (
            f"I'm BiocBot, working in {MODE_LABELS[meta.current_mode]} mode for {unit}. "
            f"{assessment_note}"
        )
        return {"role": "assistant", "content": content}

    def _answers_turn(self, record: SessionRecord) -> str:
        lines = ["Here are my answers to the calibration questions:"]
        for i, question in enumerate(record.assessment.questions):
            answered = record.student_answers[i] if i < len(record.student_answers) else None
            if answered is None:
                continue
            correct = evaluate_answer(question, answered, self.short_answer_min_length)
            lines.append("")
            lines.append(f"Question {i + 1}: {question.text}")
            lines.append(f"My answer: {describe_student_answer(question, answered)}")
            lines.append(f"Correct answer: {describe_correct_answer(question)}")
            lines.append(f"Result: {'Correct' if correct else 'Incorrect'}")
        return "\n".join(lines)

    def _performance_turn(self, record: SessionRecord) -> str:
        assessment = record.assessment
        total = len(assessment.questions)
        correct = sum(
            1 for i, question in enumerate(assessment.questions)
            if i < len(record.student_answers)
            and evaluate_answer(question, record.student_answers[i], self.short_answer_min_length)
        )
        answered = record.answered_count()
        if answered < total:
            status = f"The assessment is still in progress ({answered} of {total} answered)."
        elif correct >= assessment.pass_threshold:
            status = "That meets the pass threshold."
        else:
            status = "That is below the pass threshold."
        return (
            f"You answered {correct} of {total} questions correctly "
            f"(pass threshold: {assessment.pass_threshold}). {status}"
        )
