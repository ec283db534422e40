"""
Session State Data Model

Defines the dataclasses persisted for a tutoring-chat session:
messages, calibration questions, answers and the session record itself.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

SCHEMA_VERSION = "2.0"


class Sender(str, Enum):
    """Who produced a message."""
    USER = "user"
    BOT = "bot"


class MessageType(str, Enum):
    """What a message represents in the chat."""
    REGULAR_CHAT = "regular-chat"
    ASSESSMENT_START = "assessment-start"
    PRACTICE_TEST_QUESTION = "practice-test-question"
    MODE_RESULT = "mode-result"
    MODE_TOGGLE_RESULT = "mode-toggle-result"
    UNIT_SELECTION = "unit-selection"


class Mode(str, Enum):
    """Interaction style of the bot."""
    TUTOR = "tutor"
    PROTEGE = "protege"


class QuestionType(str, Enum):
    TRUE_FALSE = "true-false"
    MULTIPLE_CHOICE = "multiple-choice"
    SHORT_ANSWER = "short-answer"
    OTHER = "other"


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class SourceAttribution:
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return {"description": self.description}


@dataclass
class Message:
    """One entry of the chat transcript."""
    type: Sender
    content: str
    timestamp: datetime = field(default_factory=datetime.now)
    is_html: bool = False
    message_type: MessageType = MessageType.REGULAR_CHAT
    source_attribution: Optional[SourceAttribution] = None
    active_struggle_topic: Optional[str] = None

    @property
    def is_regular_chat(self) -> bool:
        return self.message_type == MessageType.REGULAR_CHAT

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "type": self.type.value,
            "content": self.content,
            "isHtml": self.is_html,
            "timestamp": _format_dt(self.timestamp),
            "messageType": self.message_type.value,
        }
        if self.source_attribution:
            data["sourceAttribution"] = self.source_attribution.to_dict()
        if self.active_struggle_topic:
            data["activeStruggleTopic"] = self.active_struggle_topic
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        attribution = data.get("sourceAttribution")
        return cls(
            type=Sender(data["type"]),
            content=data.get("content", ""),
            timestamp=_parse_dt(data.get("timestamp")) or datetime.now(),
            is_html=bool(data.get("isHtml", False)),
            message_type=MessageType(data.get("messageType", MessageType.REGULAR_CHAT.value)),
            source_attribution=SourceAttribution(attribution["description"]) if attribution else None,
            active_struggle_topic=data.get("activeStruggleTopic"),
        )


@dataclass
class Question:
    """
    Canonical calibration question.

    `correct_answer` is already normalized for the question type:
    bool for true-false, zero-based option index for multiple-choice,
    reference text for short-answer.
    """
    id: str
    question_type: QuestionType
    text: str
    correct_answer: Any
    options: Dict[str, str] = field(default_factory=dict)  # letter -> text, insertion ordered
    explanation: Optional[str] = None
    unit_name: Optional[str] = None
    pass_threshold: Optional[int] = None

    def option_text(self, index: int) -> Optional[str]:
        values = list(self.options.values())
        if 0 <= index < len(values):
            return values[index]
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.question_type.value,
            "text": self.text,
            "options": dict(self.options),
            "correctAnswer": self.correct_answer,
            "explanation": self.explanation,
            "unitName": self.unit_name,
            "passThreshold": self.pass_threshold,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Question":
        return cls(
            id=str(data["id"]),
            question_type=QuestionType(data["type"]),
            text=data.get("text", ""),
            correct_answer=data.get("correctAnswer"),
            options=dict(data.get("options") or {}),
            explanation=data.get("explanation"),
            unit_name=data.get("unitName"),
            pass_threshold=data.get("passThreshold"),
        )


@dataclass
class AssessmentRecord:
    questions: List[Question]
    pass_threshold: int
    current_question_index: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "questions": [q.to_dict() for q in self.questions],
            "passThreshold": self.pass_threshold,
            "currentQuestionIndex": self.current_question_index,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AssessmentRecord":
        return cls(
            questions=[Question.from_dict(q) for q in data.get("questions", [])],
            pass_threshold=int(data.get("passThreshold", 0)),
            current_question_index=int(data.get("currentQuestionIndex", 0)),
        )


@dataclass
class AnsweredQuestion:
    question_index: int
    raw_answer: Any  # option index for choice types, text for short-answer
    is_correct: Optional[bool] = None
    ai_feedback: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "questionIndex": self.question_index,
            "rawAnswer": self.raw_answer,
            "isCorrect": self.is_correct,
            "aiFeedback": self.ai_feedback,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnsweredQuestion":
        return cls(
            question_index=int(data["questionIndex"]),
            raw_answer=data.get("rawAnswer"),
            is_correct=data.get("isCorrect"),
            ai_feedback=data.get("aiFeedback"),
        )


@dataclass
class SessionMetadata:
    student_id: str
    student_name: Optional[str] = None
    course_id: Optional[str] = None
    course_name: Optional[str] = None
    unit_name: Optional[str] = None
    current_mode: Mode = Mode.TUTOR
    total_messages: int = 0
    export_timestamp: Optional[datetime] = None
    schema_version: str = SCHEMA_VERSION
    # One-shot gates, at most once per session
    warning_shown: bool = False
    reflection_prompt_shown: bool = False


@dataclass
class SessionInfo:
    session_id: str
    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    duration: Optional[str] = None


@dataclass
class SessionRecord:
    """The unit of persistence: one per student, overwritten in place."""
    metadata: SessionMetadata
    session_info: SessionInfo
    messages: List[Message] = field(default_factory=list)
    assessment: Optional[AssessmentRecord] = None
    # Parallel-indexed to assessment.questions; None marks an unanswered slot
    student_answers: List[Optional[AnsweredQuestion]] = field(default_factory=list)
    last_activity_timestamp: datetime = field(default_factory=datetime.now)

    @property
    def session_id(self) -> str:
        return self.session_info.session_id

    def answered_count(self) -> int:
        return sum(1 for answer in self.student_answers if answer is not None)

    def has_progress(self) -> bool:
        """True when there is something worth resuming."""
        return bool(self.messages) or (self.assessment is not None and self.answered_count() > 0)

    def touch(self, now: Optional[datetime] = None):
        self.last_activity_timestamp = now or datetime.now()
