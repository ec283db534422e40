"""
Ingestion Normalizer

External payloads arrive in loosely-typed shapes: options as a list or as a
letter map, answer keys as letters, indices, option text or booleans, and
field names that vary between question banks. Everything is converted into
the canonical model once, here, so the rest of the engine never has to
guess.
"""

import logging
import string
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from tutor_chat_session.collaborators import StruggleTopic
from tutor_chat_session.session_state import Question, QuestionType

logger = logging.getLogger(__name__)

TRUE_FALSE_OPTIONS = {"A": "True", "B": "False"}

_TYPE_ALIASES = {
    "true-false": QuestionType.TRUE_FALSE,
    "truefalse": QuestionType.TRUE_FALSE,
    "true/false": QuestionType.TRUE_FALSE,
    "tf": QuestionType.TRUE_FALSE,
    "multiple-choice": QuestionType.MULTIPLE_CHOICE,
    "multiplechoice": QuestionType.MULTIPLE_CHOICE,
    "mcq": QuestionType.MULTIPLE_CHOICE,
    "mc": QuestionType.MULTIPLE_CHOICE,
    "short-answer": QuestionType.SHORT_ANSWER,
    "shortanswer": QuestionType.SHORT_ANSWER,
    "short": QuestionType.SHORT_ANSWER,
    "free-text": QuestionType.SHORT_ANSWER,
}


class RawQuestion(BaseModel):
    """A question as delivered by a question bank."""
    model_config = ConfigDict(extra="ignore")

    id: Optional[Union[str, int]] = Field(default=None, validation_alias=AliasChoices("id", "_id", "questionId"))
    type: str = Field(default="multiple-choice", validation_alias=AliasChoices("type", "questionType"))
    text: str = Field(validation_alias=AliasChoices("text", "question", "questionText"))
    options: Optional[Union[List[str], Dict[str, str]]] = None
    correct_answer: Optional[Union[bool, int, str]] = Field(
        default=None, validation_alias=AliasChoices("correctAnswer", "correct_answer", "answer")
    )
    explanation: Optional[str] = None
    unit_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("unitName", "lectureName"))
    pass_threshold: Optional[int] = Field(default=None, validation_alias=AliasChoices("passThreshold", "pass_threshold"))


class RawStruggleTopic(BaseModel):
    model_config = ConfigDict(extra="ignore")

    topic: str
    count: int = 0
    is_active: bool = Field(default=False, validation_alias=AliasChoices("isActive", "is_active"))
    last_struggle: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("lastStruggle", "last_struggle"))


def normalize_question_type(raw_type: str) -> QuestionType:
    key = (raw_type or "").strip().lower().replace("_", "-").replace(" ", "-")
    return _TYPE_ALIASES.get(key, QuestionType.OTHER)


def normalize_options(options: Any, question_type: QuestionType) -> Dict[str, str]:
    """Turn a list or map of options into an insertion-ordered letter map."""
    if isinstance(options, dict) and options:
        return {str(key): str(value) for key, value in options.items()}
    if isinstance(options, list) and options:
        if len(options) > len(string.ascii_uppercase):
            raise ValueError(f"{len(options)} options cannot be lettered A-Z")
        return {string.ascii_uppercase[i]: str(text) for i, text in enumerate(options)}
    if question_type == QuestionType.TRUE_FALSE:
        return dict(TRUE_FALSE_OPTIONS)
    return {}


def parse_bool(value: Any) -> Optional[bool]:
    """Boolean literal or case-insensitive "true"/"false"; None otherwise."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
    return None


def resolve_option_index(value: Any, options: Dict[str, str]) -> Optional[int]:
    """Resolve a key, index or option text to a zero-based option index."""
    keys = list(options.keys())
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if 0 <= value < len(keys) else None
    if not isinstance(value, str):
        return None

    candidate = value.strip()
    if candidate in options:
        return keys.index(candidate)
    for i, key in enumerate(keys):
        if key.lower() == candidate.lower():
            return i
    if candidate.isdigit():
        index = int(candidate)
        return index if 0 <= index < len(keys) else None
    for i, text in enumerate(options.values()):
        if text.strip().lower() == candidate.lower():
            return i
    return None


def _normalize_correct_answer(value: Any, question_type: QuestionType, options: Dict[str, str]) -> Any:
    if question_type == QuestionType.TRUE_FALSE:
        parsed = parse_bool(value)
        if parsed is None:
            # Answer given as a key or index into the True/False options
            index = resolve_option_index(value, options)
            if index is not None:
                parsed = parse_bool(list(options.values())[index])
        if parsed is None:
            raise ValueError(f"Cannot read true/false answer {value!r}")
        return parsed

    if question_type == QuestionType.MULTIPLE_CHOICE:
        index = resolve_option_index(value, options)
        if index is None:
            raise ValueError(f"Cannot resolve multiple-choice answer {value!r} against {list(options)}")
        return index

    if question_type == QuestionType.SHORT_ANSWER:
        return "" if value is None else str(value)

    return value


def normalize_question(raw: Dict[str, Any], position: int = 0, unit_name: Optional[str] = None) -> Question:
    """
    Convert one external question payload into a canonical Question.

    Raises:
        ValidationError: if the payload is missing required fields
        ValueError: if the correct answer cannot be resolved
    """
    parsed = RawQuestion.model_validate(raw)
    question_type = normalize_question_type(parsed.type)
    options = normalize_options(parsed.options, question_type)

    return Question(
        id=str(parsed.id) if parsed.id is not None else f"q{position + 1}",
        question_type=question_type,
        text=parsed.text,
        correct_answer=_normalize_correct_answer(parsed.correct_answer, question_type, options),
        options=options,
        explanation=parsed.explanation,
        unit_name=parsed.unit_name or unit_name,
        pass_threshold=parsed.pass_threshold,
    )


def normalize_questions(raw_questions: Iterable[Dict[str, Any]], unit_name: Optional[str] = None) -> List[Question]:
    """Normalize a question set, skipping (and logging) malformed entries."""
    questions = []
    for position, raw in enumerate(raw_questions or []):
        try:
            questions.append(normalize_question(raw, position, unit_name))
        except (ValidationError, ValueError) as e:
            logger.warning(f"⚠️ [Normalizer] Skipping question #{position + 1}: {e}")
    return questions


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Aware UTC datetime; naive values are taken to be UTC already."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_struggle_state(raw: Any) -> List[StruggleTopic]:
    """
    Accepts {"topics": [...]} or a bare list of topic dicts.
    Topic names are lower-cased and trimmed.
    """
    if raw is None:
        return []
    if isinstance(raw, dict):
        raw = raw.get("topics", [])

    topics = []
    for item in raw or []:
        if isinstance(item, StruggleTopic):
            topics.append(replace(item, last_struggle=as_utc(item.last_struggle)))
            continue
        try:
            parsed = RawStruggleTopic.model_validate(item)
        except ValidationError as e:
            logger.warning(f"⚠️ [Normalizer] Ignoring malformed struggle topic: {e}")
            continue
        topics.append(StruggleTopic(
            topic=parsed.topic.strip().lower(),
            count=parsed.count,
            is_active=parsed.is_active,
            last_struggle=as_utc(parsed.last_struggle),
        ))
    return topics
