"""
External Collaborators

Contracts for the services the session engine calls but does not own:
chat completion, answer grading, remote session storage, struggle-topic
reset and the course catalog. Concrete adapters live in chat_completion.py,
answer_grader.py, remote_store.py and course_catalog.py.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from tutor_chat_session.session_state import Question, SourceAttribution


@dataclass
class StruggleTopic:
    """A concept the backend thinks the student keeps struggling with."""
    topic: str
    count: int = 0
    is_active: bool = False
    last_struggle: Optional[datetime] = None


@dataclass
class ChatCompletionResult:
    success: bool
    message: str
    source_attribution: Optional[SourceAttribution] = None
    struggle_state: Optional[List[StruggleTopic]] = None


@dataclass
class GradingResult:
    correct: bool
    feedback: str = ""


@dataclass
class SyncResult:
    success: bool
    message: str = ""


@dataclass
class StruggleResetResult:
    success: bool
    message: str = ""


@dataclass
class UnitInfo:
    """Read-only unit metadata from the course catalog."""
    course_id: str
    unit_name: str
    course_name: Optional[str] = None
    published: bool = True
    questions: List[Question] = field(default_factory=list)
    pass_threshold: Optional[int] = None


class ChatCompletionService(Protocol):
    async def send(
        self,
        message: str,
        mode: str,
        course_id: Optional[str],
        unit_name: Optional[str],
        conversation_context: Optional[List[Dict[str, str]]],
    ) -> ChatCompletionResult:
        """Get the bot reply. Cancelled through asyncio task cancellation."""
        ...


class AnswerGradingService(Protocol):
    async def check(self, question: str, student_answer: str, expected_answer: str) -> GradingResult:
        """Grade a free-text answer. May raise; callers fall back to a heuristic."""
        ...


class RemoteSessionStore(Protocol):
    async def save(self, payload: Dict[str, Any]) -> SyncResult:
        """
        Mirror a full session snapshot.

        Payload keys: sessionId, courseId, studentId, unitName, chatData.
        Best effort: may silently fail.
        """
        ...


class StruggleTopicService(Protocol):
    async def reset(self, topic: str, course_id: Optional[str]) -> StruggleResetResult:
        ...


class CourseCatalog(Protocol):
    def get_unit(self, course_id: str, unit_name: str) -> Optional[UnitInfo]:
        ...
