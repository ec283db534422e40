"""
Chat Session Controller

Ties the session engine together for one student at a time:

    user input -> transcript append -> local store write -> remote sync
    reload     -> continuity decision -> context builder / assessment engine

One controller owns the live SessionRecord. All record mutation happens
synchronously between awaits; the only suspension points are the chat,
grading, struggle-reset and sync calls.
"""

import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from tutor_chat_session.assessment_engine import AssessmentEngine, AssessmentResult
from tutor_chat_session.collaborators import (
    AnswerGradingService,
    ChatCompletionService,
    CourseCatalog,
    RemoteSessionStore,
    StruggleResetResult,
    StruggleTopicService,
)
from tutor_chat_session.config import EngineConfig
from tutor_chat_session.context_builder import MODE_LABELS, ConversationContextBuilder
from tutor_chat_session.continuity import ContinuityAction, ContinuityDecision, SessionContinuityManager
from tutor_chat_session.history_export import build_history_entry, export_json, export_markdown
from tutor_chat_session.logger import get_logger, setup_logging
from tutor_chat_session.mode_manager import ModeManager, to_mode
from tutor_chat_session.remote_sync import RemoteSyncAgent
from tutor_chat_session.session_state import (
    AnsweredQuestion,
    Message,
    MessageType,
    Mode,
    Question,
    QuestionType,
    SessionMetadata,
    SessionRecord,
    Sender,
)
from tutor_chat_session.session_store import (
    JsonFileBackend,
    PersistedSessionStore,
    dict_to_record,
)
from tutor_chat_session.struggle_gate import StruggleTopicGate
from tutor_chat_session.transcript import ChatTranscriptModel

logger = get_logger(__name__)

RESPONSE_STOPPED_TEXT = "Response stopped. Ask your next question whenever you're ready."
APOLOGY_TEXT = "Sorry, I'm having trouble responding right now. Please try again in a moment."


class ChatSessionController:
    """
    Session engine facade for one student.

    Call open() first; every other operation works on the record it loads
    or creates.
    """

    def __init__(
        self,
        store: Optional[PersistedSessionStore] = None,
        config: Optional[EngineConfig] = None,
        chat_service: Optional[ChatCompletionService] = None,
        grader: Optional[AnswerGradingService] = None,
        remote_store: Optional[RemoteSessionStore] = None,
        struggle_service: Optional[StruggleTopicService] = None,
        struggle_service_factory: Optional[Callable[[str], StruggleTopicService]] = None,
        catalog: Optional[CourseCatalog] = None,
    ):
        self.config = config or EngineConfig()
        self.store = store or PersistedSessionStore(
            key_prefix=self.config.key_prefix,
            history_limit=self.config.history_limit,
        )
        self.continuity = SessionContinuityManager(self.store, self.config.idle_window_minutes)
        self.context_builder = ConversationContextBuilder(self.config.short_answer_min_length)
        self.sync_agent = RemoteSyncAgent(remote_store)
        self.chat_service = chat_service
        self.grader = grader
        self.struggle_service = struggle_service
        self.struggle_service_factory = struggle_service_factory
        self.catalog = catalog

        self.record: Optional[SessionRecord] = None
        self.transcript: Optional[ChatTranscriptModel] = None
        self.engine: Optional[AssessmentEngine] = None
        self.gate: Optional[StruggleTopicGate] = None
        self.mode_manager: Optional[ModeManager] = None
        self._inflight: Optional[asyncio.Task] = None
        self.log = logger

    # ----- state -----

    @property
    def session_id(self) -> Optional[str]:
        return self.record.session_id if self.record else None

    @property
    def mode(self) -> Mode:
        return self.record.metadata.current_mode if self.record else Mode.TUTOR

    @property
    def messages(self) -> List[Message]:
        return self.record.messages if self.record else []

    def _require_open(self):
        if self.record is None:
            raise RuntimeError("No session is open; call open() first")

    def _bind(self, record: SessionRecord):
        """Attach the per-record components to `record`."""
        if self.engine is not None:
            self.engine.detach()
        self.record = record
        self.log = logger.bind(record.session_id)
        self.transcript = ChatTranscriptModel(
            record,
            self.store,
            sync_agent=self.sync_agent,
            volume_warning_counts=self.config.volume_warning_counts,
            reflection_prompt_counts=self.config.reflection_prompt_counts,
        )
        self.engine = AssessmentEngine(
            record,
            grader=self.grader,
            persist=self.transcript.persist,
            grading_timeout_seconds=self.config.grading_timeout_seconds,
            short_answer_min_length=self.config.short_answer_min_length,
            default_pass_threshold=self.config.default_pass_threshold,
        )
        service = self.struggle_service
        if service is None and self.struggle_service_factory is not None:
            service = self.struggle_service_factory(record.metadata.student_id)
        self.gate = StruggleTopicGate(service, record.metadata.course_id)

    def _set_mode(self, mode: Mode):
        self.record.metadata.current_mode = mode

    def _archive(self, now: Optional[datetime] = None) -> bool:
        """Move the current record into the history log if it holds anything."""
        if self.record is None or not self.record.has_progress():
            return False
        entry = build_history_entry(self.record, saved_at=now)
        saved = self.store.append_history(self.record.metadata.student_id, entry)
        logger.info(f"🗂️ [ChatSession] Archived session {self.record.session_id}", data={
            "messages": entry["messageCount"],
            "duration": entry["duration"],
        })
        return saved

    def _start_fresh(self, metadata: SessionMetadata, now: datetime, session_id: Optional[str] = None) -> SessionRecord:
        record = self.continuity.start_fresh(session_id or self.continuity.new_session_id(now), metadata, now)
        self._bind(record)
        self.transcript.persist()
        return record

    # ----- lifecycle -----

    def open(
        self,
        student_id: str,
        student_name: Optional[str] = None,
        course_id: Optional[str] = None,
        course_name: Optional[str] = None,
        unit_name: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ContinuityDecision:
        """
        Load the student's stored session and resume it or start a new one.

        Course and unit default to the stored record's. Opening a different
        course or unit than the stored record archives that record.
        """
        now = now or datetime.now()
        self.mode_manager = ModeManager(self.store, student_id, self.config.manual_mode_grace_minutes)
        stored = self.store.get(student_id)

        if stored is not None:
            meta = stored.metadata
            course_id = course_id or meta.course_id
            course_name = course_name or meta.course_name
            unit_name = unit_name or meta.unit_name
            student_name = student_name or meta.student_name

        if stored is not None and (stored.metadata.course_id, stored.metadata.unit_name) != (course_id, unit_name):
            decision = ContinuityDecision(
                action=ContinuityAction.FRESH,
                session_id=self.continuity.new_session_id(now),
                reason="course or unit changed",
            )
        else:
            decision = self.continuity.decide(stored, now)

        if decision.resumed:
            record = self.continuity.restore(stored)
            record.metadata.student_name = student_name
            self._bind(record)
            self._set_mode(self.mode_manager.restore(record.metadata.current_mode, now))
            self.transcript.persist()
        else:
            if stored is not None:
                self.record = stored
                self._archive(now)
            metadata = SessionMetadata(
                student_id=student_id,
                student_name=student_name,
                course_id=course_id,
                course_name=course_name,
                unit_name=unit_name,
                current_mode=self.mode_manager.mode,
            )
            self._start_fresh(metadata, now, decision.session_id)

        logger.info(f"📂 [ChatSession] Opened session {decision.session_id} ({decision.action.value})", data={
            "student": student_id,
            "course": course_id,
            "unit": unit_name,
            "reason": decision.reason,
        })
        return decision

    def new_session(self, now: Optional[datetime] = None) -> str:
        """Archive the current session and start an empty one for the same unit."""
        self._require_open()
        now = now or datetime.now()
        self._cancel_inflight()
        self._archive(now)
        self._start_fresh(self.record.metadata, now)
        return self.session_id

    def select_unit(
        self,
        course_id: str,
        course_name: Optional[str],
        unit_name: str,
        now: Optional[datetime] = None,
    ) -> SessionRecord:
        """Switch course/unit: the current session is archived and superseded."""
        self._require_open()
        now = now or datetime.now()
        self._cancel_inflight()
        self._archive(now)
        previous = self.record.metadata
        metadata = SessionMetadata(
            student_id=previous.student_id,
            student_name=previous.student_name,
            course_id=course_id,
            course_name=course_name,
            unit_name=unit_name,
            current_mode=self.mode,
        )
        record = self._start_fresh(metadata, now)
        self.transcript.add_bot_message(
            f"You selected <strong>{unit_name}</strong>"
            f"{f' in {course_name}' if course_name else ''}. Ask me anything about this unit.",
            message_type=MessageType.UNIT_SELECTION,
            is_html=True,
            now=now,
        )
        return record

    async def close(self):
        """Stop any pending chat request and wait for remote syncs to settle."""
        task = self._cancel_inflight()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        await self.sync_agent.flush()

    # ----- chat -----

    def _cancel_inflight(self) -> Optional[asyncio.Task]:
        task = self._inflight
        if task is not None and not task.done():
            task.cancel()
            return task
        return None

    async def send_message(self, text: str, now: Optional[datetime] = None) -> Message:
        """
        Append the student's message and the bot reply.

        A newer call cancels a still-pending reply; the superseded call then
        appends a "response stopped" message instead of an error.
        """
        self._require_open()
        now = now or datetime.now()
        self._cancel_inflight()

        mode = self.mode
        meta = self.record.metadata

        # Context excludes the pending message, which is sent separately
        context = self.context_builder.build(self.record, self.session_id)
        # Both gates are read before either nudge changes the count
        show_warning = self.transcript.should_show_volume_warning()
        self.transcript.append(Message(type=Sender.USER, content=text, timestamp=now))
        reflect = self.transcript.should_append_reflection_prompt(mode)
        if show_warning:
            self.transcript.inject_volume_warning(now)

        if self.chat_service is None:
            self.log.warning("⚠️ [ChatSession] No chat service configured")
            return self.transcript.add_bot_message(APOLOGY_TEXT, now=now)

        task = asyncio.ensure_future(
            self.chat_service.send(text, mode.value, meta.course_id, meta.unit_name, context)
        )
        self._inflight = task
        record = self.record
        log = self.log
        try:
            result = await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            log.info("⏹️ [ChatSession] Response stopped")
            if record is not self.record:
                return Message(type=Sender.BOT, content=RESPONSE_STOPPED_TEXT, timestamp=now)
            return self.transcript.add_bot_message(RESPONSE_STOPPED_TEXT, now=now)
        except Exception as e:
            log.error("❌ [ChatSession] Chat completion failed", error=e)
            if record is not self.record:
                return Message(type=Sender.BOT, content=APOLOGY_TEXT, timestamp=now)
            return self.transcript.add_bot_message(APOLOGY_TEXT, now=now)
        finally:
            if self._inflight is task:
                self._inflight = None

        if record is not self.record:
            # Session was replaced while waiting; the reply belongs to the archived one
            log.info("⏹️ [ChatSession] Dropping reply for superseded session")
            return Message(type=Sender.BOT, content=result.message, timestamp=now)

        if not result.success:
            self.log.warning(f"⚠️ [ChatSession] Chat service reported failure: {result.message}")
            return self.transcript.add_bot_message(APOLOGY_TEXT, now=now)

        topic = self.gate.observe(result.struggle_state)
        content = self.transcript.add_reflection_prompt(result.message) if reflect else result.message
        return self.transcript.add_bot_message(
            content,
            now=now,
            source_attribution=result.source_attribution,
            active_struggle_topic=topic,
        )

    async def reset_struggle_topic(self, topic: Optional[str] = None, now: Optional[datetime] = None) -> StruggleResetResult:
        """Reset a struggle topic ("ALL" for every topic); failures become a bot message."""
        self._require_open()
        result = await self.gate.reset(topic, self.record.metadata.course_id)
        if not result.success:
            self.transcript.add_bot_message(
                f"I couldn't reset that topic: {result.message}",
                now=now or datetime.now(),
            )
        return result

    # ----- assessment -----

    def _format_question(self, index: int, question: Question) -> str:
        total = len(self.engine.assessment.questions)
        lines = [f"<strong>Question {index + 1} of {total}</strong>", question.text]
        if question.question_type in (QuestionType.TRUE_FALSE, QuestionType.MULTIPLE_CHOICE):
            for letter, text in question.options.items():
                lines.append(f"{letter}. {text}")
        return "<br>".join(lines)

    def _post_current_question(self, now: datetime) -> Optional[Message]:
        question = self.engine.current_question
        if question is None:
            return None
        return self.transcript.add_bot_message(
            self._format_question(self.engine.current_question_index, question),
            message_type=MessageType.PRACTICE_TEST_QUESTION,
            is_html=True,
            now=now,
        )

    def start_assessment(self, now: Optional[datetime] = None) -> Optional[Question]:
        """
        Start the unit's calibration assessment and post its first question.

        Without a published, non-empty question set no assessment starts and
        the student stays in tutor mode.
        """
        self._require_open()
        now = now or datetime.now()
        meta = self.record.metadata

        unit = None
        if self.catalog is not None and meta.course_id and meta.unit_name:
            unit = self.catalog.get_unit(meta.course_id, meta.unit_name)

        if unit is None or not unit.published or not unit.questions:
            self.log.info(f"📋 [ChatSession] No published questions for {meta.course_id}/{meta.unit_name}, using tutor mode")
            self._set_mode(self.mode_manager.apply_assessment_result(Mode.TUTOR))
            self.transcript.add_bot_message(
                "There are no practice questions for this unit yet, so I'll work with you in tutor mode.",
                message_type=MessageType.MODE_RESULT,
                now=now,
            )
            return None

        self.engine.start(unit.questions, unit.pass_threshold, now)
        self.transcript.add_bot_message(
            f"Let's start with {len(unit.questions)} quick questions on {meta.unit_name} "
            "so I can choose the best way to help you.",
            message_type=MessageType.ASSESSMENT_START,
            now=now,
        )
        self._post_current_question(now)
        return self.engine.current_question

    async def answer_question(self, index: int, value: Any, now: Optional[datetime] = None) -> Optional[AnsweredQuestion]:
        """Answer question `index`; returns None when the answer is not accepted."""
        self._require_open()
        now = now or datetime.now()
        record = self.record
        answered = await self.engine.answer(index, value, now)
        if answered is None or record is not self.record:
            return None

        if self.engine.is_complete:
            result = self.engine.result()
            self._set_mode(self.mode_manager.apply_assessment_result(result.mode))
            self.transcript.add_bot_message(
                self._result_text(result),
                message_type=MessageType.MODE_RESULT,
                now=now,
            )
        else:
            self._post_current_question(now)
        return answered

    def _result_text(self, result: AssessmentResult) -> str:
        summary = (
            f"You answered {result.total_correct} of {result.total_questions} questions correctly "
            f"({result.score_percent}%)."
        )
        if result.passed:
            return f"{summary} Great work! I'll be your study partner in {MODE_LABELS[Mode.PROTEGE]} mode."
        return f"{summary} I'll guide you step by step in {MODE_LABELS[Mode.TUTOR]} mode."

    @property
    def assessment_result(self) -> Optional[AssessmentResult]:
        if self.engine is None:
            return None
        return self.engine.result()

    # ----- mode -----

    def toggle_mode(self, mode: Any, now: Optional[datetime] = None) -> Optional[Mode]:
        """
        Manually switch between tutor and protégé mode.

        Ignored (returns None) while an assessment is in progress.

        Raises:
            ValueError: for an unknown mode
        """
        self._require_open()
        target = to_mode(mode)
        if self.engine.in_progress:
            self.log.warning("⚠️ [ChatSession] Mode toggle ignored during assessment")
            return None

        now = now or datetime.now()
        self._set_mode(self.mode_manager.toggle(target, now))
        self.transcript.add_bot_message(
            f"Switched to {MODE_LABELS[target]} mode.",
            message_type=MessageType.MODE_TOGGLE_RESULT,
            now=now,
        )
        return target

    # ----- history -----

    def get_history(self) -> List[Dict[str, Any]]:
        self._require_open()
        return self.store.get_history(self.record.metadata.student_id)

    def delete_history_entry(self, entry_id: str) -> bool:
        self._require_open()
        return self.store.delete_history_entry(self.record.metadata.student_id, entry_id)

    def rename_history_entry(self, entry_id: str, title: str) -> bool:
        self._require_open()
        return self.store.rename_history_entry(self.record.metadata.student_id, entry_id, title)

    def export_history_entry(self, entry_id: str, fmt: str = "markdown") -> Optional[str]:
        self._require_open()
        entry = self.store.get_history_entry(self.record.metadata.student_id, entry_id)
        if entry is None:
            return None
        if fmt == "json":
            return export_json(entry)
        return export_markdown(entry, self.record.metadata.student_name or "Student")

    def resume_from_history(self, entry_id: str, now: Optional[datetime] = None) -> Optional[SessionRecord]:
        """Continue an archived chat under its original session id."""
        self._require_open()
        now = now or datetime.now()
        student_id = self.record.metadata.student_id
        entry = self.store.get_history_entry(student_id, entry_id)
        if entry is None:
            logger.warning(f"⚠️ [ChatSession] History entry {entry_id} not found")
            return None

        try:
            record = dict_to_record(entry.get("chatData") or {})
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"❌ [ChatSession] History entry {entry_id} is unreadable", error=e)
            return None

        self._cancel_inflight()
        if record.session_id != self.session_id:
            self._archive(now)

        record = self.continuity.restore(record)
        record.touch(now)
        self.continuity.reconcile_session_id(record)
        self._bind(record)
        self._set_mode(self.mode_manager.restore(record.metadata.current_mode, now))
        self.transcript.persist()
        logger.info(f"♻️ [ChatSession] Continuing archived session {record.session_id}")
        return record


def create_controller(
    config: Optional[EngineConfig] = None,
    courses: Optional[Dict[str, Dict[str, Any]]] = None,
    configure_logging: bool = True,
) -> ChatSessionController:
    """
    Build a controller wired to the configured adapters.

    OpenAI and Supabase adapters are only created when their credentials
    are configured. Console logging is installed at `config.log_level`
    unless the host application has set up its own.
    """
    from tutor_chat_session.answer_grader import OpenAIAnswerGrader
    from tutor_chat_session.chat_completion import OpenAIChatCompletionService
    from tutor_chat_session.course_catalog import StaticCourseCatalog
    from tutor_chat_session.remote_store import SupabaseSessionStore, SupabaseStruggleTopicService
    from tutor_chat_session.supabase_client import get_supabase_client

    config = config or EngineConfig.from_env()
    if configure_logging:
        setup_logging(config.log_level)
    backend = JsonFileBackend(config.storage_dir) if config.storage_dir else None
    store = PersistedSessionStore(backend, config.key_prefix, config.history_limit)

    chat_service = grader = None
    if config.openai_api_key:
        chat_service = OpenAIChatCompletionService(config.openai_api_key, config.openai_model)
        grader = OpenAIAnswerGrader(config.openai_api_key, config.openai_model)
    else:
        logger.warning("⚠️ [ChatSession] OPENAI_API_KEY not set; chat and grading are disabled")

    remote_store = struggle_factory = None
    if config.supabase_url and config.supabase_key:
        client = get_supabase_client(config.supabase_url, config.supabase_key)
        remote_store = SupabaseSessionStore(client)

        def struggle_factory(student_id: str) -> StruggleTopicService:
            return SupabaseStruggleTopicService(client, student_id)
    else:
        logger.info("ℹ️ [ChatSession] Supabase not configured; remote sync disabled")

    return ChatSessionController(
        store=store,
        config=config,
        chat_service=chat_service,
        grader=grader,
        remote_store=remote_store,
        struggle_service_factory=struggle_factory,
        catalog=StaticCourseCatalog(courses),
    )
