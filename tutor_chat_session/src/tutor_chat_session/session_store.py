"""
Persisted Session Store

Local-first, synchronous key-value persistence for session records.
Owns the current record per student, the bounded history log, the
session-id lookup per (student, course, unit) and the mode preference.
"""

import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import quote

from tutor_chat_session.session_state import (
    AnsweredQuestion,
    AssessmentRecord,
    Message,
    Mode,
    SCHEMA_VERSION,
    SessionInfo,
    SessionMetadata,
    SessionRecord,
)

logger = logging.getLogger(__name__)


class KeyValueBackend(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...


class InMemoryBackend:
    """Process-local backend (tests, or when no storage directory is configured)."""

    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def keys(self) -> List[str]:
        return list(self._data.keys())


class JsonFileBackend:
    """
    One file per key under a directory.

    Writes go to a temporary file that is then renamed over the target,
    so a reader never observes a partially written value.
    """

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.directory / f"{quote(key, safe='')}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        fd, tmp_path = tempfile.mkstemp(dir=str(self.directory), suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as tmp_file:
                tmp_file.write(value)
            os.replace(tmp_path, self._path(key))
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def record_to_dict(record: SessionRecord) -> Dict[str, Any]:
    """Convert a SessionRecord to its JSON-ready form."""
    meta = record.metadata
    info = record.session_info
    return {
        "metadata": {
            "studentId": meta.student_id,
            "studentName": meta.student_name,
            "courseId": meta.course_id,
            "courseName": meta.course_name,
            "unitName": meta.unit_name,
            "currentMode": meta.current_mode.value,
            "totalMessages": meta.total_messages,
            "exportTimestamp": _format_dt(meta.export_timestamp),
            "schemaVersion": meta.schema_version,
            "warningShown": meta.warning_shown,
            "reflectionPromptShown": meta.reflection_prompt_shown,
        },
        "messages": [m.to_dict() for m in record.messages],
        "assessment": record.assessment.to_dict() if record.assessment else None,
        "studentAnswers": [a.to_dict() if a else None for a in record.student_answers],
        "sessionInfo": {
            "sessionId": info.session_id,
            "startTime": _format_dt(info.start_time),
            "endTime": _format_dt(info.end_time),
            "duration": info.duration,
        },
        "lastActivityTimestamp": _format_dt(record.last_activity_timestamp),
    }


def dict_to_record(data: Dict[str, Any]) -> SessionRecord:
    """
    Convert a stored dictionary back into a SessionRecord.

    Raises:
        KeyError / TypeError / ValueError: on malformed data
    """
    if not isinstance(data.get("messages"), list):
        raise ValueError("Session record has no messages array")

    meta = data["metadata"]
    info = data["sessionInfo"]
    assessment = data.get("assessment")

    return SessionRecord(
        metadata=SessionMetadata(
            student_id=meta["studentId"],
            student_name=meta.get("studentName"),
            course_id=meta.get("courseId"),
            course_name=meta.get("courseName"),
            unit_name=meta.get("unitName"),
            current_mode=Mode(meta.get("currentMode", Mode.TUTOR.value)),
            total_messages=int(meta.get("totalMessages", 0)),
            export_timestamp=_parse_dt(meta.get("exportTimestamp")),
            schema_version=meta.get("schemaVersion", SCHEMA_VERSION),
            warning_shown=bool(meta.get("warningShown", False)),
            reflection_prompt_shown=bool(meta.get("reflectionPromptShown", False)),
        ),
        session_info=SessionInfo(
            session_id=info["sessionId"],
            start_time=_parse_dt(info.get("startTime")) or datetime.now(),
            end_time=_parse_dt(info.get("endTime")),
            duration=info.get("duration"),
        ),
        messages=[Message.from_dict(m) for m in data["messages"]],
        assessment=AssessmentRecord.from_dict(assessment) if assessment else None,
        student_answers=[AnsweredQuestion.from_dict(a) if a else None for a in data.get("studentAnswers") or []],
        last_activity_timestamp=_parse_dt(data.get("lastActivityTimestamp")) or datetime.now(),
    )


class PersistedSessionStore:
    """
    Durable store keyed by student id.

    Every write is synchronous. Read failures return None (treated as
    "no prior session"); write failures are logged and reported as False.
    """

    def __init__(
        self,
        backend: Optional[KeyValueBackend] = None,
        key_prefix: str = "biocbot",
        history_limit: int = 50,
    ):
        self.backend = backend or InMemoryBackend()
        self.key_prefix = key_prefix
        self.history_limit = history_limit

    # ----- keys -----

    def _current_key(self, student_id: str) -> str:
        return f"{self.key_prefix}_current_session_{student_id}"

    def _history_key(self, student_id: str) -> str:
        return f"{self.key_prefix}_chat_history_{student_id}"

    def _session_id_key(self, student_id: str, course_id: Optional[str], unit_name: Optional[str]) -> str:
        return f"{self.key_prefix}_session_{student_id}_{course_id}_{unit_name}"

    def _mode_key(self, student_id: str) -> str:
        return f"{self.key_prefix}_student_mode_{student_id}"

    # ----- low level -----

    def _read_json(self, key: str) -> Any:
        raw = self.backend.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    def _write_json(self, key: str, value: Any) -> bool:
        try:
            self.backend.set(key, json.dumps(value))
            return True
        except (TypeError, ValueError, OSError) as e:
            logger.error(f"❌ [SessionStore] Failed to write {key}: {e}")
            return False

    # ----- current record -----

    def get(self, student_id: str) -> Optional[SessionRecord]:
        """Load the current record, or None if absent or unreadable."""
        try:
            data = self._read_json(self._current_key(student_id))
            if data is None:
                return None
            return dict_to_record(data)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, OSError) as e:
            logger.warning(f"⚠️ [SessionStore] Discarding unreadable session for {student_id}: {e}")
            return None

    def put(self, student_id: str, record: SessionRecord) -> bool:
        """Overwrite the current record."""
        record.metadata.total_messages = len(record.messages)
        record.metadata.export_timestamp = datetime.now()
        return self._write_json(self._current_key(student_id), record_to_dict(record))

    # ----- history log -----

    def get_history(self, student_id: str) -> List[Dict[str, Any]]:
        """History entries, most recent first."""
        try:
            history = self._read_json(self._history_key(student_id))
        except (ValueError, OSError) as e:
            logger.warning(f"⚠️ [SessionStore] Unreadable history for {student_id}: {e}")
            return []
        if not isinstance(history, list):
            return []
        return [h for h in history if isinstance(h, dict)]

    def append_history(self, student_id: str, entry: Dict[str, Any]) -> bool:
        """
        Add an entry at the front of the history log.

        An existing entry with the same id is replaced. Entries beyond
        history_limit are evicted oldest first.
        """
        history = [h for h in self.get_history(student_id) if h.get("id") != entry.get("id")]
        history.insert(0, entry)
        evicted = len(history) - self.history_limit
        if evicted > 0:
            logger.info(f"🗑️ [SessionStore] Evicting {evicted} oldest history entries for {student_id}")
        return self._write_json(self._history_key(student_id), history[:self.history_limit])

    def get_history_entry(self, student_id: str, entry_id: str) -> Optional[Dict[str, Any]]:
        for entry in self.get_history(student_id):
            if entry.get("id") == entry_id:
                return entry
        return None

    def delete_history_entry(self, student_id: str, entry_id: str) -> bool:
        history = self.get_history(student_id)
        remaining = [h for h in history if h.get("id") != entry_id]
        if len(remaining) == len(history):
            return False
        return self._write_json(self._history_key(student_id), remaining)

    def rename_history_entry(self, student_id: str, entry_id: str, title: str) -> bool:
        history = self.get_history(student_id)
        for entry in history:
            if entry.get("id") == entry_id:
                entry["title"] = title
                return self._write_json(self._history_key(student_id), history)
        return False

    # ----- session id lookup -----

    def get_session_id(self, student_id: str, course_id: Optional[str], unit_name: Optional[str]) -> Optional[str]:
        try:
            value = self._read_json(self._session_id_key(student_id, course_id, unit_name))
        except (ValueError, OSError):
            return None
        return value if isinstance(value, str) else None

    def set_session_id(self, student_id: str, course_id: Optional[str], unit_name: Optional[str], session_id: str) -> bool:
        return self._write_json(self._session_id_key(student_id, course_id, unit_name), session_id)

    # ----- mode preference -----

    def get_mode_preference(self, student_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self._read_json(self._mode_key(student_id))
        except (ValueError, OSError):
            return None

    def set_mode_preference(self, student_id: str, mode: Mode, manual_changed_at: Optional[datetime]) -> bool:
        return self._write_json(self._mode_key(student_id), {
            "mode": mode.value,
            "manualChangedAt": _format_dt(manual_changed_at),
        })
